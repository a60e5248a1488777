"""OpenTelemetry tracing, exported over OTLP/HTTP."""

import logging
from typing import Any

from opentelemetry import propagate, trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.propagators.aws import AwsXRayPropagator
from opentelemetry.sdk.extension.aws.trace import AwsXRayIdGenerator
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from latchkey import __version__
from latchkey.config import settings
from latchkey.db import engine

logger = logging.getLogger(__name__)


def setup_tracing(app: Any) -> bool:
    """Instrument the app, the database engine and logging.

    Does nothing unless OTEL_ENABLED is set. Failures are logged and
    tracing stays off; the server runs either way.

    Returns:
        True if tracing was initialized
    """
    if not settings.otel_enabled:
        logger.info("OpenTelemetry tracing disabled (set OTEL_ENABLED=true to enable)")
        return False

    try:
        resource = Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
                "deployment.environment": "development" if settings.dev_mode else "production",
            }
        )
        provider = TracerProvider(resource=resource, id_generator=AwsXRayIdGenerator())
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=f"{settings.otel_exporter_endpoint}/v1/traces")
            )
        )
        trace.set_tracer_provider(provider)
        propagate.set_global_textmap(AwsXRayPropagator())

        FastAPIInstrumentor.instrument_app(app)
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
        LoggingInstrumentor().instrument(set_logging_format=False)
    except Exception as e:
        logger.warning(f"Failed to initialize tracing (non-fatal): {e}")
        return False

    logger.info(
        f"OpenTelemetry tracing initialized: service={settings.otel_service_name}, "
        f"endpoint={settings.otel_exporter_endpoint}"
    )
    return True


def get_current_trace_id() -> str | None:
    """Trace ID of the active span as hex, or None outside a span."""
    span = trace.get_current_span()
    if span and span.get_span_context().is_valid:
        return format(span.get_span_context().trace_id, "032x")
    return None
