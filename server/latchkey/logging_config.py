"""Structured logging configuration.

JSON lines carry:
- a category per subsystem (auth, passkey, ratelimit, db, http, system)
- the OpenTelemetry trace id when a span is recording
- user_id when the caller passes it in ``extra``
- any other ``extra`` fields under "extra"
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from typing import TextIO


class StructuredFormatter(logging.Formatter):
    """One JSON object per log line."""

    # First matching prefix wins, so more specific names come first
    CATEGORY_MAP = {
        "latchkey.auth.passkeys": "passkey",
        "latchkey.auth.relying_party": "passkey",
        "latchkey.auth.rate_limit": "ratelimit",
        "latchkey.auth": "auth",
        "latchkey.db": "db",
        "latchkey.main": "http",
        "latchkey.routes": "http",
        "latchkey.cli": "system",
        "latchkey.config": "system",
        "latchkey.tracing": "system",
        "sqlalchemy": "db",
        "alembic": "db",
        "uvicorn": "http",
        "fastapi": "http",
    }

    # LogRecord attributes that never go under "extra"
    STANDARD_FIELDS = frozenset(
        {
            "name",
            "msg",
            "args",
            "created",
            "filename",
            "funcName",
            "levelname",
            "levelno",
            "lineno",
            "module",
            "msecs",
            "pathname",
            "process",
            "processName",
            "relativeCreated",
            "stack_info",
            "exc_info",
            "exc_text",
            "thread",
            "threadName",
            "taskName",
            "message",
            "user_id",
            "trace_id",
        }
    )

    def _get_category(self, logger_name: str) -> str:
        for prefix, category in self.CATEGORY_MAP.items():
            if logger_name == prefix or logger_name.startswith(prefix + "."):
                return category
        return "system"

    def _get_trace_id(self) -> str | None:
        try:
            from opentelemetry import trace

            span = trace.get_current_span()
            if span.is_recording():
                return format(span.get_span_context().trace_id, "032x")
        except Exception:
            return None
        return None

    def format(self, record: logging.LogRecord) -> str:
        log_record: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "category": self._get_category(record.name),
            "logger": record.name,
            "message": record.getMessage(),
        }

        user_id = getattr(record, "user_id", None)
        if user_id is not None:
            log_record["user_id"] = user_id

        trace_id = getattr(record, "trace_id", None) or self._get_trace_id()
        if trace_id:
            log_record["trace_id"] = trace_id

        extra: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in self.STANDARD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                extra[key] = value
            except (TypeError, ValueError):
                extra[key] = str(value)
        if extra:
            log_record["extra"] = extra

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record)


class ErrorFilter(logging.Filter):
    """Only lets ERROR and above through."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def _rotating_handler(path: str, backup_count: int) -> RotatingFileHandler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        path,
        maxBytes=50 * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )


def configure_logging(
    *,
    json_format: bool = True,
    log_level: int = logging.INFO,
    log_file: str | None = None,
    error_log_file: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Configure application logging.

    Args:
        json_format: Use JSON formatting (True for production, False for dev)
        log_level: Minimum log level
        log_file: Path to main log file (None for stream only)
        error_log_file: Path to error-only log file (None to skip)
        stream: Stream to write to (default: sys.stderr)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter: logging.Formatter
    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)5s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )

    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.setFormatter(formatter)
    root_logger.addHandler(stream_handler)

    if log_file:
        file_handler = _rotating_handler(log_file, backup_count=7)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    if error_log_file:
        error_handler = _rotating_handler(error_log_file, backup_count=14)
        error_handler.setFormatter(formatter)
        error_handler.addFilter(ErrorFilter())
        root_logger.addHandler(error_handler)

    for name in ("httpcore", "httpx", "urllib3", "botocore", "boto3", "aiosqlite"):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_production_logging(log_dir: str | None = None) -> None:
    """JSON logs on stderr, plus rotating files when a log directory is given."""
    configure_logging(
        json_format=True,
        log_level=logging.INFO,
        log_file=f"{log_dir}/latchkey.log" if log_dir else None,
        error_log_file=f"{log_dir}/error.log" if log_dir else None,
    )


def setup_dev_logging(json_format: bool = False) -> None:
    """Human-readable logs on stderr unless JSON is asked for."""
    configure_logging(json_format=json_format, log_level=logging.DEBUG)
