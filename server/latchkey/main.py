"""FastAPI application."""

import asyncio
import logging
import traceback
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from latchkey import __version__
from latchkey.config import settings
from latchkey.logging_config import setup_dev_logging, setup_production_logging
from latchkey.routes import create_api_router
from latchkey.tracing import get_current_trace_id, setup_tracing

if settings.dev_mode:
    setup_dev_logging(json_format=settings.log_json)
else:
    setup_production_logging(settings.log_dir or None)

logger = logging.getLogger(__name__)

ALEMBIC_INI = Path(__file__).resolve().parent.parent / "alembic.ini"


async def run_migrations() -> None:
    """Upgrade the database to the latest schema."""
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(str(ALEMBIC_INI))
    alembic_cfg.set_main_option("script_location", str(ALEMBIC_INI.parent / "alembic"))
    alembic_cfg.attributes["configure_logger"] = False
    await asyncio.to_thread(command.upgrade, alembic_cfg, "head")
    logger.info("Database migrations completed")


@asynccontextmanager
async def lifespan(_app: FastAPI):  # type: ignore[no-untyped-def]
    logger.info("=== Server startup initiated ===")

    if settings.auto_migrate:
        await run_migrations()

    logger.info(
        f"=== Server startup completed (rp_id={settings.rp_id}, origin={settings.origin}, "
        f"email={settings.email_backend}) ==="
    )

    yield

    logger.info("Lifespan shutdown triggered")


app = FastAPI(
    title="Latchkey",
    description="Passwordless authentication with one-time codes and passkeys",
    version=__version__,
    lifespan=lifespan,
)

setup_tracing(app)

# The session travels in a cookie, so only our own origin may send credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(create_api_router())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch all unhandled exceptions and log them with full traceback."""
    trace_id = get_current_trace_id()
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc}\n"
        f"trace_id={trace_id}\n"
        f"{''.join(tb)}"
    )
    content: dict[str, Any] = {"detail": "Internal Server Error"}
    if trace_id:
        content["trace_id"] = trace_id
    return JSONResponse(status_code=500, content=content)


def run(reload: bool | None = None) -> None:
    """Serve the app with uvicorn. Reloads on change in dev mode."""
    uvicorn.run(
        "latchkey.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.dev_mode if reload is None else reload,
    )


if __name__ == "__main__":
    run()
