"""Health and version endpoints."""

import os

from fastapi import APIRouter
from sqlalchemy import text

from latchkey import __version__
from latchkey.db import get_session

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint - no auth required.

    Also runs a trivial query so a dead database shows up here.
    """
    async with get_session() as session:
        await session.execute(text("SELECT 1"))
    return {"status": "ok"}


@router.get("/version")
async def version() -> dict[str, str | None]:
    """Version info endpoint - no auth required."""
    return {
        "version": __version__,
        "commit": os.environ.get("APP_COMMIT"),
        "build_time": os.environ.get("APP_BUILD_TIME"),
    }
