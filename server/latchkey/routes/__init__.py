"""Route modules for the Latchkey API."""

from fastapi import APIRouter

from latchkey.auth.routes import router as auth_router

from .health import router as health_router


def create_api_router() -> APIRouter:
    """Create aggregated router with all API routes."""
    api_router = APIRouter()
    api_router.include_router(health_router)
    api_router.include_router(auth_router)
    return api_router


__all__ = ["create_api_router"]
