"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
"""

from fastapi import APIRouter

from cordline.api.routes.conversations import router as conversations_router
from cordline.api.routes.events import router as events_router
from cordline.api.routes.health import router as health_router


def create_api_router() -> APIRouter:
    """Create the API router with all routes registered."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(conversations_router, tags=["conversations"])
    api_router.include_router(events_router, tags=["events"])
    return api_router


__all__ = ["create_api_router"]
