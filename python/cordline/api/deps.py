"""FastAPI dependencies for route handlers.

Common dependencies like database sessions and the shared fanout bus.
"""

from fastapi import Request

from cordline.db.session import get_db, get_session_factory
from cordline.services.fanout import MessageBus, NoOpMessageBus
from cordline.services.moderation import Moderator

__all__ = ["get_db", "get_message_bus", "get_moderator", "get_session_factory"]


def get_message_bus(request: Request) -> MessageBus:
    """Get the shared fanout bus from app state.

    Falls back to a no-op bus when none was configured; clients then
    learn about new messages by polling.
    """
    bus = getattr(request.app.state, "message_bus", None)
    return bus if bus is not None else NoOpMessageBus()


def get_moderator(request: Request) -> Moderator | None:
    """Get the moderation gate from app state (None disables it)."""
    return getattr(request.app.state, "moderator", None)
