"""Business logic services.

Services are called by route handlers and orchestrate database operations.
"""

from cordline.services.conversations import (
    get_or_create_conversation,
    get_or_create_group_conversation,
    is_participant,
    require_participant,
)
from cordline.services.message_status import update_status
from cordline.services.messages import list_messages, send_message
from cordline.services.self_destruct import reap_expired_messages
from cordline.services.unread import mark_conversation_read
from cordline.services.users import ensure_user

__all__ = [
    "ensure_user",
    "get_or_create_conversation",
    "get_or_create_group_conversation",
    "is_participant",
    "list_messages",
    "mark_conversation_read",
    "reap_expired_messages",
    "require_participant",
    "send_message",
    "update_status",
]
