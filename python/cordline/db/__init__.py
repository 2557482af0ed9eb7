"""Database module for Cordline.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from cordline.db.engine import create_db_engine, get_engine
from cordline.db.models import (
    Base,
    Conversation,
    ConversationParticipant,
    DeliveryStatus,
    EncryptedCord,
    Message,
    MessageStatus,
    User,
)
from cordline.db.session import get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Enums
    "DeliveryStatus",
    # Models
    "User",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "MessageStatus",
    "EncryptedCord",
]
