"""SQLAlchemy ORM models for Cordline.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Column types are the portable SQLAlchemy types (Uuid, JSON, DateTime) so the
same models run against PostgreSQL in deployment and SQLite in tests.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    SQLite has no timezone storage, so values are normalized to UTC on the
    way in and re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class DeliveryStatus(str, PyEnum):
    """Per-participant delivery state of a message.

    States only move forward: sent -> delivered -> read.
    """

    sent = "sent"
    delivered = "delivered"
    read = "read"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    DeliveryStatus.sent: 0,
    DeliveryStatus.delivered: 1,
    DeliveryStatus.read: 2,
}


# =============================================================================
# Models
# =============================================================================


class User(Base):
    """Local mirror of an authenticated user.

    The user ID matches the auth provider's user ID (sub claim).
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class Conversation(Base):
    """Conversation model - a message stream shared by two or more participants.

    dedup_key holds the sorted participant set plus mode while the set is
    still the one the conversation was created with; it is cleared when a
    member is added so the conversation no longer answers get-or-create.
    """

    __tablename__ = "conversations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    creator_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    dedup_key: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    last_message_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_conversations_updated_at", "updated_at"),)

    # Relationships
    participants: Mapped[list["ConversationParticipant"]] = relationship(
        "ConversationParticipant", back_populates="conversation", cascade="all, delete-orphan"
    )
    messages: Mapped[list["Message"]] = relationship(
        "Message", back_populates="conversation", cascade="all, delete-orphan"
    )
    cord: Mapped["EncryptedCord | None"] = relationship(
        "EncryptedCord", back_populates="conversation", cascade="all, delete-orphan", uselist=False
    )


class ConversationParticipant(Base):
    """A user's membership in a conversation, carrying per-user read state."""

    __tablename__ = "conversation_participants"

    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    unread_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_read_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("unread_count >= 0", name="ck_participants_unread_nonnegative"),
        Index("ix_participants_user_id", "user_id"),
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="participants"
    )
    user: Mapped["User"] = relationship("User")


class Message(Base):
    """Message model - immutable apart from the status summary and delete_at."""

    __tablename__ = "messages"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    video_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata", JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    status: Mapped[str] = mapped_column(Text, nullable=False, default=DeliveryStatus.sent.value)
    is_encrypted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    delete_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('sent', 'delivered', 'read')",
            name="ck_messages_status",
        ),
        CheckConstraint(
            "text IS NOT NULL OR image_url IS NOT NULL OR video_url IS NOT NULL",
            name="ck_messages_has_content",
        ),
        CheckConstraint("text IS NULL OR length(text) <= 10000", name="ck_messages_text_length"),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_delete_at", "delete_at"),
    )

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="messages")
    sender: Mapped["User"] = relationship("User")
    statuses: Mapped[list["MessageStatus"]] = relationship(
        "MessageStatus", back_populates="message", cascade="all, delete-orphan"
    )


class MessageStatus(Base):
    """Delivery status of one message for one participant."""

    __tablename__ = "message_status"

    message_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('sent', 'delivered', 'read')",
            name="ck_message_status_status",
        ),
    )

    message: Mapped["Message"] = relationship("Message", back_populates="statuses")


class EncryptedCord(Base):
    """Self-destruct policy attached one-to-one to a conversation.

    Not a cipher: its presence flags new messages as encrypted and makes
    them expire self_destruct_timer seconds after being read.
    """

    __tablename__ = "encrypted_cords"

    conversation_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    self_destruct_timer: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("self_destruct_timer > 0", name="ck_encrypted_cords_timer_positive"),
    )

    conversation: Mapped["Conversation"] = relationship("Conversation", back_populates="cord")
