"""Conversation and Message Pydantic schemas.

Contains request and response models for the direct-messaging endpoints.
"""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Max text length per message - must match DB constraint
MAX_MESSAGE_TEXT_LENGTH = 10_000

# Statuses a participant may report - "sent" is only ever seeded by the server
REPORTABLE_STATUSES = Literal["delivered", "read"]


# =============================================================================
# Response Schemas
# =============================================================================


class ParticipantOut(BaseModel):
    """A conversation member as seen by other members."""

    user_id: UUID
    username: str
    display_name: str | None = None
    last_read_at: datetime | None = None


class ConversationOut(BaseModel):
    """Response schema for a conversation, scoped to the viewer.

    unread_count is the viewer's own counter.
    """

    id: UUID
    is_encrypted: bool
    self_destruct_timer: int | None = None
    unread_count: int
    participants: list[ParticipantOut]
    created_at: datetime
    updated_at: datetime
    last_message_at: datetime | None = None


class ConversationRefOut(BaseModel):
    """Response for get-or-create: the id plus whether a row was inserted."""

    id: UUID
    created: bool


class CordOut(BaseModel):
    """Encrypted cord settings of a conversation."""

    conversation_id: UUID
    is_active: bool
    self_destruct_timer: int

    model_config = ConfigDict(from_attributes=True)


class MessageOut(BaseModel):
    """Response schema for a message.

    status is the rolled-up summary across recipients; per-participant
    rows are served by the status endpoint.
    """

    id: UUID
    conversation_id: UUID
    sender_id: UUID
    text: str | None = None
    image_url: str | None = None
    video_url: str | None = None
    metadata: dict[str, Any] | None = None
    status: str  # "sent" | "delivered" | "read"
    is_encrypted: bool
    delete_at: datetime | None = None
    created_at: datetime


class MessageStatusOut(BaseModel):
    """One participant's delivery status for a message."""

    user_id: UUID
    status: str
    updated_at: datetime


class PageInfo(BaseModel):
    """Pagination information for list responses."""

    next_cursor: str | None = None


# =============================================================================
# Request Schemas
# =============================================================================


class CreateConversationRequest(BaseModel):
    """Request schema for get-or-create conversation.

    Exactly one of peer_username (1:1) or peer_usernames (group) is given.
    timer only applies when encrypted is true.
    """

    peer_username: str | None = None
    peer_usernames: list[str] | None = Field(default=None, min_length=1, max_length=50)
    encrypted: bool = False
    timer: int | None = Field(default=None, ge=1)

    model_config = ConfigDict(str_strip_whitespace=True)

    @model_validator(mode="after")
    def one_peer_form(self) -> "CreateConversationRequest":
        if bool(self.peer_username) == bool(self.peer_usernames):
            raise ValueError("Provide exactly one of peer_username or peer_usernames")
        return self


class MediaIn(BaseModel):
    """Media attached to a message (references only, never bytes)."""

    image_url: str | None = None
    video_url: str | None = None


class SendMessageRequest(BaseModel):
    """Request schema for sending a message.

    Emptiness and length are checked by the service so the API returns
    E_MESSAGE_EMPTY / E_MESSAGE_TOO_LONG rather than a generic validation error.
    """

    text: str | None = None
    media: MediaIn | None = None
    metadata: dict[str, Any] | None = None


class UpdateStatusRequest(BaseModel):
    """Request schema for reporting delivery/read status."""

    status: str


class AddParticipantRequest(BaseModel):
    """Request schema for adding a member to a conversation."""

    username: str = Field(min_length=1)

    model_config = ConfigDict(str_strip_whitespace=True)


class UpdateCordRequest(BaseModel):
    """Request schema for patching encrypted cord settings."""

    is_active: bool | None = None
    self_destruct_timer: int | None = None
