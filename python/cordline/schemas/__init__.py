"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from cordline.schemas.conversation import (
    AddParticipantRequest,
    ConversationOut,
    ConversationRefOut,
    CordOut,
    CreateConversationRequest,
    MediaIn,
    MessageOut,
    MessageStatusOut,
    PageInfo,
    ParticipantOut,
    SendMessageRequest,
    UpdateCordRequest,
    UpdateStatusRequest,
)

__all__ = [
    "AddParticipantRequest",
    "ConversationOut",
    "ConversationRefOut",
    "CordOut",
    "CreateConversationRequest",
    "MediaIn",
    "MessageOut",
    "MessageStatusOut",
    "PageInfo",
    "ParticipantOut",
    "SendMessageRequest",
    "UpdateCordRequest",
    "UpdateStatusRequest",
]
