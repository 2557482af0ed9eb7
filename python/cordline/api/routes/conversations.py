"""Conversations and Messages API routes.

Routes are transport-only: each resolves its inputs and calls one service
function.

All routes require authentication.
Response envelope: {"data": ...} or {"data": [...], "page": {...}}
Error envelope: {"error": {"code": "...", "message": "...", "request_id": "..."}}
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from cordline.api.deps import get_db, get_message_bus, get_moderator
from cordline.auth.middleware import Viewer, get_viewer
from cordline.responses import page_response, success_response
from cordline.schemas.conversation import (
    AddParticipantRequest,
    ConversationRefOut,
    CreateConversationRequest,
    SendMessageRequest,
    UpdateCordRequest,
    UpdateStatusRequest,
)
from cordline.services import conversations as conversations_service
from cordline.services import message_status as message_status_service
from cordline.services import messages as messages_service
from cordline.services import unread as unread_service
from cordline.services import users as users_service
from cordline.services.fanout import MessageBus
from cordline.services.moderation import Moderator
from cordline.services.patch import CordSettingsUpdate

router = APIRouter(tags=["conversations"])

ViewerParam = Annotated[Viewer, Depends(get_viewer)]
DbParam = Annotated[Session, Depends(get_db)]
BusParam = Annotated[MessageBus, Depends(get_message_bus)]


# =============================================================================
# Conversation Endpoints
# =============================================================================


@router.post("/conversations")
def get_or_create_conversation(
    body: CreateConversationRequest,
    response: Response,
    viewer: ViewerParam,
    db: DbParam,
) -> dict:
    """Get or create the conversation with the given peer(s).

    Returns 201 when a conversation was created, 200 when it already existed.

    Errors:
        E_USER_NOT_FOUND (404): A peer username is unknown.
        E_SELF_CONVERSATION (400): The only peer is the viewer.
        E_INVALID_TIMER (400): Timer out of range.
    """
    if body.peer_username is not None:
        peer = users_service.get_user_by_username(db, body.peer_username)
        conversation_id, created = conversations_service.get_or_create_conversation(
            db, viewer.user_id, peer.id, encrypted=body.encrypted, timer=body.timer
        )
    else:
        peers = users_service.get_users_by_usernames(db, body.peer_usernames or [])
        conversation_id, created = conversations_service.get_or_create_group_conversation(
            db,
            viewer.user_id,
            [peer.id for peer in peers],
            encrypted=body.encrypted,
            timer=body.timer,
        )

    response.status_code = 201 if created else 200
    return success_response(
        ConversationRefOut(id=conversation_id, created=created).model_dump(mode="json")
    )


@router.get("/conversations")
def list_conversations(
    viewer: ViewerParam,
    db: DbParam,
    limit: int = Query(default=50, description="Maximum results, clamped to 1-100"),
    cursor: str | None = Query(default=None, description="Pagination cursor"),
) -> dict:
    """List the viewer's conversations, most recently active first.

    Errors:
        E_INVALID_CURSOR (400): Cursor is malformed.
    """
    conversations, page = conversations_service.list_conversations(
        db=db, viewer_id=viewer.user_id, limit=limit, cursor=cursor
    )
    return page_response(conversations, page)


@router.get("/conversations/{conversation_id}")
def get_conversation(conversation_id: UUID, viewer: ViewerParam, db: DbParam) -> dict:
    """Get a conversation with its participants and the viewer's unread count."""
    result = conversations_service.get_conversation(db, viewer.user_id, conversation_id)
    return success_response(result.model_dump(mode="json"))


@router.post("/conversations/{conversation_id}/participants")
def add_participant(
    conversation_id: UUID,
    body: AddParticipantRequest,
    viewer: ViewerParam,
    db: DbParam,
) -> dict:
    """Add a member to a conversation. Adding an existing member is a no-op."""
    user = users_service.get_user_by_username(db, body.username)
    result = conversations_service.add_participant(db, viewer.user_id, conversation_id, user.id)
    return success_response(result.model_dump(mode="json"))


@router.patch("/conversations/{conversation_id}/cord")
def update_cord(
    conversation_id: UUID,
    body: UpdateCordRequest,
    viewer: ViewerParam,
    db: DbParam,
) -> dict:
    """Change the encrypted cord's active flag and/or self-destruct timer.

    Errors:
        E_CORD_NOT_FOUND (404): The conversation is not encrypted.
        E_INVALID_TIMER (400): Timer out of range.
    """
    patch = CordSettingsUpdate(
        is_active=body.is_active, self_destruct_timer=body.self_destruct_timer
    )
    result = conversations_service.update_cord_settings(db, viewer.user_id, conversation_id, patch)
    return success_response(result.model_dump(mode="json"))


@router.post("/conversations/{conversation_id}/read")
def mark_read(conversation_id: UUID, viewer: ViewerParam, db: DbParam, bus: BusParam) -> dict:
    """Mark the conversation read for the viewer. Idempotent."""
    unread_service.mark_conversation_read(db, viewer.user_id, conversation_id, bus)
    return success_response({"success": True})


# =============================================================================
# Message Endpoints
# =============================================================================


@router.get("/conversations/{conversation_id}/messages")
def list_messages(
    conversation_id: UUID,
    viewer: ViewerParam,
    db: DbParam,
    limit: int = Query(default=50, description="Maximum results, clamped to 1-100"),
    before: UUID | None = Query(default=None, description="Return messages older than this id"),
) -> dict:
    """List messages, oldest first within the page.

    Errors:
        E_INVALID_CURSOR (400): before is not a message of this conversation.
    """
    messages, page = messages_service.list_messages(
        db=db, viewer_id=viewer.user_id, conversation_id=conversation_id, limit=limit, before=before
    )
    return page_response(messages, page)


@router.post("/conversations/{conversation_id}/messages", status_code=201)
def send_message(
    conversation_id: UUID,
    body: SendMessageRequest,
    viewer: ViewerParam,
    db: DbParam,
    bus: BusParam,
    moderator: Annotated[Moderator | None, Depends(get_moderator)],
) -> dict:
    """Send a message.

    Errors:
        E_MESSAGE_EMPTY (400): Neither text nor media.
        E_MESSAGE_TOO_LONG (400): Text over 10,000 characters.
        E_CONTENT_FLAGGED (400): Rejected by moderation.
    """
    media = body.media
    result = messages_service.send_message(
        db,
        viewer.user_id,
        conversation_id,
        text=body.text,
        image_url=media.image_url if media else None,
        video_url=media.video_url if media else None,
        metadata=body.metadata,
        bus=bus,
        moderator=moderator,
    )
    return success_response(result.model_dump(mode="json"))


@router.get("/conversations/{conversation_id}/messages/{message_id}")
def get_message(conversation_id: UUID, message_id: UUID, viewer: ViewerParam, db: DbParam) -> dict:
    """Get one message.

    Errors:
        E_MESSAGE_NOT_FOUND (404): Missing, expired, or in another conversation.
    """
    result = messages_service.get_message_for_participant(
        db, viewer.user_id, message_id, conversation_id=conversation_id
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/conversations/{conversation_id}/messages/{message_id}/status")
def update_message_status(
    conversation_id: UUID,
    message_id: UUID,
    body: UpdateStatusRequest,
    viewer: ViewerParam,
    db: DbParam,
    bus: BusParam,
) -> dict:
    """Report delivered/read for a message.

    Repeating or regressing a status succeeds with changed=false.

    Errors:
        E_INVALID_STATUS (400): Status other than delivered or read.
        E_MESSAGE_NOT_FOUND (404): Message not in this conversation.
    """
    changed = message_status_service.update_status(
        db,
        viewer.user_id,
        message_id,
        body.status,
        bus,
        conversation_id=conversation_id,
    )
    return success_response({"success": True, "changed": changed})


@router.get("/conversations/{conversation_id}/messages/{message_id}/status")
def list_message_statuses(
    conversation_id: UUID, message_id: UUID, viewer: ViewerParam, db: DbParam
) -> dict:
    """Per-participant status rows of a message."""
    statuses = message_status_service.list_statuses(
        db, viewer.user_id, conversation_id, message_id
    )
    return success_response([s.model_dump(mode="json") for s in statuses])
