"""Message send and listing.

Sending a message is one transaction:
1. Lock the conversation row (serializes concurrent sends)
2. Insert the message (encrypted if the cord is active)
3. Bump the conversation's activity timestamps
4. Seed per-participant status rows
5. Increment every other participant's unread counter

new_message events are published only after commit, and a failed publish
never undoes the send.
"""

from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from cordline.db.models import Conversation, DeliveryStatus, EncryptedCord, Message, User, utcnow
from cordline.db.session import transaction
from cordline.errors import ApiErrorCode, ForbiddenError, InvalidRequestError, NotFoundError
from cordline.logging import get_logger
from cordline.schemas.conversation import MAX_MESSAGE_TEXT_LENGTH, MessageOut, PageInfo
from cordline.services.conversations import (
    DEFAULT_LIMIT,
    clamp_limit,
    lock_conversation,
    participant_ids,
    require_participant,
)
from cordline.services.fanout import NEW_MESSAGE_EVENT, FanoutBatch, MessageBus
from cordline.services.message_status import seed_statuses
from cordline.services.moderation import Moderator
from cordline.services.patch import ConversationActivityUpdate, build_update
from cordline.services.unread import increment_unread

logger = get_logger(__name__)


def message_to_out(message: Message) -> MessageOut:
    """Convert Message ORM model to MessageOut schema."""
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        text=message.text,
        image_url=message.image_url,
        video_url=message.video_url,
        metadata=message.metadata_,
        status=message.status,
        is_encrypted=message.is_encrypted,
        delete_at=message.delete_at,
        created_at=message.created_at,
    )


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value


def validate_message_content(
    text: str | None, image_url: str | None, video_url: str | None
) -> tuple[str | None, str | None, str | None]:
    """Normalize blank fields to None and enforce content rules.

    Raises:
        InvalidRequestError(E_MESSAGE_EMPTY): If there is neither text nor media.
        InvalidRequestError(E_MESSAGE_TOO_LONG): If text exceeds the maximum length.
    """
    text = _blank_to_none(text)
    image_url = _blank_to_none(image_url)
    video_url = _blank_to_none(video_url)

    if text is None and image_url is None and video_url is None:
        raise InvalidRequestError(ApiErrorCode.E_MESSAGE_EMPTY, "Message text or media is required")
    if text is not None and len(text) > MAX_MESSAGE_TEXT_LENGTH:
        raise InvalidRequestError(ApiErrorCode.E_MESSAGE_TOO_LONG, "Message too long")
    return text, image_url, video_url


def send_message(
    db: Session,
    viewer_id: UUID,
    conversation_id: UUID,
    text: str | None = None,
    image_url: str | None = None,
    video_url: str | None = None,
    metadata: dict[str, Any] | None = None,
    *,
    bus: MessageBus,
    moderator: Moderator | None = None,
) -> MessageOut:
    """Send a message to a conversation.

    Args:
        db: Database session.
        viewer_id: The sender.
        conversation_id: Target conversation.
        text: Message text.
        image_url: Optional image reference.
        video_url: Optional video reference.
        metadata: Optional opaque JSON metadata.
        bus: Fanout bus for new_message events.
        moderator: Gate consulted before insert; None disables moderation.

    Returns:
        The stored message, whose status rows already exist.

    Raises:
        ForbiddenError(E_FORBIDDEN): If sender is not a participant.
        InvalidRequestError(E_MESSAGE_EMPTY | E_MESSAGE_TOO_LONG): Invalid content.
        InvalidRequestError(E_CONTENT_FLAGGED): Rejected by moderation.
    """
    require_participant(db, conversation_id, viewer_id)
    text, image_url, video_url = validate_message_content(text, image_url, video_url)

    if text is not None and moderator is not None:
        verdict = moderator.check(text)
        if verdict.flagged:
            logger.info("message_flagged", conversation_id=str(conversation_id))
            raise InvalidRequestError(
                ApiErrorCode.E_CONTENT_FLAGGED, verdict.reason or "Message rejected by moderation"
            )

    batch = FanoutBatch()

    with transaction(db):
        conversation = lock_conversation(db, conversation_id)
        if conversation is None:
            raise ForbiddenError(ApiErrorCode.E_FORBIDDEN, "Not a participant of this conversation")

        now = utcnow()
        cord = db.get(EncryptedCord, conversation_id)

        message = Message(
            conversation_id=conversation_id,
            sender_id=viewer_id,
            text=text,
            image_url=image_url,
            video_url=video_url,
            metadata_=metadata,
            status=DeliveryStatus.sent.value,
            is_encrypted=bool(cord and cord.is_active),
            created_at=now,
        )
        db.add(message)
        db.flush()

        db.execute(
            build_update(
                Conversation,
                [Conversation.id == conversation_id],
                ConversationActivityUpdate(updated_at=now, last_message_at=now),
            )
        )

        members = participant_ids(db, conversation_id)
        seed_statuses(db, message.id, viewer_id, members, now)
        increment_unread(db, conversation_id, viewer_id)
        db.flush()

        out = message_to_out(message)
        sender = db.get(User, viewer_id)
        payload = {
            **out.model_dump(mode="json"),
            "sender_username": sender.username if sender else None,
            "sender_display_name": sender.display_name if sender else None,
        }
        for member_id in members:
            batch.add(member_id, NEW_MESSAGE_EVENT, payload)

    batch.flush(bus)

    logger.info(
        "message_sent",
        conversation_id=str(conversation_id),
        message_id=str(out.id),
        encrypted=out.is_encrypted,
        recipient_count=len(members) - 1,
    )
    return out


def list_messages(
    db: Session,
    viewer_id: UUID,
    conversation_id: UUID,
    limit: int = DEFAULT_LIMIT,
    before: UUID | None = None,
) -> tuple[list[MessageOut], PageInfo]:
    """List a conversation's messages, oldest first within the page.

    Pages walk backwards in time: next_cursor is the id of the oldest
    message returned, to be passed as before for the previous page.
    Messages past their self-destruct deadline are never returned, even
    before the reaper has removed them.

    Raises:
        ForbiddenError(E_FORBIDDEN): If viewer is not a participant.
        InvalidRequestError(E_INVALID_CURSOR): If before is not a message of
            this conversation.
    """
    require_participant(db, conversation_id, viewer_id)
    limit = clamp_limit(limit)
    now = utcnow()

    stmt = select(Message).where(
        Message.conversation_id == conversation_id,
        or_(Message.delete_at.is_(None), Message.delete_at > now),
    )

    if before is not None:
        anchor = db.get(Message, before)
        if anchor is None or anchor.conversation_id != conversation_id:
            raise InvalidRequestError(ApiErrorCode.E_INVALID_CURSOR, "Invalid cursor")
        stmt = stmt.where(
            or_(
                Message.created_at < anchor.created_at,
                and_(Message.created_at == anchor.created_at, Message.id < anchor.id),
            )
        )

    rows = list(
        db.scalars(
            stmt.order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit + 1)
            .execution_options(populate_existing=True)
        )
    )

    has_more = len(rows) > limit
    rows = rows[:limit]
    rows.reverse()

    next_cursor = str(rows[0].id) if has_more and rows else None
    return [message_to_out(m) for m in rows], PageInfo(next_cursor=next_cursor)


def get_message_for_participant(
    db: Session,
    viewer_id: UUID,
    message_id: UUID,
    conversation_id: UUID | None = None,
) -> MessageOut:
    """Fetch one message the viewer is allowed to see.

    A message past its self-destruct deadline is reported as missing.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): If missing, expired, or not in
            conversation_id when one is given.
        ForbiddenError(E_FORBIDDEN): If viewer is not a participant.
    """
    message = db.get(Message, message_id, populate_existing=True)
    if message is None or (
        conversation_id is not None and message.conversation_id != conversation_id
    ):
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")

    require_participant(db, message.conversation_id, viewer_id)

    if message.delete_at is not None and message.delete_at <= utcnow():
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
    return message_to_out(message)
