"""Per-participant delivery status and the message-level summary.

Each participant has one status row per message: sent -> delivered -> read.
Rows only ever move forward; reporting the current or an earlier status
is an idempotent no-op, not an error.

Rollup: after a row advances to S, if every non-sender participant is now
exactly at S, the message's summary status is raised to S and the sender is
notified with a message_status_update event (published after commit).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from cordline.db.models import DeliveryStatus, Message, MessageStatus, utcnow
from cordline.db.session import transaction
from cordline.errors import ApiErrorCode, InvalidRequestError, NotFoundError
from cordline.logging import get_logger
from cordline.schemas.conversation import MessageStatusOut
from cordline.services.conversations import require_participant
from cordline.services.fanout import STATUS_UPDATE_EVENT, FanoutBatch, MessageBus

logger = get_logger(__name__)

# Statuses a participant may report; "sent" is only ever seeded by the server.
REPORTABLE_STATUSES = (DeliveryStatus.delivered, DeliveryStatus.read)


def parse_reportable_status(status: str) -> DeliveryStatus:
    """Validate a client-reported status.

    Raises:
        InvalidRequestError(E_INVALID_STATUS): Unless status is delivered or read.
    """
    for candidate in REPORTABLE_STATUSES:
        if status == candidate.value:
            return candidate
    raise InvalidRequestError(ApiErrorCode.E_INVALID_STATUS, "Status must be 'delivered' or 'read'")


def _below(status: DeliveryStatus) -> list[str]:
    return [s.value for s in DeliveryStatus if s.rank < status.rank]


def seed_statuses(
    db: Session,
    message_id: UUID,
    sender_id: UUID,
    participant_ids: list[UUID],
    now: datetime,
) -> None:
    """Create one status row per participant for a new message.

    The sender's own row starts at read; everyone else starts at sent.
    """
    db.add_all(
        MessageStatus(
            message_id=message_id,
            user_id=user_id,
            status=(DeliveryStatus.read if user_id == sender_id else DeliveryStatus.sent).value,
            updated_at=now,
        )
        for user_id in participant_ids
    )


def load_message_in_conversation(
    db: Session, conversation_id: UUID, message_id: UUID
) -> Message:
    """Load a message that must belong to conversation_id.

    Raises:
        NotFoundError(E_MESSAGE_NOT_FOUND): If missing or in another conversation.
    """
    message = db.get(Message, message_id)
    if message is None or message.conversation_id != conversation_id:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
    return message


def apply_status(
    db: Session,
    message: Message,
    user_id: UUID,
    status: DeliveryStatus,
    batch: FanoutBatch,
    now: datetime | None = None,
) -> bool:
    """Advance one participant's row and roll the summary up if warranted.

    Must run inside the caller's transaction. The conditional UPDATE only
    matches rows still below status, so concurrent reporters cannot regress
    a row and exactly one of them observes the change.

    Returns:
        True if the row changed.
    """
    now = now or utcnow()

    result = db.execute(
        update(MessageStatus)
        .where(
            MessageStatus.message_id == message.id,
            MessageStatus.user_id == user_id,
            MessageStatus.status.in_(_below(status)),
        )
        .values(status=status.value, updated_at=now)
    )
    if result.rowcount == 0:
        return False

    _roll_up(db, message, status, batch, now)
    return True


def _roll_up(
    db: Session,
    message: Message,
    status: DeliveryStatus,
    batch: FanoutBatch,
    now: datetime,
) -> None:
    pending = db.scalar(
        select(func.count())
        .select_from(MessageStatus)
        .where(
            MessageStatus.message_id == message.id,
            MessageStatus.user_id != message.sender_id,
            MessageStatus.status != status.value,
        )
    )
    if pending:
        return

    result = db.execute(
        update(Message)
        .where(Message.id == message.id, Message.status.in_(_below(status)))
        .values(status=status.value)
    )
    if result.rowcount == 0:
        return

    batch.add(
        message.sender_id,
        STATUS_UPDATE_EVENT,
        {
            "message_id": str(message.id),
            "conversation_id": str(message.conversation_id),
            "status": status.value,
            "updated_at": now.isoformat(),
        },
    )
    logger.info(
        "message_status_rolled_up",
        message_id=str(message.id),
        status=status.value,
    )


def update_status(
    db: Session,
    viewer_id: UUID,
    message_id: UUID,
    status: str,
    bus: MessageBus,
    conversation_id: UUID | None = None,
) -> bool:
    """Record that viewer has reached status for a message.

    Args:
        db: Database session.
        viewer_id: The reporting participant.
        message_id: The message.
        status: "delivered" or "read".
        bus: Fanout bus for the rollup event.
        conversation_id: When given, the message must belong to it.

    Returns:
        True if the viewer's row changed; False for a repeat or regression.

    Raises:
        InvalidRequestError(E_INVALID_STATUS): If status is not reportable.
        ForbiddenError(E_FORBIDDEN): If viewer is not a participant.
        NotFoundError(E_MESSAGE_NOT_FOUND): If the message does not exist
            (or is not in conversation_id).
    """
    new_status = parse_reportable_status(status)
    batch = FanoutBatch()

    with transaction(db):
        if conversation_id is not None:
            require_participant(db, conversation_id, viewer_id)
            message = load_message_in_conversation(db, conversation_id, message_id)
        else:
            message = db.get(Message, message_id)
            if message is None:
                raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
            require_participant(db, message.conversation_id, viewer_id)

        changed = apply_status(db, message, viewer_id, new_status, batch)

    batch.flush(bus)

    logger.info(
        "message_status_reported",
        message_id=str(message_id),
        status=new_status.value,
        changed=changed,
    )
    return changed


def list_statuses(
    db: Session, viewer_id: UUID, conversation_id: UUID, message_id: UUID
) -> list[MessageStatusOut]:
    """Per-participant status rows of a message.

    Raises:
        ForbiddenError(E_FORBIDDEN): If viewer is not a participant.
        NotFoundError(E_MESSAGE_NOT_FOUND): If the message is not in the conversation.
    """
    require_participant(db, conversation_id, viewer_id)
    load_message_in_conversation(db, conversation_id, message_id)

    rows = db.scalars(
        select(MessageStatus)
        .where(MessageStatus.message_id == message_id)
        .order_by(MessageStatus.user_id)
        .execution_options(populate_existing=True)
    )
    return [
        MessageStatusOut(user_id=row.user_id, status=row.status, updated_at=row.updated_at)
        for row in rows
    ]
