"""Per-participant unread counters and mark-as-read."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from cordline.db.models import ConversationParticipant, DeliveryStatus, Message, MessageStatus, utcnow
from cordline.db.session import transaction
from cordline.logging import get_logger
from cordline.services.conversations import require_participant
from cordline.services.fanout import FanoutBatch, MessageBus
from cordline.services.message_status import apply_status
from cordline.services.self_destruct import stamp_delete_deadlines

logger = get_logger(__name__)


def increment_unread(db: Session, conversation_id: UUID, sender_id: UUID) -> int:
    """Add one to every participant's counter except the sender's.

    Evaluated in SQL (unread_count + 1) so concurrent sends never lose an increment.

    Returns:
        Number of counters incremented.
    """
    result = db.execute(
        update(ConversationParticipant)
        .where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id != sender_id,
        )
        .values(unread_count=ConversationParticipant.unread_count + 1)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


def get_unread_count(db: Session, conversation_id: UUID, user_id: UUID) -> int | None:
    """A participant's unread counter, or None if not a participant."""
    return db.scalar(
        select(ConversationParticipant.unread_count)
        .where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.user_id == user_id,
        )
        .execution_options(populate_existing=True)
    )


def mark_conversation_read(
    db: Session,
    viewer_id: UUID,
    conversation_id: UUID,
    bus: MessageBus,
    now: datetime | None = None,
) -> None:
    """Mark a conversation read for the viewer.

    In one transaction:
    - the viewer's unread counter is reset and last_read_at set
    - encrypted messages the viewer received without a deadline get one
      from the cord timer
    - every message still below read for the viewer advances to read
      (rolling up summaries exactly as individual status reports would)

    Idempotent: repeating it changes nothing beyond last_read_at.

    Raises:
        ForbiddenError(E_FORBIDDEN): If viewer is not a participant.
    """
    require_participant(db, conversation_id, viewer_id)

    now = now or utcnow()
    batch = FanoutBatch()

    with transaction(db):
        db.execute(
            update(ConversationParticipant)
            .where(
                ConversationParticipant.conversation_id == conversation_id,
                ConversationParticipant.user_id == viewer_id,
            )
            .values(unread_count=0, last_read_at=now)
        )

        stamp_delete_deadlines(db, conversation_id, viewer_id, now)

        unread_messages = db.scalars(
            select(Message)
            .join(
                MessageStatus,
                (MessageStatus.message_id == Message.id) & (MessageStatus.user_id == viewer_id),
            )
            .where(
                Message.conversation_id == conversation_id,
                MessageStatus.status != DeliveryStatus.read.value,
            )
            .order_by(Message.created_at, Message.id)
        ).all()

        for message in unread_messages:
            apply_status(db, message, viewer_id, DeliveryStatus.read, batch, now=now)

    batch.flush(bus)

    logger.info(
        "conversation_marked_read",
        conversation_id=str(conversation_id),
        messages_read=len(unread_messages),
    )
