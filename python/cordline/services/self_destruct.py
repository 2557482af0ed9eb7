"""Self-destruct deadlines for encrypted messages.

A message sent while the conversation's cord was active is encrypted. The
first time a recipient marks the conversation read, each such message gets
delete_at = now + cord timer. The reaper hard-deletes rows whose deadline
has passed; their status rows go with them (ON DELETE CASCADE).
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from cordline.db.models import EncryptedCord, Message, utcnow
from cordline.db.session import transaction
from cordline.logging import get_logger

logger = get_logger(__name__)


def stamp_delete_deadlines(
    db: Session, conversation_id: UUID, viewer_id: UUID, now: datetime
) -> int:
    """Set delete_at on encrypted messages viewer_id received that have none.

    Runs inside the caller's transaction. The timer is read from the cord
    at stamping time; deadlines already set are never moved. A deactivated
    cord still stamps messages that were sent while it was active. Messages
    the viewer sent are skipped.

    Returns:
        Number of messages stamped.
    """
    cord = db.get(EncryptedCord, conversation_id)
    if cord is None:
        return 0

    deadline = now + timedelta(seconds=cord.self_destruct_timer)
    result = db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.is_encrypted.is_(True),
            Message.delete_at.is_(None),
            Message.sender_id != viewer_id,
        )
        .values(delete_at=deadline)
    )
    if result.rowcount:
        logger.info(
            "self_destruct_stamped",
            conversation_id=str(conversation_id),
            message_count=result.rowcount,
            delete_at=deadline.isoformat(),
        )
    return result.rowcount


def reap_expired_messages(db: Session, now: datetime | None = None) -> int:
    """Hard-delete every message whose delete_at has passed.

    Idempotent: rows already gone are simply not matched again.

    Returns:
        Number of messages deleted.
    """
    now = now or utcnow()
    with transaction(db):
        result = db.execute(
            delete(Message).where(
                Message.delete_at.is_not(None),
                Message.delete_at <= now,
            )
        )
    logger.info("expired_messages_reaped", deleted_count=result.rowcount)
    return result.rowcount
