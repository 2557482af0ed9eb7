"""Self-destruct reaper task.

Celery beat job: reap_expired_messages, every REAPER_INTERVAL_S seconds.
Hard-deletes messages whose delete_at has passed. Safe to overlap or
rerun: a row is only ever deleted once.
"""

from cordline.celery import celery_app
from cordline.db.session import get_session_factory
from cordline.logging import clear_log_context, configure_task_logging, get_logger
from cordline.services.self_destruct import reap_expired_messages as reap

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="reap_expired_messages")
def reap_expired_messages(self, request_id: str | None = None) -> dict:
    """Delete expired encrypted messages.

    Returns:
        {"deleted": <count>}
    """
    configure_task_logging(request_id=request_id, task_name=self.name, task_id=self.request.id)

    session_factory = get_session_factory()
    db = session_factory()

    try:
        deleted = reap(db)
        return {"deleted": deleted}
    except Exception as e:
        logger.error("reap_expired_messages_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_log_context()
