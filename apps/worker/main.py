"""Celery worker and beat entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q default --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info

Task definitions are in the cordline.tasks package - no autodiscovery.
Tasks accept `request_id: str | None = None` for log correlation and call
configure_task_logging() on entry.
"""

from celery.signals import worker_process_init

from cordline.celery import celery_app
from cordline.logging import configure_logging, get_logger

# Import tasks to register them with the celery_app
from cordline.tasks import reap_expired_messages  # noqa: F401


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when a worker process starts."""
    configure_logging()
    get_logger(__name__).info("celery_worker_started", queue="default")


__all__ = ["celery_app"]
