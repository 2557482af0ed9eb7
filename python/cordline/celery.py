"""Celery application shared by the worker and beat.

The only periodic job is the self-destruct reaper. Broker and result
backend default to REDIS_URL.

Usage:
    celery -A apps.worker.main:celery_app worker -Q default --loglevel=info
    celery -A apps.worker.main:celery_app beat --loglevel=info
"""

from celery import Celery

from cordline.config import get_settings

settings = get_settings()

celery_app = Celery("cordline")

celery_app.conf.update(
    broker_url=settings.effective_celery_broker_url,
    result_backend=settings.effective_celery_result_backend,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_default_queue="default",
    beat_schedule={
        # A run that is still queued when the next one is due is dropped.
        "reap-expired-messages": {
            "task": "reap_expired_messages",
            "schedule": float(settings.reaper_interval_s),
            "options": {"expires": float(settings.reaper_interval_s)},
        },
    },
)
