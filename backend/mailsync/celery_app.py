"""Celery app for background sync runs. Uses Redis; beat triggers a queue pass periodically."""
from celery import Celery
from .config import settings

celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailsync.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "run-sync-queue": {
            "task": "mailsync.tasks.run_sync_queue",
            "schedule": float(settings.sync_run_interval_s),
        },
        "purge-succeeded-sync-jobs": {
            "task": "mailsync.tasks.purge_succeeded_jobs",
            "schedule": 3600.0,
        },
    },
)
