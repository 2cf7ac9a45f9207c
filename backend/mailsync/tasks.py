"""Celery tasks: periodic sync queue pass and retention cleanup. State lives in the DB."""
import logging
from datetime import timedelta

from celery import shared_task

from .celery_app import celery_app  # noqa: F401 (binds shared tasks to our broker)
from .config import settings
from .errors import QueueIntegrityError
from .jobs import utcnow
from .services.sync_service import get_sync_service

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="mailsync.tasks.schedule_sync_jobs")
def schedule_sync_jobs(self):
    """Queue one job per (account, domain) pair that has nothing pending or running."""
    return {"scheduled_jobs": get_sync_service().schedule_sync_jobs()}


@shared_task(bind=True, name="mailsync.tasks.run_sync_queue")
def run_sync_queue(self):
    """
    Schedule due (account, domain) pairs, then run one bounded pass over the sync queue.
    Overlapping runs (beat + manual trigger) are safe: claims are atomic per job.
    """
    service = get_sync_service()
    scheduled = 0
    if settings.sync_auto_schedule:
        try:
            scheduled = service.schedule_sync_jobs()
        except QueueIntegrityError as e:
            # Already-queued jobs can still run.
            logger.error(f"Sync scheduling failed: {e}")
    try:
        summary = service.run_queue()
    except Exception as e:
        logger.error(f"Sync queue run failed: {e}")
        raise
    result = summary.to_dict()
    result["scheduled_jobs"] = scheduled
    result["pending_sync_jobs"] = service.store.pending_count()
    return result


@shared_task(bind=True, name="mailsync.tasks.purge_succeeded_jobs")
def purge_succeeded_jobs(self, retention_days: int = None):
    """Delete succeeded jobs older than the retention window. Dead letters are kept."""
    days = settings.sync_succeeded_retention_days if retention_days is None else int(retention_days)
    cutoff = utcnow() - timedelta(days=max(0, days))
    deleted = get_sync_service().store.purge_succeeded(cutoff)
    if deleted:
        logger.info(f"Purged {deleted} succeeded sync jobs older than {cutoff}")
    return {"deleted": deleted, "cutoff": cutoff.isoformat()}
