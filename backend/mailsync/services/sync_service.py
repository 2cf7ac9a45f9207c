"""Caller-facing scheduler API: queue_job and run_queue.

The service owns one JobStore, one ConcurrencyGovernor and one JobExecutor; nothing
here is a module-level singleton, so tests and workers can build their own.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy.orm import sessionmaker

from ..config import settings
from ..errors import InvalidAccount
from ..jobs import SyncDomain
from .accounts import AccountDirectory, SqlAccountDirectory
from .collaborators import Collaborator, CollaboratorRegistry, load_collaborators
from .dispatcher import SyncDispatcher
from .executor import JobExecutor
from .governor import ConcurrencyGovernor, GovernorLimits
from .job_store import JobStore
from .summary import SyncRunSummary

logger = logging.getLogger(__name__)


class SyncService:
    def __init__(
        self,
        store: JobStore,
        accounts: AccountDirectory,
        registry: CollaboratorRegistry,
        *,
        governor: Optional[ConcurrencyGovernor] = None,
        executor: Optional[JobExecutor] = None,
        run_deadline_s: Optional[float] = None,
    ):
        self.store = store
        self.accounts = accounts
        self.registry = registry
        self.governor = governor or ConcurrencyGovernor(GovernorLimits.from_settings())
        self.executor = executor or JobExecutor(registry, accounts)
        self.dispatcher = SyncDispatcher(
            store,
            self.governor,
            self.executor,
            run_deadline_s=run_deadline_s,
        )

    @classmethod
    def from_session_factory(
        cls,
        session_factory: sessionmaker,
        collaborators: Optional[Mapping[SyncDomain, Collaborator]] = None,
    ) -> "SyncService":
        """Adapters default to the ones named in settings.sync_collaborators."""
        if collaborators is None:
            collaborators = load_collaborators(settings.sync_collaborators)
        return cls(
            JobStore(session_factory),
            SqlAccountDirectory(session_factory),
            CollaboratorRegistry(collaborators),
        )

    def queue_job(
        self,
        account_id: str,
        domain: SyncDomain,
        payload: Optional[dict[str, Any]] = None,
        run_after_offset_secs: float = 0,
        *,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Enqueue a job for an existing account. Negative offsets are treated as 0."""
        if self.accounts.resolve(account_id) is None:
            raise InvalidAccount(account_id)
        offset = max(0.0, float(run_after_offset_secs or 0))
        run_after = self.store.clock() + timedelta(seconds=offset)
        return self.store.enqueue(account_id, SyncDomain(domain), payload or {}, run_after, max_attempts=max_attempts)

    def schedule_sync_jobs(self) -> int:
        """
        Queue one job for every (account, registered domain) pair with nothing pending or
        running. Pairs that have synced before are delayed by the domain's poll interval;
        new pairs are due now. Returns the number of jobs queued.
        """
        now = self.store.clock()
        scheduled = 0
        for account_id in self.accounts.list_ids():
            for domain in self.registry.domains():
                if self.store.has_active_job(account_id, domain):
                    continue
                delay_s = poll_interval_s(domain) if self.store.has_history(account_id, domain) else 0
                self.store.enqueue(account_id, domain, {}, now + timedelta(seconds=delay_s))
                scheduled += 1
        if scheduled:
            logger.info(f"Scheduled {scheduled} sync jobs")
        return scheduled

    def run_queue(self, deadline: Optional[datetime] = None) -> SyncRunSummary:
        """One bounded dispatch pass."""
        return self.dispatcher.run(deadline=deadline)


def poll_interval_s(domain: SyncDomain) -> int:
    return {
        SyncDomain.EMAIL: settings.sync_email_poll_interval_s,
        SyncDomain.CALENDAR: settings.sync_calendar_poll_interval_s,
        SyncDomain.TASKS: settings.sync_tasks_poll_interval_s,
    }[SyncDomain(domain)]


_default_service: Optional[SyncService] = None
_default_lock = threading.Lock()


def get_sync_service() -> SyncService:
    """
    Process-wide service bound to the app database. Used by the API dependency and the
    Celery worker; adapters are registered on it at startup by the host application.
    """
    global _default_service
    with _default_lock:
        if _default_service is None:
            from ..database import SessionLocal
            _default_service = SyncService.from_session_factory(SessionLocal)
            logger.info(
                f"Sync service ready (max_parallel_jobs={settings.sync_max_parallel_jobs}, "
                f"fairness={settings.sync_fairness})"
            )
        return _default_service
