"""Runs one claimed job against its domain collaborator and classifies the result."""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from ..config import settings
from ..errors import PermanentSyncError, TransientSyncError
from ..jobs import Account, ExecutionOutcome, SyncJob
from .accounts import AccountDirectory
from .collaborators import CollaboratorRegistry, SyncResult

logger = logging.getLogger(__name__)


def _items_from_result(result: Any) -> Optional[int]:
    if isinstance(result, SyncResult):
        return result.items_synced
    if isinstance(result, bool):
        return None
    if isinstance(result, int):
        return result
    if isinstance(result, dict) and isinstance(result.get("items_synced"), int):
        return result["items_synced"]
    return None


class _Call:
    """Collaborator call on its own daemon thread so a hung adapter can be abandoned."""

    def __init__(self, fn, *args):
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, args=(fn, args), daemon=True)

    def _run(self, fn, args):
        try:
            self.result = fn(*args)
        except BaseException as e:
            self.error = e

    def wait(self, timeout_s: float) -> bool:
        self._thread.start()
        self._thread.join(timeout_s)
        return not self._thread.is_alive()

    def is_alive(self) -> bool:
        return self._thread.is_alive()


class JobExecutor:
    def __init__(
        self,
        registry: CollaboratorRegistry,
        accounts: AccountDirectory,
        *,
        timeout_s: Optional[float] = None,
    ):
        self.registry = registry
        self.accounts = accounts
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.sync_job_timeout_s)
        # job id -> timed-out call whose thread may still be running
        self._abandoned: dict[str, _Call] = {}
        self._lock = threading.Lock()

    def busy_job_ids(self) -> set[str]:
        """Jobs whose previous, timed-out attempt is still running. They must not be claimed yet."""
        with self._lock:
            for job_id in [j for j, call in self._abandoned.items() if not call.is_alive()]:
                del self._abandoned[job_id]
            return set(self._abandoned)

    def execute(self, job: SyncJob) -> ExecutionOutcome:
        try:
            account = self.accounts.resolve(job.account_id)
        except Exception as e:
            return ExecutionOutcome.transient(f"account lookup failed: {e}")
        if account is None:
            return ExecutionOutcome.permanent(f"account {job.account_id} not found")

        collaborator = self.registry.get(job.domain)
        if collaborator is None:
            return ExecutionOutcome.permanent(f"no collaborator registered for {job.domain.value}")

        return self._invoke(job, account, collaborator)

    def _invoke(self, job: SyncJob, account: Account, collaborator) -> ExecutionOutcome:
        call = _Call(collaborator.sync, account, dict(job.payload))
        if not call.wait(self.timeout_s):
            with self._lock:
                self._abandoned[job.id] = call
            logger.warning(f"Sync job {job.id} ({job.domain.value}) timed out after {self.timeout_s:.1f}s")
            return ExecutionOutcome.transient(f"timed out after {self.timeout_s:.1f}s")

        err = call.error
        if err is not None:
            if isinstance(err, PermanentSyncError):
                return ExecutionOutcome.permanent(str(err) or err.__class__.__name__)
            if isinstance(err, TransientSyncError):
                return ExecutionOutcome.transient(str(err) or err.__class__.__name__)
            # Unclassified adapter fault: retry, bounded by max_attempts.
            logger.error(f"Sync job {job.id} ({job.domain.value}): unexpected error - {err!r}")
            return ExecutionOutcome.transient(f"unexpected error: {err!r}")

        items = _items_from_result(call.result)
        if items is None:
            return ExecutionOutcome.transient(f"unexpected collaborator result: {call.result!r}")
        return ExecutionOutcome.success(items)
