"""Sync queue dispatcher: one bounded pass over the due jobs.

A run repeats claim -> execute batch -> apply outcomes until nothing due can be
started (no due jobs, or no slot the governor will grant) or the run deadline passes.
Collaborator calls run in worker threads; outcomes are written back by the
dispatcher thread only.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..config import settings
from ..errors import QueueIntegrityError
from ..jobs import Disposition, ExecutionOutcome, SyncJob
from .executor import JobExecutor
from .governor import ConcurrencyGovernor
from .job_store import JobStore
from .summary import SyncRunSummary

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


class SyncDispatcher:
    def __init__(
        self,
        store: JobStore,
        governor: ConcurrencyGovernor,
        executor: JobExecutor,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        run_deadline_s: Optional[float] = None,
        scan_limit: Optional[int] = None,
        stale_running_after_s: Optional[float] = None,
    ):
        self.store = store
        self.governor = governor
        self.executor = executor
        self.clock = clock or store.clock
        self.run_deadline_s = run_deadline_s if run_deadline_s is not None else settings.sync_run_deadline_s
        self.scan_limit = max(1, int(scan_limit or settings.sync_candidate_scan_limit))
        self.stale_running_after_s = (
            stale_running_after_s if stale_running_after_s is not None else settings.sync_stale_running_after_s
        )
        self._unregistered: set[str] = set()

    def run(self, deadline: Optional[datetime] = None) -> SyncRunSummary:
        summary = SyncRunSummary()
        started = self.clock()
        if deadline is None and self.run_deadline_s:
            deadline = started + timedelta(seconds=float(self.run_deadline_s))

        self._recover_stale()
        self._unregistered = set()

        batches = 0
        while True:
            if deadline is not None and self.clock() >= deadline:
                logger.info(f"Sync run deadline reached after {batches} batches; not claiming more jobs")
                break
            slots = self.governor.available()
            if slots <= 0:
                break
            claimed = self._claim_batch(slots)
            if not claimed:
                break
            batches += 1
            logger.info(f"Sync batch {batches}: {len(claimed)} jobs claimed ({slots} slots free)")
            self._run_batch(claimed, summary)

        if self._unregistered:
            logger.warning(
                f"Due sync jobs left pending, no collaborator registered for: {', '.join(sorted(self._unregistered))}"
            )
        if not summary.is_empty:
            logger.info(
                f"=== SYNC RUN COMPLETE === completed={summary.completed_jobs} retried={summary.retried_jobs} "
                f"failed={summary.failed_jobs} email={summary.email_messages_synced} "
                f"calendar={summary.calendar_events_synced} tasks={summary.tasks_synced}"
            )
        return summary

    def _recover_stale(self) -> None:
        if not self.stale_running_after_s:
            return
        try:
            self.store.requeue_stale(timedelta(seconds=float(self.stale_running_after_s)), now=self.clock())
        except QueueIntegrityError as e:
            logger.error(f"Stale job recovery failed: {e}")

    def _claim_batch(self, slots: int) -> list[SyncJob]:
        """
        Walk due candidates in fair order and claim as many as the governor allows.
        A slot is reserved before the claim and handed back if the claim is lost.
        """
        now = self.clock()
        registered = set(self.executor.registry.domains())
        busy = self.executor.busy_job_ids()
        claimed: list[SyncJob] = []
        after = None
        while len(claimed) < slots:
            try:
                candidates = self.store.due_candidates(now, self.scan_limit, after=after)
            except QueueIntegrityError as e:
                logger.error(f"Could not read due sync jobs: {e}")
                break
            for candidate in self.governor.fair_order(candidates):
                if len(claimed) >= slots:
                    break
                if candidate.domain not in registered:
                    # Stays pending until an adapter for its domain is configured.
                    self._unregistered.add(candidate.domain.value)
                    continue
                if candidate.id in busy:
                    continue
                if not self.governor.try_acquire(candidate):
                    continue
                try:
                    job = self.store.claim(candidate.id, now)
                except QueueIntegrityError as e:
                    logger.error(f"Claim failed for sync job {candidate.id}: {e}")
                    job = None
                if job is None:
                    self.governor.release(candidate)
                    continue
                claimed.append(job)
            if len(candidates) < self.scan_limit:
                break
            last = candidates[-1]
            after = (last.run_after, last.created_at, last.id)
        return claimed

    def _execute(self, job: SyncJob) -> ExecutionOutcome:
        try:
            return self.executor.execute(job)
        except Exception as e:
            logger.error(f"Sync job {job.id}: executor error - {e!r}")
            return ExecutionOutcome.transient(f"executor error: {e!r}")

    def _run_batch(self, claimed: list[SyncJob], summary: SyncRunSummary) -> None:
        with ThreadPoolExecutor(max_workers=len(claimed), thread_name_prefix="sync-job") as pool:
            futures = {pool.submit(self._execute, job): job for job in claimed}
            first_error: Optional[Exception] = None
            # Single-writer: outcomes are persisted here, as each worker finishes.
            for fut in as_completed(futures):
                job = futures[fut]
                try:
                    self._apply(job, fut.result(), summary)
                except Exception as e:
                    # Keep applying and releasing the rest of the batch; re-raised below.
                    logger.error(f"Sync job {job.id}: applying outcome failed - {e!r}")
                    if first_error is None:
                        first_error = e
                finally:
                    self.governor.release(job)
        if first_error is not None:
            raise first_error

    def _apply(self, job: SyncJob, outcome: ExecutionOutcome, summary: SyncRunSummary) -> None:
        try:
            disposition = self.store.complete(job.id, outcome, now=self.clock())
        except QueueIntegrityError as e:
            # Left running; stale recovery hands it back later.
            logger.error(f"Sync job {job.id}: could not record outcome - {e}")
            return
        summary.record(job.domain, outcome, disposition)
        attempt = job.attempt_count + 1
        if disposition == Disposition.RETRIED:
            logger.warning(
                f"Sync job {job.id} ({job.domain.value}) attempt {attempt}/{job.max_attempts} failed, "
                f"retrying later: {(outcome.error or '')[:120]}"
            )
        elif disposition == Disposition.DEAD_LETTERED:
            logger.warning(
                f"Sync job {job.id} ({job.domain.value}) dead-lettered after attempt {attempt}/{job.max_attempts}: "
                f"{(outcome.error or '')[:120]}"
            )
        else:
            logger.info(f"Sync job {job.id} ({job.domain.value}) completed: {outcome.items_synced} items")
