"""Durable sync queue backed by the sync_jobs table.

The table is the single source of truth for queue state. Every operation opens its own
short-lived session, so the store can be shared by the dispatcher thread, worker
threads and other processes pointing at the same database.

Claiming is an optimistic compare-and-set:

    UPDATE sync_jobs SET status='running' WHERE id=? AND status='pending' AND run_after<=?

Exactly one concurrent caller sees rowcount == 1 for a given row; everyone else
treats the job as no longer available.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..errors import QueueIntegrityError
from ..jobs import (
    Disposition,
    ExecutionOutcome,
    JobStatus,
    OutcomeKind,
    SyncDomain,
    SyncJob,
    utcnow,
)
from ..models import SyncJobRecord
from .backoff import BackoffPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)
INTERRUPTED_ERROR = "interrupted"


def _is_sqlite_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "sqlite_busy" in msg


def _to_job(row: SyncJobRecord) -> SyncJob:
    return SyncJob(
        id=row.id,
        account_id=row.account_id,
        domain=SyncDomain(row.domain),
        status=JobStatus(row.status),
        payload=dict(row.payload or {}),
        attempt_count=int(row.attempt_count or 0),
        max_attempts=int(row.max_attempts),
        run_after=row.run_after,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class JobStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        default_max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        max_lock_retries: int = 6,
        lock_retry_base_s: float = 0.05,
    ):
        self._session_factory = session_factory
        self.default_max_attempts = int(
            settings.sync_default_max_attempts if default_max_attempts is None else default_max_attempts
        )
        if self.default_max_attempts < 1:
            raise ValueError("default_max_attempts must be positive")
        self.backoff = backoff or BackoffPolicy.from_settings()
        self.clock = clock
        self._max_lock_retries = max_lock_retries
        self._lock_retry_base_s = lock_retry_base_s

    # ------------------------------------------------------------------
    # Session helpers
    # ------------------------------------------------------------------

    def _write(self, op: Callable[[Session], T]) -> T:
        """
        Run `op` in a fresh session and commit.
        SQLite can transiently raise 'database is locked' under concurrent writers;
        retry with exponential backoff + jitter, then give up as storage unavailable.
        """
        attempt = 0
        while True:
            db = self._session_factory()
            try:
                result = op(db)
                db.commit()
                return result
            except OperationalError as e:
                db.rollback()
                if attempt >= self._max_lock_retries or not _is_sqlite_locked_error(e):
                    raise QueueIntegrityError(f"storage unavailable: {e}") from e
                sleep_s = min(2.0, self._lock_retry_base_s * (2 ** attempt)) + random.uniform(0, 0.05)
                time.sleep(sleep_s)
                attempt += 1
            except SQLAlchemyError as e:
                # Dropped connections (InterfaceError), constraint errors, ...
                db.rollback()
                raise QueueIntegrityError(f"storage unavailable: {e}") from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def _read(self, op: Callable[[Session], T]) -> T:
        db = self._session_factory()
        try:
            return op(db)
        except SQLAlchemyError as e:
            raise QueueIntegrityError(f"storage unavailable: {e}") from e
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        account_id: str,
        domain: SyncDomain,
        payload: Optional[dict[str, Any]] = None,
        run_after: Optional[datetime] = None,
        *,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Insert a new pending job. No deduplication: equivalent enqueues give independent jobs."""
        if not account_id:
            raise ValueError("account_id is required")
        ceiling = int(self.default_max_attempts if max_attempts is None else max_attempts)
        if ceiling < 1:
            raise ValueError("max_attempts must be positive")
        now = self.clock()
        job_id = str(uuid.uuid4())
        domain_value = SyncDomain(domain).value
        run_after = run_after or now

        def op(db: Session) -> None:
            db.add(SyncJobRecord(
                id=job_id,
                account_id=str(account_id),
                domain=domain_value,
                status=JobStatus.PENDING.value,
                payload=dict(payload or {}),
                attempt_count=0,
                max_attempts=ceiling,
                run_after=run_after,
                last_error=None,
                created_at=now,
                updated_at=now,
            ))

        self._write(op)
        logger.debug(f"Enqueued sync job {job_id} ({domain_value}, account={account_id}, run_after={run_after})")
        return job_id

    def get(self, job_id: str) -> Optional[SyncJob]:
        def op(db: Session) -> Optional[SyncJob]:
            row = db.get(SyncJobRecord, job_id)
            return _to_job(row) if row else None

        return self._read(op)

    def due_candidates(
        self,
        now: datetime,
        limit: int,
        after: Optional[tuple[datetime, datetime, str]] = None,
    ) -> list[SyncJob]:
        """
        Read-only peek at due jobs, oldest-due first (ties by created_at, then id).

        `after` is the (run_after, created_at, id) key of the last row of the previous
        page; rows claimed in between do not shift the next page.
        """
        if limit <= 0:
            return []

        def op(db: Session) -> list[SyncJob]:
            stmt = select(SyncJobRecord).where(
                SyncJobRecord.status == JobStatus.PENDING.value,
                SyncJobRecord.run_after <= now,
            )
            if after is not None:
                run_after, created_at, job_id = after
                stmt = stmt.where(
                    or_(
                        SyncJobRecord.run_after > run_after,
                        and_(SyncJobRecord.run_after == run_after, SyncJobRecord.created_at > created_at),
                        and_(
                            SyncJobRecord.run_after == run_after,
                            SyncJobRecord.created_at == created_at,
                            SyncJobRecord.id > job_id,
                        ),
                    )
                )
            rows = db.execute(
                stmt.order_by(SyncJobRecord.run_after.asc(), SyncJobRecord.created_at.asc(), SyncJobRecord.id.asc())
                .limit(limit)
            ).scalars().all()
            return [_to_job(r) for r in rows]

        return self._read(op)

    def claim(self, job_id: str, now: Optional[datetime] = None) -> Optional[SyncJob]:
        """
        Atomically move one due job from pending to running.
        Returns None when another caller got there first (or the job is no longer due).
        """
        now = now or self.clock()

        def op(db: Session) -> Optional[SyncJob]:
            result = db.execute(
                update(SyncJobRecord)
                .where(
                    SyncJobRecord.id == job_id,
                    SyncJobRecord.status == JobStatus.PENDING.value,
                    SyncJobRecord.run_after <= now,
                )
                .values(status=JobStatus.RUNNING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = db.get(SyncJobRecord, job_id)
            return _to_job(row)

        claimed = self._write(op)
        if claimed is None:
            logger.debug(f"Claim lost for sync job {job_id}")
        return claimed

    def claim_due(self, now: datetime, limit: int) -> list[SyncJob]:
        """Claim up to `limit` due jobs in run_after/created_at order. Lost races are skipped."""
        claimed: list[SyncJob] = []
        if limit <= 0:
            return claimed
        scan = max(limit, int(settings.sync_candidate_scan_limit))
        for candidate in self.due_candidates(now, scan):
            if len(claimed) >= limit:
                break
            job = self.claim(candidate.id, now)
            if job is not None:
                claimed.append(job)
        return claimed

    def complete(
        self,
        job_id: str,
        outcome: ExecutionOutcome,
        now: Optional[datetime] = None,
    ) -> Disposition:
        """
        Apply the result of one attempt to a running job.

        success            -> succeeded, attempt_count+1, last_error cleared
        transient, room    -> pending, attempt_count+1, run_after pushed out by backoff
        transient, ceiling -> dead_letter, attempt_count+1
        permanent          -> dead_letter, attempt_count+1
        """
        now = now or self.clock()

        def op(db: Session) -> Disposition:
            row = db.get(SyncJobRecord, job_id)
            if row is None:
                raise QueueIntegrityError(f"sync job {job_id} not found")
            if row.status != JobStatus.RUNNING.value:
                raise QueueIntegrityError(f"sync job {job_id} is {row.status}, not running")

            previous_attempts = int(row.attempt_count or 0)
            attempts = min(previous_attempts + 1, int(row.max_attempts))
            values: dict[str, Any] = {"attempt_count": attempts, "updated_at": now}

            if outcome.kind == OutcomeKind.SUCCESS:
                values.update(status=JobStatus.SUCCEEDED.value, last_error=None)
                disposition = Disposition.COMPLETED
            elif outcome.kind == OutcomeKind.TRANSIENT and previous_attempts + 1 < int(row.max_attempts):
                delay = self.backoff.next_run_after(attempts)
                values.update(
                    status=JobStatus.PENDING.value,
                    run_after=max(now, row.run_after) + max(delay, timedelta(microseconds=1)),
                    last_error=outcome.error or "transient failure",
                )
                disposition = Disposition.RETRIED
            else:
                values.update(
                    status=JobStatus.DEAD_LETTER.value,
                    last_error=outcome.error or "permanent failure",
                )
                disposition = Disposition.DEAD_LETTERED

            result = db.execute(
                update(SyncJobRecord)
                .where(
                    SyncJobRecord.id == job_id,
                    SyncJobRecord.status == JobStatus.RUNNING.value,
                    SyncJobRecord.attempt_count == previous_attempts,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise QueueIntegrityError(f"sync job {job_id} changed while completing")
            return disposition

        return self._write(op)

    # ------------------------------------------------------------------
    # Recovery and retention
    # ------------------------------------------------------------------

    def requeue_stale(self, older_than: timedelta, now: Optional[datetime] = None) -> int:
        """
        Return jobs stuck in running (process died mid-attempt) to pending.
        The interrupted attempt is not counted.
        """
        now = now or self.clock()
        cutoff = now - older_than

        def op(db: Session) -> int:
            result = db.execute(
                update(SyncJobRecord)
                .where(
                    SyncJobRecord.status == JobStatus.RUNNING.value,
                    SyncJobRecord.updated_at < cutoff,
                )
                .values(status=JobStatus.PENDING.value, last_error=INTERRUPTED_ERROR, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

        count = self._write(op)
        if count:
            logger.warning(f"Requeued {count} sync jobs left running since before {cutoff}")
        return count

    def purge_succeeded(self, before: datetime) -> int:
        """Delete succeeded jobs last updated before `before`. Dead letters are kept."""

        def op(db: Session) -> int:
            result = db.execute(
                delete(SyncJobRecord)
                .where(
                    SyncJobRecord.status == JobStatus.SUCCEEDED.value,
                    SyncJobRecord.updated_at < before,
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

        return self._write(op)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def pending_count(self) -> int:
        def op(db: Session) -> int:
            return int(
                db.execute(
                    select(func.count()).select_from(SyncJobRecord).where(
                        SyncJobRecord.status == JobStatus.PENDING.value
                    )
                ).scalar_one()
            )

        return self._read(op)

    def counts_by_status(self) -> dict[str, int]:
        def op(db: Session) -> dict[str, int]:
            rows = db.execute(
                select(SyncJobRecord.status, func.count()).group_by(SyncJobRecord.status)
            ).all()
            counts = {s.value: 0 for s in JobStatus}
            for status, count in rows:
                counts[status] = int(count)
            return counts

        return self._read(op)

    def has_active_job(self, account_id: str, domain: SyncDomain) -> bool:
        """True if a pending or running job exists for this account and domain."""

        def op(db: Session) -> bool:
            count = db.execute(
                select(func.count()).select_from(SyncJobRecord).where(
                    SyncJobRecord.account_id == str(account_id),
                    SyncJobRecord.domain == SyncDomain(domain).value,
                    SyncJobRecord.status.in_(ACTIVE_STATUSES),
                )
            ).scalar_one()
            return int(count) > 0

        return self._read(op)

    def has_history(self, account_id: str, domain: SyncDomain) -> bool:
        """True if any job (in any state) was ever queued for this account and domain."""

        def op(db: Session) -> bool:
            count = db.execute(
                select(func.count()).select_from(SyncJobRecord).where(
                    SyncJobRecord.account_id == str(account_id),
                    SyncJobRecord.domain == SyncDomain(domain).value,
                )
            ).scalar_one()
            return int(count) > 0

        return self._read(op)
