"""Value types shared by the job store, the executor and the dispatcher."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp (the form SQLite hands back for DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncDomain(str, enum.Enum):
    EMAIL = "email"
    CALENDAR = "calendar"
    TASKS = "tasks"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    DEAD_LETTER = "dead_letter"


class OutcomeKind(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class Disposition(str, enum.Enum):
    """What `JobStore.complete` did with the job."""

    COMPLETED = "completed"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class SyncJob:
    """Detached snapshot of a sync_jobs row."""

    id: str
    account_id: str
    domain: SyncDomain
    status: JobStatus
    payload: dict[str, Any]
    attempt_count: int
    max_attempts: int
    run_after: datetime
    last_error: Optional[str]
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCEEDED, JobStatus.DEAD_LETTER)


@dataclass(frozen=True)
class ExecutionOutcome:
    kind: OutcomeKind
    items_synced: int = 0
    error: Optional[str] = None

    @classmethod
    def success(cls, items_synced: int) -> "ExecutionOutcome":
        return cls(OutcomeKind.SUCCESS, items_synced=max(0, int(items_synced)))

    @classmethod
    def transient(cls, error: str) -> "ExecutionOutcome":
        return cls(OutcomeKind.TRANSIENT, error=error)

    @classmethod
    def permanent(cls, error: str) -> "ExecutionOutcome":
        return cls(OutcomeKind.PERMANENT, error=error)


@dataclass(frozen=True)
class Account:
    """Account context handed to collaborators. Owned by account management."""

    id: str
    provider: str
    display_name: Optional[str] = None
    protocols: dict[str, Any] = field(default_factory=dict)
    credential_ref: Optional[str] = None
