"""Per-run summary of dispatched sync jobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass

from ..jobs import Disposition, ExecutionOutcome, OutcomeKind, SyncDomain


@dataclass
class SyncRunSummary:
    completed_jobs: int = 0
    failed_jobs: int = 0
    retried_jobs: int = 0
    email_messages_synced: int = 0
    calendar_events_synced: int = 0
    tasks_synced: int = 0

    def merge(self, other: "SyncRunSummary") -> None:
        self.completed_jobs += other.completed_jobs
        self.failed_jobs += other.failed_jobs
        self.retried_jobs += other.retried_jobs
        self.email_messages_synced += other.email_messages_synced
        self.calendar_events_synced += other.calendar_events_synced
        self.tasks_synced += other.tasks_synced

    def record(self, domain: SyncDomain, outcome: ExecutionOutcome, disposition: Disposition) -> None:
        """Fold one applied outcome in. Order of calls does not matter."""
        if disposition == Disposition.COMPLETED:
            self.completed_jobs += 1
        elif disposition == Disposition.RETRIED:
            self.retried_jobs += 1
        else:
            self.failed_jobs += 1
        if outcome.kind != OutcomeKind.SUCCESS:
            return
        if domain == SyncDomain.EMAIL:
            self.email_messages_synced += outcome.items_synced
        elif domain == SyncDomain.CALENDAR:
            self.calendar_events_synced += outcome.items_synced
        else:
            self.tasks_synced += outcome.items_synced

    @property
    def is_empty(self) -> bool:
        return not any(asdict(self).values())

    def to_dict(self) -> dict:
        return asdict(self)

    def describe(self) -> tuple[str, str]:
        """Notification title and body for this run."""
        title = "Sync needs attention" if self.failed_jobs else "Sync complete"
        parts = []
        if self.email_messages_synced:
            parts.append(f"{self.email_messages_synced} email items")
        if self.calendar_events_synced:
            parts.append(f"{self.calendar_events_synced} calendar events")
        if self.tasks_synced:
            parts.append(f"{self.tasks_synced} tasks")
        if self.retried_jobs:
            parts.append(f"{self.retried_jobs} retried jobs")
        if self.failed_jobs:
            parts.append(f"{self.failed_jobs} failed jobs")
        if not parts:
            parts.append(f"{self.completed_jobs} completed jobs")
        return title, " | ".join(parts)
