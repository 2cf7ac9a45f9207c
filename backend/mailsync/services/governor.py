"""In-flight slot accounting for sync jobs.

Four budgets are checked together: global, per domain, per account and per
(account, domain). A slot is granted only if every budget has room, and is held
until the job's execution finishes.
"""

from __future__ import annotations

import threading
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from ..config import settings
from ..jobs import SyncDomain, SyncJob

FAIRNESS_ROUND_ROBIN = "round_robin"
FAIRNESS_FIFO = "fifo"
FAIRNESS_POLICIES = (FAIRNESS_ROUND_ROBIN, FAIRNESS_FIFO)


@dataclass(frozen=True)
class GovernorLimits:
    max_parallel_jobs: int = 4
    max_jobs_per_account: int = 2
    max_jobs_per_account_domain: int = 1
    max_jobs_per_domain: Optional[int] = None
    fairness: str = FAIRNESS_ROUND_ROBIN

    def __post_init__(self):
        for name in ("max_parallel_jobs", "max_jobs_per_account", "max_jobs_per_account_domain"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.max_jobs_per_domain is not None and self.max_jobs_per_domain < 1:
            raise ValueError("max_jobs_per_domain must be >= 1 when set")
        if self.fairness not in FAIRNESS_POLICIES:
            raise ValueError(f"fairness must be one of {FAIRNESS_POLICIES}")

    @classmethod
    def from_settings(cls) -> "GovernorLimits":
        return cls(
            max_parallel_jobs=int(settings.sync_max_parallel_jobs),
            max_jobs_per_account=int(settings.sync_max_jobs_per_account),
            max_jobs_per_account_domain=int(settings.sync_max_jobs_per_account_domain),
            max_jobs_per_domain=settings.sync_max_jobs_per_domain,
            fairness=(settings.sync_fairness or FAIRNESS_ROUND_ROBIN).strip().lower(),
        )


class ConcurrencyGovernor:
    def __init__(self, limits: Optional[GovernorLimits] = None):
        self.limits = limits or GovernorLimits.from_settings()
        self._lock = threading.Lock()
        self._total = 0
        self._by_domain: dict[SyncDomain, int] = defaultdict(int)
        self._by_account: dict[str, int] = defaultdict(int)
        self._by_account_domain: dict[tuple[str, SyncDomain], int] = defaultdict(int)
        # Highest values observed; used to verify budgets after a run.
        self.peak_total = 0
        self.peak_per_account = 0
        self.peak_per_account_domain = 0
        self.peak_per_domain = 0

    def available(self) -> int:
        """Global slots still free."""
        with self._lock:
            return max(0, self.limits.max_parallel_jobs - self._total)

    def _has_room(self, job: SyncJob) -> bool:
        """Assume caller holds _lock."""
        limits = self.limits
        if self._total >= limits.max_parallel_jobs:
            return False
        if self._by_account[job.account_id] >= limits.max_jobs_per_account:
            return False
        if self._by_account_domain[(job.account_id, job.domain)] >= limits.max_jobs_per_account_domain:
            return False
        if limits.max_jobs_per_domain is not None and self._by_domain[job.domain] >= limits.max_jobs_per_domain:
            return False
        return True

    def can_admit(self, job: SyncJob) -> bool:
        with self._lock:
            return self._has_room(job)

    def try_acquire(self, job: SyncJob) -> bool:
        with self._lock:
            if not self._has_room(job):
                return False
            self._total += 1
            self._by_domain[job.domain] += 1
            self._by_account[job.account_id] += 1
            self._by_account_domain[(job.account_id, job.domain)] += 1
            self.peak_total = max(self.peak_total, self._total)
            self.peak_per_domain = max(self.peak_per_domain, self._by_domain[job.domain])
            self.peak_per_account = max(self.peak_per_account, self._by_account[job.account_id])
            self.peak_per_account_domain = max(
                self.peak_per_account_domain, self._by_account_domain[(job.account_id, job.domain)]
            )
            return True

    def release(self, job: SyncJob) -> None:
        with self._lock:
            key = (job.account_id, job.domain)
            if self._by_account_domain.get(key, 0) <= 0:
                raise RuntimeError(f"release without acquire for sync job {job.id}")
            self._total -= 1
            self._by_domain[job.domain] -= 1
            self._by_account[job.account_id] -= 1
            self._by_account_domain[key] -= 1
            if not self._by_domain[job.domain]:
                del self._by_domain[job.domain]
            if not self._by_account[job.account_id]:
                del self._by_account[job.account_id]
            if not self._by_account_domain[key]:
                del self._by_account_domain[key]

    def in_flight(self) -> dict:
        with self._lock:
            return {
                "total": self._total,
                "by_domain": {d.value: n for d, n in self._by_domain.items() if n},
                "by_account": {a: n for a, n in self._by_account.items() if n},
            }

    def fair_order(self, candidates: Iterable[SyncJob]) -> list[SyncJob]:
        """
        Order due candidates for slot allocation.

        round_robin: first due job of every account, then the second of every account, ...
        Accounts are visited in order of their oldest due job; within an account the
        run_after/created_at order is kept.
        fifo: candidates unchanged.
        """
        candidates = list(candidates)
        if self.limits.fairness == FAIRNESS_FIFO:
            return candidates
        per_account: "OrderedDict[str, list[SyncJob]]" = OrderedDict()
        for job in candidates:
            per_account.setdefault(job.account_id, []).append(job)
        ordered: list[SyncJob] = []
        depth = 0
        while len(ordered) < len(candidates):
            for jobs in per_account.values():
                if depth < len(jobs):
                    ordered.append(jobs[depth])
            depth += 1
        return ordered
