"""Retry delay for failed sync jobs: capped exponential growth plus jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import timedelta

from ..config import settings


@dataclass
class BackoffPolicy:
    base_delay_s: float = 30.0
    max_delay_s: float = 7680.0
    jitter_ratio: float = 0.2
    # Inject random.Random(seed) for deterministic delays.
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self):
        if self.base_delay_s <= 0:
            raise ValueError("base_delay_s must be positive")
        if self.max_delay_s < self.base_delay_s:
            raise ValueError("max_delay_s must be >= base_delay_s")
        if self.jitter_ratio < 0:
            raise ValueError("jitter_ratio must be >= 0")

    def base_delay(self, attempt_count: int) -> float:
        """Delay before jitter, in seconds."""
        exponent = max(0, int(attempt_count))
        # Cap the exponent before shifting so huge attempt counts don't overflow floats.
        if self.base_delay_s * (2 ** min(exponent, 64)) >= self.max_delay_s:
            return self.max_delay_s
        return self.base_delay_s * (2 ** exponent)

    def next_run_after(self, attempt_count: int) -> timedelta:
        delay = self.base_delay(attempt_count)
        jitter = self.rng.uniform(0, delay * self.jitter_ratio) if self.jitter_ratio else 0.0
        return timedelta(seconds=delay + jitter)

    @classmethod
    def from_settings(cls, rng: random.Random | None = None) -> "BackoffPolicy":
        return cls(
            base_delay_s=float(settings.sync_backoff_base_s),
            max_delay_s=float(settings.sync_backoff_max_s),
            jitter_ratio=float(settings.sync_backoff_jitter_ratio),
            rng=rng or random.Random(),
        )
