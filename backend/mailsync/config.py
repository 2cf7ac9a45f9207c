"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailsync.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (for Celery)
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Concurrency budgets. None on the per-domain budget means "bounded only by the global limit".
    sync_max_parallel_jobs: int = 4
    sync_max_jobs_per_account: int = 2
    sync_max_jobs_per_account_domain: int = 1
    sync_max_jobs_per_domain: Optional[int] = None
    # round_robin | fifo
    sync_fairness: str = "round_robin"

    # Retry policy
    sync_default_max_attempts: int = 5
    sync_backoff_base_s: float = 30.0
    sync_backoff_max_s: float = 7680.0
    sync_backoff_jitter_ratio: float = 0.2

    # Execution bounds
    sync_job_timeout_s: float = 120.0
    # Overall deadline for one run; None = run until the due set or slots are exhausted.
    sync_run_deadline_s: Optional[float] = None
    # How many due rows the dispatcher inspects per claim round.
    sync_candidate_scan_limit: int = 200
    # Jobs left "running" longer than this (process crashed mid-attempt) go back to pending.
    sync_stale_running_after_s: int = 900

    # Domain adapters as dotted paths, e.g. SYNC_COLLABORATORS='{"email": "adapters.imap:ImapCollaborator"}'.
    # Jobs for a domain without an adapter stay pending.
    sync_collaborators: dict[str, str] = {}

    # Periodic trigger (Celery beat) and retention
    sync_run_interval_s: int = 60
    sync_succeeded_retention_days: int = 7

    # Automatic scheduling: one job per (account, domain) before every beat pass.
    # A pair that has synced before waits its poll interval.
    sync_auto_schedule: bool = True
    sync_email_poll_interval_s: int = 120
    sync_calendar_poll_interval_s: int = 300
    sync_tasks_poll_interval_s: int = 300

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
