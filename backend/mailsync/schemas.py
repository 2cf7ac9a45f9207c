"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from .jobs import JobStatus, SyncDomain


class QueueJobRequest(BaseModel):
    account_id: str = Field(min_length=1)
    domain: SyncDomain
    payload: Dict[str, Any] = Field(default_factory=dict)
    run_after_secs: int = 0
    max_attempts: Optional[int] = Field(default=None, ge=1)


class QueueJobResponse(BaseModel):
    job_id: str
    status: JobStatus = JobStatus.PENDING


class SyncJobResponse(BaseModel):
    id: str
    account_id: str
    domain: SyncDomain
    status: JobStatus
    payload: Optional[Dict[str, Any]] = None
    attempt_count: int
    max_attempts: int
    run_after: datetime
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaginatedSyncJobs(BaseModel):
    items: List[SyncJobResponse]
    total: int
    offset: int
    limit: int


class SyncRunSummaryResponse(BaseModel):
    completed_jobs: int = 0
    failed_jobs: int = 0
    retried_jobs: int = 0
    email_messages_synced: int = 0
    calendar_events_synced: int = 0
    tasks_synced: int = 0
    title: Optional[str] = None
    message: Optional[str] = None


class QueueStatusResponse(BaseModel):
    pending_sync_jobs: int
    counts: Dict[str, int]
    registered_domains: List[SyncDomain] = []


class RunAsyncResponse(BaseModel):
    task_id: str
    status: str = "queued"


class ScheduleResponse(BaseModel):
    scheduled_jobs: int
