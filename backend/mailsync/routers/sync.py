"""Sync queue API: enqueue jobs, trigger a run, inspect the queue."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..errors import InvalidAccount, QueueIntegrityError
from ..jobs import JobStatus, SyncDomain
from ..models import SyncJobRecord
from ..schemas import (
    PaginatedSyncJobs,
    QueueJobRequest,
    QueueJobResponse,
    QueueStatusResponse,
    RunAsyncResponse,
    ScheduleResponse,
    SyncJobResponse,
    SyncRunSummaryResponse,
)
from ..services.sync_service import SyncService, get_sync_service

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("/jobs", response_model=QueueJobResponse, status_code=201)
def queue_job(body: QueueJobRequest, service: SyncService = Depends(get_sync_service)):
    """Queue a sync job for an account. run_after_secs delays eligibility (negative = now)."""
    try:
        job_id = service.queue_job(
            body.account_id,
            body.domain,
            body.payload,
            run_after_offset_secs=body.run_after_secs,
            max_attempts=body.max_attempts,
        )
    except InvalidAccount as e:
        raise HTTPException(status_code=404, detail=str(e))
    except QueueIntegrityError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return QueueJobResponse(job_id=job_id)


@router.get("/jobs", response_model=PaginatedSyncJobs)
async def list_jobs(
    status: Optional[JobStatus] = None,
    account_id: Optional[str] = None,
    domain: Optional[SyncDomain] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """List queue rows, oldest-due first. Use status=dead_letter to inspect permanent failures."""
    filters = []
    if status is not None:
        filters.append(SyncJobRecord.status == status.value)
    if account_id:
        filters.append(SyncJobRecord.account_id == account_id)
    if domain is not None:
        filters.append(SyncJobRecord.domain == domain.value)

    total = (await db.execute(select(func.count()).select_from(SyncJobRecord).where(*filters))).scalar_one()
    rows = (
        await db.execute(
            select(SyncJobRecord)
            .where(*filters)
            .order_by(SyncJobRecord.run_after.asc(), SyncJobRecord.created_at.asc())
            .offset(offset)
            .limit(limit)
        )
    ).scalars().all()
    return PaginatedSyncJobs(
        items=[SyncJobResponse.model_validate(r) for r in rows],
        total=int(total),
        offset=offset,
        limit=limit,
    )


@router.get("/jobs/{job_id}", response_model=SyncJobResponse)
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    row = await db.get(SyncJobRecord, job_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Sync job not found")
    return SyncJobResponse.model_validate(row)


@router.post("/run", response_model=SyncRunSummaryResponse)
def run_queue(service: SyncService = Depends(get_sync_service)):
    """Run one bounded dispatch pass in this process and return its summary."""
    summary = service.run_queue()
    title, message = summary.describe()
    return SyncRunSummaryResponse(**summary.to_dict(), title=title, message=message)


@router.post("/schedule", response_model=ScheduleResponse)
def schedule_jobs(service: SyncService = Depends(get_sync_service)):
    """Queue one job per (account, domain) pair that has nothing pending or running."""
    try:
        scheduled = service.schedule_sync_jobs()
    except QueueIntegrityError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return ScheduleResponse(scheduled_jobs=scheduled)


@router.post("/run-async", response_model=RunAsyncResponse, status_code=202)
def run_queue_async():
    """Hand the pass to a Celery worker."""
    from ..tasks import run_sync_queue

    task = run_sync_queue.delay()
    return RunAsyncResponse(task_id=task.id)


@router.get("/status", response_model=QueueStatusResponse)
def queue_status(service: SyncService = Depends(get_sync_service)):
    """Queue counts by status, including dead letters."""
    try:
        counts = service.store.counts_by_status()
    except QueueIntegrityError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return QueueStatusResponse(
        pending_sync_jobs=counts.get(JobStatus.PENDING.value, 0),
        counts=counts,
        registered_domains=service.registry.domains(),
    )
