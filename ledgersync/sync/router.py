"""
Sync engine API routes.

Manual trigger, status and operator actions on failed page jobs.
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ledgersync.sync.queue import JobNotFoundError
from ledgersync.sync.service import get_sync_service

logger = structlog.get_logger("sync")

router = APIRouter(prefix="/sync", tags=["sync"])


class SyncRunResponse(BaseModel):
    """Response for a manually triggered run."""

    run_id: str
    status: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class FailedJobResponse(BaseModel):
    """A page job retained after exhausting its attempts."""

    job_id: int
    job_name: str
    data: Dict[str, Any]
    attempts_made: int
    max_attempts: int
    last_error: Optional[str]
    finished_at: Optional[str]


class RetryJobResponse(BaseModel):
    job_id: int
    status: str


@router.post("/run", response_model=SyncRunResponse)
async def trigger_run():
    """
    Run one sync immediately, regardless of the schedule.

    Page jobs are processed by the queue workers (started for the duration
    of the run when the service is not running), so this waits until the
    whole window is committed or the run fails. A run that finds another
    run in flight returns status "skipped".
    """
    service = get_sync_service()
    result = await service.run_now()

    messages = {
        "success": "Sync completed successfully",
        "skipped": "Another sync run is in progress",
        "failed": "Sync failed; the window will be retried on the next run",
    }
    return SyncRunResponse(
        run_id=result["run_id"],
        status=result["status"],
        message=messages.get(result["status"], result["status"]),
        details=result,
    )


@router.get("/status")
async def get_status() -> Dict[str, Any]:
    """Scheduler, queue, watermark and run history."""
    service = get_sync_service()
    return await service.get_status()


@router.get("/jobs/failed", response_model=List[FailedJobResponse])
async def list_failed_jobs(limit: int = 50):
    """Page jobs that exhausted their attempts, newest first."""
    service = get_sync_service()
    return await service.queue.list_failed(limit=limit)


@router.post("/jobs/{job_id}/retry", response_model=RetryJobResponse)
async def retry_failed_job(job_id: int):
    """Requeue a failed page job with a fresh attempt budget."""
    service = get_sync_service()
    try:
        handle = await service.queue.retry_job(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    logger.info("sync.job.retry_requested", job_id=job_id)
    return RetryJobResponse(job_id=handle.job_id, status="requeued")
