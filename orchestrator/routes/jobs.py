"""Job routes."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from orchestrator.routes.deps import get_db, get_runtime
from orchestrator.runtime import Runtime
from orchestrator.schemas.jobs import EnqueueRequest, JobResponse, QueueStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobResponse, status_code=201)
def enqueue_job(
    data: EnqueueRequest,
    runtime: Runtime = Depends(get_runtime),
):
    """Submit a job to one of the stage queues."""
    job = runtime.queue_manager.enqueue(
        data.queue,
        data.payload,
        priority=data.priority,
        delay_ms=data.delay_ms,
        max_attempts=data.max_attempts,
    )
    return JobResponse.model_validate(job)


@router.get("/stats", response_model=QueueStatsResponse)
def queue_stats(
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Get job counts per queue."""
    return QueueStatsResponse(queues=runtime.queue_manager.get_queue_stats(db))


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
):
    """Get job status, attempts and error history."""
    job = runtime.queue_manager.get_job(job_id, db)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/retry", response_model=JobResponse, status_code=201)
def retry_job(
    job_id: str,
    runtime: Runtime = Depends(get_runtime),
):
    """Re-enqueue a permanently failed job."""
    job = runtime.queue_manager.retry_job(job_id)
    logger.info(f"Manual retry of job {job_id} requested")
    return JobResponse.model_validate(job)
