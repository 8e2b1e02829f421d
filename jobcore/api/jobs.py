from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from jobcore.api.dependencies import get_job_service
from jobcore.broker.models import QueueName
from jobcore.errors import BrokerUnavailableError
from jobcore.lib.logger import configure_logger
from jobcore.services.infrastructure.job_management.job_manager import JobService
from jobcore.services.infrastructure.job_management.status import (
    MAX_BATCH_SIZE,
    JobStatusView,
    StatusRequest,
)

logger = configure_logger(__name__)

router = APIRouter(prefix="/jobs")


class BatchStatusRequest(BaseModel):
    """Several jobs to look up in one call."""

    jobs: List[StatusRequest] = Field(
        ..., min_length=1, description="Jobs to look up, at most 20"
    )


class BatchStatusResponse(BaseModel):
    jobs: List[JobStatusView]


def _broker_unavailable(e: BrokerUnavailableError, operation: str) -> HTTPException:
    logger.warning(
        "Broker unavailable while serving request",
        extra={"operation": operation, "error": str(e), "event_type": "broker_unavailable"},
    )
    return HTTPException(status_code=503, detail="Job queue is temporarily unavailable")


@router.get("/status", response_model=JobStatusView)
async def get_job_status(
    job_id: str = Query(..., min_length=1, description="Job id returned at enqueue"),
    queue: QueueName = Query(..., description="Queue the job was submitted to"),
    service: JobService = Depends(get_job_service),
) -> JobStatusView:
    """Current status of one job.

    Raises:
        HTTPException: 404 for unknown or evicted jobs, 503 when the broker
            cannot be reached.
    """
    try:
        view = await service.status.get_status(job_id, queue)
    except BrokerUnavailableError as e:
        raise _broker_unavailable(e, "get_status") from e

    if view is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return view


@router.post("/status", response_model=BatchStatusResponse)
async def get_job_statuses(
    body: BatchStatusRequest,
    service: JobService = Depends(get_job_service),
) -> BatchStatusResponse:
    """Status of up to 20 jobs; unknown ones are reported as not_found."""
    if len(body.jobs) > MAX_BATCH_SIZE:
        raise HTTPException(
            status_code=400,
            detail=f"Maximum {MAX_BATCH_SIZE} jobs per request",
        )

    views = await service.status.get_statuses(body.jobs)
    return BatchStatusResponse(jobs=views)


@router.get("/queue-stats")
async def get_queue_stats(
    service: JobService = Depends(get_job_service),
) -> Dict[str, Any]:
    """Per-queue counts with system-wide totals."""
    try:
        return await service.get_queue_stats()
    except BrokerUnavailableError as e:
        raise _broker_unavailable(e, "queue_stats") from e


@router.get("/worker-stats")
async def get_worker_stats(
    service: JobService = Depends(get_job_service),
) -> Dict[str, Any]:
    """Worker pools and execution metrics of the serving process."""
    return service.get_stats()
