"""Queue administration, subscription and cache statistics endpoints."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field

from marketpulse.api.deps import get_services, require_admin_api_key
from marketpulse.errors import JobNotFoundError, JobPayloadError, JobStateError, MarketPulseError
from marketpulse.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/jobs",
    tags=["jobs"],
    dependencies=[Depends(require_admin_api_key)],
)

subscriptions_router = APIRouter(
    prefix="/api/subscriptions",
    tags=["subscriptions"],
    dependencies=[Depends(require_admin_api_key)],
)

cache_router = APIRouter(
    prefix="/api/cache",
    tags=["cache"],
    dependencies=[Depends(require_admin_api_key)],
)


class EnqueueRequest(BaseModel):
    """Request model for adding a job."""
    payload: Dict[str, Any]
    job_id: Optional[str] = None
    priority: Optional[int] = None
    delay_ms: int = Field(default=0, ge=0)


class JobResponse(BaseModel):
    """Response model for a job."""
    id: str
    queue: str
    type: str
    payload: Dict[str, Any]
    priority: int
    attempts_made: int
    max_attempts: int
    status: str
    created_at: datetime
    processed_at: Optional[datetime]
    finished_at: Optional[datetime]
    failed_reason: Optional[str]
    stalled_count: int


def _http_error(e: MarketPulseError) -> HTTPException:
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, JobStateError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, JobPayloadError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.get("/stats")
async def get_queue_stats(services: Services = Depends(get_services)):
    """Job counts per queue."""
    return await services.queues.stats()


@router.post("/{queue_name}", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
async def enqueue_job(
    queue_name: str,
    request: EnqueueRequest,
    services: Services = Depends(get_services),
):
    """Add a job to a queue (an existing job id returns the existing job)."""
    try:
        queue = services.queues.get(queue_name)
        job = await queue.enqueue(
            request.payload,
            job_id=request.job_id,
            priority=request.priority,
            delay_ms=request.delay_ms,
        )
    except MarketPulseError as e:
        raise _http_error(e)
    logger.info(f"Enqueued {job.type} job {job.id} on {queue_name} via API")
    return job.to_dict()


@router.get("/{queue_name}/failed", response_model=List[JobResponse])
async def list_failed_jobs(
    queue_name: str,
    start: int = 0,
    limit: int = 50,
    services: Services = Depends(get_services),
):
    """Failed jobs, most recent first."""
    try:
        queue = services.queues.get(queue_name)
    except MarketPulseError as e:
        raise _http_error(e)
    jobs = await queue.list_failed(start, start + max(limit, 1) - 1)
    return [job.to_dict() for job in jobs]


@router.get("/{queue_name}/{job_id}", response_model=JobResponse)
async def get_job(
    queue_name: str,
    job_id: str,
    services: Services = Depends(get_services),
):
    try:
        queue = services.queues.get(queue_name)
        job = await queue.get_job(job_id)
        if job is None:
            raise JobNotFoundError(queue_name, job_id)
    except MarketPulseError as e:
        raise _http_error(e)
    return job.to_dict()


@router.post("/{queue_name}/{job_id}/retry", response_model=JobResponse)
async def retry_job(
    queue_name: str,
    job_id: str,
    services: Services = Depends(get_services),
):
    """Re-queue a failed job."""
    try:
        job = await services.queues.get(queue_name).retry(job_id)
    except MarketPulseError as e:
        raise _http_error(e)
    return job.to_dict()


@router.delete("/{queue_name}/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_job(
    queue_name: str,
    job_id: str,
    services: Services = Depends(get_services),
):
    """Remove a job that has not started yet."""
    try:
        await services.queues.get(queue_name).cancel(job_id)
    except MarketPulseError as e:
        raise _http_error(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@subscriptions_router.get("/stats")
async def get_subscription_stats(services: Services = Depends(get_services)):
    """Live connections and subscribers per ticker."""
    stats = await services.registry.stats()
    stats["gateway_connections"] = services.gateway.connection_count
    return stats


@cache_router.get("/stats")
async def get_cache_stats(services: Services = Depends(get_services)):
    """Cache key count and memory usage."""
    return await services.cache.get_stats()
