"""FastAPI router for the ride jobs producer and operator API."""

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from ride_jobs.errors import (
    DuplicateJobIdError,
    InvalidJobStateError,
    JobNotFoundError,
    QueueNotFoundError,
)
from ride_jobs.queue import QueueStatus
from ride_jobs.service import (
    ConfirmationEnqueueResult,
    DocumentEnqueueResult,
    FailedJobSummary,
    JobService,
    PayoutEnqueueResult,
)

logger = logging.getLogger(__name__)


class DocumentJobRequest(BaseModel):
    user_id: str
    driver_id: str
    document_id: str
    document_type: str
    s3_key: str


class PayoutJobRequest(BaseModel):
    trip_id: str
    driver_id: str
    amount: float = Field(gt=0)
    beneficiary_id: str
    transaction_id: Optional[str] = None


class ConfirmationJobRequest(BaseModel):
    order_id: str
    booking_id: Optional[str] = None
    trip_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    reason: Optional[str] = None


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    queue_name: str
    kind: str
    status: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    next_run_at: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    worker_id: Optional[str] = None
    lease_expires_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None


def create_jobs_router(
    job_service_factory: Callable[[], JobService],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the ride jobs API.

    Args:
        job_service_factory: Callable that returns a JobService instance
        auth_token: Optional token required in the X-Ride-Jobs-Token header

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_job_service() -> JobService:
        """Dependency to get JobService instance."""
        return job_service_factory()

    async def verify_auth_token(
        x_ride_jobs_token: Optional[str] = Header(None, alias="X-Ride-Jobs-Token")
    ) -> None:
        """Verify auth token if configured."""
        if auth_token:
            if not x_ride_jobs_token or x_ride_jobs_token != auth_token:
                raise HTTPException(status_code=401, detail="Invalid or missing auth token")

    def to_http_error(e: Exception) -> HTTPException:
        if isinstance(e, (JobNotFoundError, QueueNotFoundError)):
            return HTTPException(status_code=404, detail=str(e))
        if isinstance(e, (InvalidJobStateError, DuplicateJobIdError)):
            return HTTPException(status_code=409, detail=str(e))
        if isinstance(e, ValueError):
            return HTTPException(status_code=400, detail=str(e))
        logger.exception("Error handling ride jobs request")
        return HTTPException(status_code=500, detail="Internal server error")

    @router.post(
        "/jobs/documents",
        response_model=DocumentEnqueueResult,
        status_code=202,
        dependencies=[Depends(verify_auth_token)],
    )
    async def enqueue_document(
        request: DocumentJobRequest,
        job_service: JobService = Depends(get_job_service),
    ):
        """Queue an uploaded document for validation."""
        try:
            return await job_service.enqueue_document_job(**request.model_dump())
        except Exception as e:
            raise to_http_error(e) from e

    @router.post(
        "/jobs/payouts",
        response_model=PayoutEnqueueResult,
        status_code=202,
        dependencies=[Depends(verify_auth_token)],
    )
    async def enqueue_payout(
        request: PayoutJobRequest,
        job_service: JobService = Depends(get_job_service),
    ):
        """Queue a driver payout."""
        try:
            return await job_service.enqueue_payout_job(**request.model_dump())
        except Exception as e:
            raise to_http_error(e) from e

    @router.post(
        "/jobs/payment-confirmations",
        response_model=ConfirmationEnqueueResult,
        status_code=202,
        dependencies=[Depends(verify_auth_token)],
    )
    async def enqueue_payment_confirmation(
        request: ConfirmationJobRequest,
        job_service: JobService = Depends(get_job_service),
    ):
        """Queue confirmation of a payment whose synchronous check timed out."""
        try:
            return await job_service.enqueue_payment_confirmation_job(**request.model_dump())
        except Exception as e:
            raise to_http_error(e) from e

    @router.get(
        "/queues/{queue_name}/status",
        response_model=QueueStatus,
        dependencies=[Depends(verify_auth_token)],
    )
    async def get_queue_status(
        queue_name: str,
        job_service: JobService = Depends(get_job_service),
    ):
        try:
            return await job_service.get_queue_status(queue_name)
        except Exception as e:
            raise to_http_error(e) from e

    @router.get(
        "/queues/{queue_name}/failed",
        response_model=List[FailedJobSummary],
        dependencies=[Depends(verify_auth_token)],
    )
    async def list_failed_jobs(
        queue_name: str,
        start: int = Query(0, ge=0),
        end: int = Query(9, ge=0),
        job_service: JobService = Depends(get_job_service),
    ):
        """Failed jobs, most recent first; ``start`` and ``end`` are inclusive."""
        try:
            return await job_service.list_failed_jobs(queue_name, start, end)
        except Exception as e:
            raise to_http_error(e) from e

    @router.post(
        "/jobs/{job_id}/retry",
        response_model=JobResponse,
        dependencies=[Depends(verify_auth_token)],
    )
    async def retry_job(
        job_id: str,
        queue: Optional[str] = Query(None),
        job_service: JobService = Depends(get_job_service),
    ):
        """Re-queue a failed job."""
        try:
            job = await job_service.retry_job(job_id, queue)
            return JobResponse(**job.to_dict())
        except Exception as e:
            raise to_http_error(e) from e

    @router.post("/queues/{queue_name}/pause", dependencies=[Depends(verify_auth_token)])
    async def pause_queue(
        queue_name: str,
        job_service: JobService = Depends(get_job_service),
    ):
        try:
            await job_service.pause_queue(queue_name)
        except Exception as e:
            raise to_http_error(e) from e
        return {"queue": queue_name, "paused": True}

    @router.post("/queues/{queue_name}/resume", dependencies=[Depends(verify_auth_token)])
    async def resume_queue(
        queue_name: str,
        job_service: JobService = Depends(get_job_service),
    ):
        try:
            await job_service.resume_queue(queue_name)
        except Exception as e:
            raise to_http_error(e) from e
        return {"queue": queue_name, "paused": False}

    @router.get(
        "/jobs/{job_id}",
        response_model=JobResponse,
        dependencies=[Depends(verify_auth_token)],
    )
    async def get_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
    ):
        """Get job details by ID."""
        try:
            job = await job_service.get_job(job_id)
            return JobResponse(**job.to_dict())
        except Exception as e:
            raise to_http_error(e) from e

    return router
