"""Producer and operator API over the ride queues."""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from ride_jobs.config import (
    DOCUMENT_QUEUE,
    PAYMENT_CONFIRMATION_QUEUE,
    PAYOUT_QUEUE,
    RideJobsConfig,
)
from ride_jobs.errors import JobNotFoundError, QueueNotFoundError
from ride_jobs.models import Job, utcnow
from ride_jobs.payloads import (
    ConfirmationJob,
    DocumentJob,
    PayoutJob,
    ReconciliationJob,
)
from ride_jobs.queue import Queue, QueueStatus
from ride_jobs.store import JobStore

# Throughput assumed for the document ETA shown at upload time.
DOCUMENTS_PER_MINUTE = 100


class DocumentEnqueueResult(BaseModel):
    job_id: str
    queue_position: int
    estimated_wait_minutes: int


class PayoutEnqueueResult(BaseModel):
    job_id: str
    status: str = "queued"


class ConfirmationEnqueueResult(BaseModel):
    job_id: str
    order_id: str
    status: str = "queued"


class ReconciliationEnqueueResult(BaseModel):
    job_id: str
    order_id: str
    status: str = "queued"


class FailedJobSummary(BaseModel):
    """Failed job as shown to operators."""

    id: str
    kind: str
    data: Dict[str, Any]
    failed_reason: Optional[str] = None
    attempts_made: int
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "FailedJobSummary":
        return cls(
            id=job.id,
            kind=job.kind,
            data=job.payload,
            failed_reason=job.failed_reason,
            attempts_made=job.attempts,
            created_at=job.created_at,
            finished_at=job.finished_at,
        )


def build_queues(
    config: RideJobsConfig,
    store: JobStore,
    clock: Callable[[], datetime] = utcnow,
    logger: Optional[logging.Logger] = None,
) -> Dict[str, Queue]:
    """One ``Queue`` per configured queue name, all on the same store."""
    return {
        name: Queue(
            name,
            store,
            retry_policy=settings.retry_policy,
            retention_policy=settings.retention_policy,
            lease_seconds=config.lease_seconds,
            clock=clock,
            logger=logger,
        )
        for name, settings in config.queue_settings.items()
    }


class JobService:
    """
    Entry point for domain code enqueueing work and for operators.

    Producers get an acknowledgement as soon as the job is stored; outcomes
    are observed later through job status or escalation.
    """

    def __init__(
        self,
        queues: Dict[str, Queue],
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.queues = queues
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def get_queue(self, queue_name: str) -> Queue:
        try:
            return self.queues[queue_name]
        except KeyError:
            raise QueueNotFoundError(queue_name) from None

    def _timestamp(self) -> int:
        return int(self.clock().timestamp() * 1000)

    async def enqueue_document_job(
        self,
        user_id: str,
        driver_id: str,
        document_id: str,
        document_type: str,
        s3_key: str,
    ) -> DocumentEnqueueResult:
        """
        Queue an uploaded document for validation.

        Returns:
            Job id with the document's position in line and a rough wait estimate
        """
        payload = DocumentJob(
            user_id=user_id,
            driver_id=driver_id,
            document_id=document_id,
            document_type=document_type,
            s3_key=s3_key,
        )
        queue = self.get_queue(DOCUMENT_QUEUE)
        job = await queue.enqueue(payload.kind, payload.model_dump(exclude={"kind"}))

        status = await queue.get_status()
        position = status.waiting + 1
        return DocumentEnqueueResult(
            job_id=job.id,
            queue_position=position,
            estimated_wait_minutes=math.ceil(position / DOCUMENTS_PER_MINUTE),
        )

    async def enqueue_payout_job(
        self,
        trip_id: str,
        driver_id: str,
        amount: float,
        beneficiary_id: str,
        transaction_id: Optional[str] = None,
    ) -> PayoutEnqueueResult:
        """
        Queue a driver payout.

        The transaction id, when given, is the job id, so queueing the same
        payout twice yields one job.
        """
        payload = PayoutJob(
            trip_id=trip_id,
            driver_id=driver_id,
            amount=amount,
            beneficiary_id=beneficiary_id,
            transaction_id=transaction_id,
        )
        job = await self.get_queue(PAYOUT_QUEUE).enqueue(
            payload.kind,
            payload.model_dump(exclude={"kind"}),
            job_id=transaction_id or f"payout_{trip_id}_{self._timestamp()}",
        )
        return PayoutEnqueueResult(job_id=job.id)

    async def enqueue_payment_confirmation_job(
        self,
        order_id: str,
        booking_id: Optional[str] = None,
        trip_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        amount: Optional[float] = None,
        reason: Optional[str] = None,
    ) -> ConfirmationEnqueueResult:
        payload = ConfirmationJob(
            order_id=order_id,
            booking_id=booking_id,
            trip_id=trip_id,
            transaction_id=transaction_id,
            amount=amount,
            reason=reason,
        )
        job = await self.get_queue(PAYMENT_CONFIRMATION_QUEUE).enqueue(
            payload.kind,
            payload.model_dump(exclude={"kind"}),
            job_id=transaction_id or f"confirm_{order_id}_{self._timestamp()}",
        )
        return ConfirmationEnqueueResult(job_id=job.id, order_id=order_id)

    async def enqueue_reconciliation_job(
        self,
        order_id: str,
        transaction_id: Optional[str] = None,
        expected_status: Optional[str] = None,
    ) -> ReconciliationEnqueueResult:
        """Queue a one-off check of a single order against the gateway."""
        payload = ReconciliationJob(
            order_id=order_id,
            transaction_id=transaction_id,
            expected_status=expected_status,
        )
        job = await self.get_queue(PAYMENT_CONFIRMATION_QUEUE).enqueue(
            payload.kind,
            payload.model_dump(exclude={"kind"}),
            job_id=f"reconcile_{order_id}_{self._timestamp()}",
        )
        return ReconciliationEnqueueResult(job_id=job.id, order_id=order_id)

    async def get_queue_status(self, queue_name: str) -> QueueStatus:
        return await self.get_queue(queue_name).get_status()

    async def list_failed_jobs(
        self, queue_name: str, start: int = 0, end: int = 9
    ) -> List[FailedJobSummary]:
        """Failed jobs of a queue, most recent first, ``start``..``end`` inclusive."""
        jobs = await self.get_queue(queue_name).list_failed(start, end)
        return [FailedJobSummary.from_job(job) for job in jobs]

    async def retry_job(self, job_id: str, queue_name: Optional[str] = None) -> Job:
        """
        Re-queue a failed job.

        Raises:
            JobNotFoundError: If no queue holds the job
            InvalidJobStateError: If the job is not failed
        """
        if queue_name is not None:
            return await self.get_queue(queue_name).retry(job_id)

        job = await self.get_job(job_id)
        return await self.get_queue(job.queue_name).retry(job_id)

    async def pause_queue(self, queue_name: str) -> None:
        await self.get_queue(queue_name).pause()

    async def resume_queue(self, queue_name: str) -> None:
        await self.get_queue(queue_name).resume()

    async def get_job(self, job_id: str) -> Job:
        """
        Get a job by id from any queue.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        if not self.queues:
            raise JobNotFoundError(job_id)
        # Every queue reads the same store.
        job = await next(iter(self.queues.values())).get_job(job_id)
        if job.queue_name not in self.queues:
            raise JobNotFoundError(job_id)
        return job
