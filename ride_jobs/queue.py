"""Named job queues with retry and retention policies."""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel

from ride_jobs.errors import DuplicateJobIdError, JobError, JobNotFoundError
from ride_jobs.models import Job, JobStatus, utcnow
from ride_jobs.retry import RetentionPolicy, RetryPolicy
from ride_jobs.store import JobStore, lease_until


class QueueStatus(BaseModel):
    """Operator view of a queue."""

    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    paused: bool
    processing_rate: int
    estimated_wait_minutes: int


class PurgeResult(BaseModel):
    completed: int
    failed: int


def error_details(
    error: Union[BaseException, str], retryable: bool, attempt: int, now: datetime
) -> Dict[str, Any]:
    """Serializable record of a failed run."""
    if isinstance(error, BaseException):
        message, error_type = str(error) or type(error).__name__, type(error).__name__
    else:
        message, error_type = error, "Error"
    return {
        "error": message,
        "type": error_type,
        "retryable": retryable,
        "attempt": attempt,
        "timestamp": now.isoformat(),
    }


class Queue:
    """
    A named channel of jobs sharing one retry and retention policy.

    Queues own no connection of their own; every state change goes through
    the injected ``JobStore``.
    """

    def __init__(
        self,
        name: str,
        store: JobStore,
        retry_policy: Optional[RetryPolicy] = None,
        retention_policy: Optional[RetentionPolicy] = None,
        lease_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        if lease_seconds <= 0:
            raise ValueError(f"lease_seconds must be > 0, got {lease_seconds}")
        self.name = name
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.retention_policy = retention_policy or RetentionPolicy()
        self.lease_seconds = lease_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    async def enqueue(
        self,
        kind: str,
        payload: Dict[str, Any],
        *,
        job_id: Optional[str] = None,
        delay: Optional[Union[float, timedelta]] = None,
        max_attempts: Optional[int] = None,
    ) -> Job:
        """
        Add a job to the queue.

        Args:
            kind: Payload kind, used to rebuild the typed payload
            payload: Payload fields
            job_id: Explicit id; enqueueing an id already on this queue is a no-op
            delay: Seconds (or timedelta) before the job may be claimed
            max_attempts: Per-job override of the queue's retry ceiling

        Returns:
            The stored job (the pre-existing one for a duplicate id)
        """
        now = self.clock()
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        if max_attempts is not None and max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        delayed = bool(delay and delay > 0)
        job = await self.store.insert_job(
            id=job_id or str(uuid4()),
            queue_name=self.name,
            kind=kind,
            payload=payload,
            max_attempts=max_attempts or self.retry_policy.max_attempts,
            next_run_at=now + timedelta(seconds=delay) if delayed else now,
            status=JobStatus.DELAYED if delayed else JobStatus.WAITING,
            now=now,
        )
        if job.queue_name != self.name:
            raise DuplicateJobIdError(job.id, job.queue_name)

        self.logger.info(f"Enqueued job {job.id} ({kind}) on {self.name}")
        return job

    async def get_job(self, job_id: str) -> Job:
        return await self.store.get_job(job_id)

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        """Claim the next ready job for ``worker_id``, or None."""
        now = self.clock()
        return await self.store.claim_next(
            self.name, worker_id, now, lease_until(now, self.lease_seconds)
        )

    async def renew_lease(self, job: Job) -> datetime:
        """
        Extend the lease of a job this worker still holds.

        Raises:
            InvalidJobStateError: If the claim was lost to stalled-job recovery
        """
        now = self.clock()
        lease_expires_at = lease_until(now, self.lease_seconds)
        await self.store.renew_lease(job.id, job.worker_id, job.attempts, lease_expires_at, now)
        return lease_expires_at

    async def mark_completed(self, job: Job, result: Optional[Dict[str, Any]] = None) -> None:
        await self.store.mark_completed(
            job.id, job.worker_id, job.attempts, result, self.clock()
        )
        self.logger.info(f"Job {job.id} completed on {self.name}")

    async def mark_failed(
        self,
        job: Job,
        error: Union[BaseException, str],
        retryable: Optional[bool] = None,
    ) -> JobStatus:
        """
        Record a failed run and decide between retry and terminal failure.

        ``retryable`` defaults to the error's own classification; anything
        that is not a ``JobError`` counts as retryable.

        Returns:
            ``JobStatus.DELAYED`` when a retry was scheduled, else ``JobStatus.FAILED``
        """
        if retryable is None:
            retryable = error.retryable if isinstance(error, JobError) else True

        now = self.clock()
        details = error_details(error, retryable, job.attempts, now)

        if self.retry_policy.should_retry(job.attempts, retryable, job.max_attempts):
            delay = self.retry_policy.delay_for(job.attempts)
            await self.store.mark_delayed(
                job.id,
                job.worker_id,
                job.attempts,
                details,
                now + timedelta(seconds=delay),
                now,
            )
            self.logger.info(
                f"Job {job.id} will retry (attempt {job.attempts}/{job.max_attempts}) "
                f"after {delay:g}s"
            )
            return JobStatus.DELAYED

        await self.store.mark_failed(job.id, job.worker_id, job.attempts, details, now)
        self.logger.error(
            f"Job {job.id} failed on {self.name} after {job.attempts} attempt(s): "
            f"{details['error']}"
        )
        return JobStatus.FAILED

    async def list_failed(self, start: int = 0, end: int = 9) -> List[Job]:
        return await self.store.list_jobs(self.name, JobStatus.FAILED, start, end)

    async def retry(self, job_id: str) -> Job:
        """Operator retry of a terminally failed job with a fresh attempt budget."""
        if (await self.store.get_job(job_id)).queue_name != self.name:
            raise JobNotFoundError(job_id, f"Job {job_id} not found on queue {self.name}")
        job = await self.store.reset_for_retry(
            job_id, self.retry_policy.max_attempts, self.clock()
        )
        self.logger.info(f"Job {job_id} manually re-queued on {self.name}")
        return job

    async def get_status(self) -> QueueStatus:
        now = self.clock()
        counts = await self.store.count_by_status(self.name, now)
        rate = await self.store.count_completed_since(self.name, now - timedelta(minutes=1))
        waiting = counts["waiting"]
        return QueueStatus(
            waiting=waiting,
            active=counts["active"],
            completed=counts["completed"],
            failed=counts["failed"],
            delayed=counts["delayed"],
            paused=await self.store.is_paused(self.name),
            processing_rate=rate,
            estimated_wait_minutes=math.ceil(waiting / rate) if rate > 0 else 0,
        )

    async def pause(self) -> None:
        await self.store.set_paused(self.name, True)
        self.logger.info(f"Queue {self.name} paused")

    async def resume(self) -> None:
        await self.store.set_paused(self.name, False)
        self.logger.info(f"Queue {self.name} resumed")

    async def is_paused(self) -> bool:
        return await self.store.is_paused(self.name)

    async def purge_expired(self) -> PurgeResult:
        """Drop finished jobs that are past the retention window."""
        now = self.clock()
        completed = await self.store.purge(
            self.name,
            JobStatus.COMPLETED,
            now - timedelta(seconds=self.retention_policy.keep_completed_seconds),
        )
        failed = await self.store.purge(
            self.name,
            JobStatus.FAILED,
            now - timedelta(seconds=self.retention_policy.keep_failed_seconds),
        )
        if completed or failed:
            self.logger.info(
                f"Purged {completed} completed and {failed} failed jobs from {self.name}"
            )
        return PurgeResult(completed=completed, failed=failed)

    async def requeue_stalled(self) -> List[Job]:
        """
        Recover jobs whose worker lease expired.

        Returns:
            Jobs that were failed because they had no attempts left
        """
        requeued, failed = await self.store.requeue_stalled(self.name, self.clock())
        if requeued:
            self.logger.warning(f"Re-queued {requeued} stalled jobs on {self.name}")
        for job in failed:
            self.logger.error(f"Stalled job {job.id} on {self.name} out of attempts")
        return failed
