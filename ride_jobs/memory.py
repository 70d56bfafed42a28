"""In-process job store for tests and single-process deployments."""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from ride_jobs.errors import InvalidJobStateError, JobNotFoundError
from ride_jobs.models import Job, JobStatus
from ride_jobs.store import JobStore, stalled_error

_FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED)
_READY = (JobStatus.WAITING, JobStatus.DELAYED)


class InMemoryJobStore(JobStore):
    """
    Job store held in a dict and guarded by one asyncio lock.

    Records are copied in and out, so callers never share state with the
    store. Nothing survives the process.
    """

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._paused: Set[str] = set()
        self._lock = asyncio.Lock()

    async def insert_job(
        self,
        id: str,
        queue_name: str,
        kind: str,
        payload: Dict[str, Any],
        max_attempts: int,
        next_run_at: datetime,
        status: JobStatus,
        now: datetime,
    ) -> Job:
        async with self._lock:
            existing = self._jobs.get(id)
            if existing is None:
                existing = Job(
                    id=id,
                    queue_name=queue_name,
                    kind=kind,
                    status=status,
                    payload=dict(payload),
                    attempts=0,
                    max_attempts=max_attempts,
                    next_run_at=next_run_at,
                    created_at=now,
                    updated_at=now,
                )
                self._jobs[id] = existing
            return existing.copy()

    async def get_job(self, job_id: str) -> Job:
        async with self._lock:
            return self._get(job_id).copy()

    async def claim_next(
        self, queue_name: str, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Optional[Job]:
        async with self._lock:
            if queue_name in self._paused:
                return None

            ready = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.status in _READY
                and job.next_run_at <= now
            ]
            if not ready:
                return None

            job = min(ready, key=lambda j: (j.next_run_at, j.created_at))
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.worker_id = worker_id
            job.started_at = now
            job.lease_expires_at = lease_expires_at
            job.updated_at = now
            return job.copy()

    async def mark_completed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        result: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        async with self._lock:
            job = self._get_claimed(job_id, worker_id, attempts, JobStatus.COMPLETED)
            job.status = JobStatus.COMPLETED
            job.result = result
            job.lease_expires_at = None
            job.finished_at = now
            job.updated_at = now

    async def mark_delayed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        error: Dict[str, Any],
        next_run_at: datetime,
        now: datetime,
    ) -> None:
        async with self._lock:
            job = self._get_claimed(job_id, worker_id, attempts, JobStatus.DELAYED)
            job.status = JobStatus.DELAYED
            job.last_error = error
            job.next_run_at = next_run_at
            job.worker_id = None
            job.lease_expires_at = None
            job.updated_at = now

    async def mark_failed(
        self, job_id: str, worker_id: str, attempts: int, error: Dict[str, Any], now: datetime
    ) -> None:
        async with self._lock:
            job = self._get_claimed(job_id, worker_id, attempts, JobStatus.FAILED)
            self._fail(job, error, now)

    async def renew_lease(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        lease_expires_at: datetime,
        now: datetime,
    ) -> None:
        async with self._lock:
            job = self._get_claimed(job_id, worker_id, attempts, JobStatus.ACTIVE)
            job.lease_expires_at = lease_expires_at
            job.updated_at = now

    async def list_jobs(
        self, queue_name: str, status: JobStatus, start: int = 0, end: int = 9
    ) -> List[Job]:
        async with self._lock:
            jobs = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name and job.status == status
            ]
        if status in _FINISHED:
            jobs.sort(key=lambda j: j.finished_at, reverse=True)
        else:
            jobs.sort(key=lambda j: (j.next_run_at, j.created_at))
        return [job.copy() for job in jobs[max(start, 0) : end + 1]]

    async def count_by_status(self, queue_name: str, now: datetime) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        async with self._lock:
            for job in self._jobs.values():
                if job.queue_name != queue_name:
                    continue
                if job.status == JobStatus.DELAYED and job.next_run_at <= now:
                    counts[JobStatus.WAITING.value] += 1
                else:
                    counts[job.status.value] += 1
        return counts

    async def count_completed_since(self, queue_name: str, since: datetime) -> int:
        async with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.status == JobStatus.COMPLETED
                and job.finished_at > since
            )

    async def reset_for_retry(self, job_id: str, extra_attempts: int, now: datetime) -> Job:
        async with self._lock:
            job = self._get(job_id)
            if job.status != JobStatus.FAILED:
                raise InvalidJobStateError(job_id, job.status.value, JobStatus.WAITING.value)
            job.status = JobStatus.WAITING
            job.max_attempts = job.attempts + extra_attempts
            job.next_run_at = now
            job.last_error = None
            job.worker_id = None
            job.finished_at = None
            job.updated_at = now
            return job.copy()

    async def requeue_stalled(self, queue_name: str, now: datetime) -> Tuple[int, List[Job]]:
        requeued = 0
        failed: List[Job] = []
        error = stalled_error(now)
        async with self._lock:
            for job in self._jobs.values():
                if (
                    job.queue_name != queue_name
                    or job.status != JobStatus.ACTIVE
                    or job.lease_expires_at is None
                    or job.lease_expires_at >= now
                ):
                    continue
                if job.attempts < job.max_attempts:
                    job.status = JobStatus.WAITING
                    job.worker_id = None
                    job.lease_expires_at = None
                    job.last_error = dict(error)
                    job.next_run_at = now
                    job.updated_at = now
                    requeued += 1
                else:
                    self._fail(job, dict(error), now)
                    failed.append(job.copy())
        return requeued, failed

    async def purge(self, queue_name: str, status: JobStatus, finished_before: datetime) -> int:
        async with self._lock:
            doomed = [
                job.id
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.status == status
                and job.finished_at is not None
                and job.finished_at < finished_before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
        return len(doomed)

    async def set_paused(self, queue_name: str, paused: bool) -> None:
        async with self._lock:
            if paused:
                self._paused.add(queue_name)
            else:
                self._paused.discard(queue_name)

    async def is_paused(self, queue_name: str) -> bool:
        return queue_name in self._paused

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _get_claimed(
        self, job_id: str, worker_id: str, attempts: int, target: JobStatus
    ) -> Job:
        job = self._get(job_id)
        if (
            job.status != JobStatus.ACTIVE
            or job.worker_id != worker_id
            or job.attempts != attempts
        ):
            raise InvalidJobStateError(job_id, job.status.value, target.value)
        return job

    @staticmethod
    def _fail(job: Job, error: Dict[str, Any], now: datetime) -> None:
        job.status = JobStatus.FAILED
        job.last_error = error
        job.lease_expires_at = None
        job.finished_at = now
        job.updated_at = now
