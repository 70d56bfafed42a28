"""Job store interface and its PostgreSQL implementation."""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from ride_jobs.errors import InvalidJobStateError, JobNotFoundError
from ride_jobs.models import Job, JobStatus


class JobStore(ABC):
    """
    Durable storage for job records.

    ``claim_next`` is the only serialization point of the engine: two
    concurrent callers must never receive the same job. The finish
    transitions and ``renew_lease`` act only on the claim named by
    ``worker_id`` and ``attempts``; a claim that was lost to stalled-job
    recovery raises ``InvalidJobStateError``.
    """

    @abstractmethod
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
        """Insert a job; an existing id returns the stored record untouched."""

    @abstractmethod
    async def get_job(self, job_id: str) -> Job:
        """Get a job by ID."""

    @abstractmethod
    async def claim_next(
        self, queue_name: str, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Optional[Job]:
        """Atomically move the next ready job to ``active`` and return it."""

    @abstractmethod
    async def mark_completed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        result: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        """Record a successful run of the claim ``worker_id`` made at ``attempts``."""

    @abstractmethod
    async def mark_delayed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        error: Dict[str, Any],
        next_run_at: datetime,
        now: datetime,
    ) -> None:
        """Put a claimed job back in line for a retry at ``next_run_at``."""

    @abstractmethod
    async def mark_failed(
        self, job_id: str, worker_id: str, attempts: int, error: Dict[str, Any], now: datetime
    ) -> None:
        """Fail a claimed job terminally."""

    @abstractmethod
    async def renew_lease(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        lease_expires_at: datetime,
        now: datetime,
    ) -> None:
        """Push out the lease of a claim that is still held."""

    @abstractmethod
    async def list_jobs(
        self, queue_name: str, status: JobStatus, start: int = 0, end: int = 9
    ) -> List[Job]:
        """Jobs in a status, inclusive ``start..end`` range, finished jobs newest first."""

    @abstractmethod
    async def count_by_status(self, queue_name: str, now: datetime) -> Dict[str, int]:
        """Per-status counts; due delayed jobs count as waiting."""

    @abstractmethod
    async def count_completed_since(self, queue_name: str, since: datetime) -> int:
        """Number of jobs that completed after ``since``."""

    @abstractmethod
    async def reset_for_retry(self, job_id: str, extra_attempts: int, now: datetime) -> Job:
        """Move a failed job back to ``waiting`` with ``extra_attempts`` more runs."""

    @abstractmethod
    async def requeue_stalled(self, queue_name: str, now: datetime) -> Tuple[int, List[Job]]:
        """
        Recover active jobs whose lease expired.

        Returns:
            Number of jobs put back to waiting, and the jobs failed because
            they had no attempts left
        """

    @abstractmethod
    async def purge(self, queue_name: str, status: JobStatus, finished_before: datetime) -> int:
        """Delete finished jobs older than ``finished_before``."""

    @abstractmethod
    async def set_paused(self, queue_name: str, paused: bool) -> None:
        """Pause or resume claiming for a queue."""

    @abstractmethod
    async def is_paused(self, queue_name: str) -> bool:
        """Whether a queue is paused."""


def stalled_error(now: datetime) -> Dict[str, Any]:
    return {
        "error": "Job stalled - worker lease expired",
        "type": "StalledJob",
        "retryable": True,
        "timestamp": now.isoformat(),
    }


class PostgresJobStore(JobStore):
    """Job store on PostgreSQL, claiming with FOR UPDATE SKIP LOCKED."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

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
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ride_jobs (
                    id, queue_name, kind, status, payload,
                    attempts, max_attempts, next_run_at, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, 0, $6, $7, $8, $8)
                ON CONFLICT (id) DO NOTHING
                """,
                id,
                queue_name,
                kind,
                status.value,
                json.dumps(payload),
                max_attempts,
                next_run_at,
                now,
            )

        return await self.get_job(id)

    async def get_job(self, job_id: str) -> Job:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM ride_jobs WHERE id = $1", job_id)

        if not row:
            raise JobNotFoundError(job_id)

        return self._row_to_job(row)

    async def claim_next(
        self, queue_name: str, worker_id: str, now: datetime, lease_expires_at: datetime
    ) -> Optional[Job]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE ride_jobs
                SET status = $1,
                    attempts = attempts + 1,
                    worker_id = $2,
                    started_at = $3,
                    lease_expires_at = $4,
                    updated_at = $3
                WHERE id = (
                    SELECT id FROM ride_jobs
                    WHERE queue_name = $5
                      AND status IN ($6, $7)
                      AND next_run_at <= $3
                      AND NOT EXISTS (
                          SELECT 1 FROM ride_job_queues q
                          WHERE q.name = $5 AND q.paused
                      )
                    ORDER BY next_run_at ASC, created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobStatus.ACTIVE.value,
                worker_id,
                now,
                lease_expires_at,
                queue_name,
                JobStatus.WAITING.value,
                JobStatus.DELAYED.value,
            )

        return self._row_to_job(row) if row else None

    async def mark_completed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        result: Optional[Dict[str, Any]],
        now: datetime,
    ) -> None:
        await self._update_claimed(
            job_id,
            worker_id,
            attempts,
            JobStatus.COMPLETED,
            """
            UPDATE ride_jobs
            SET status = $4,
                result = $5,
                lease_expires_at = NULL,
                finished_at = $6,
                updated_at = $6
            WHERE id = $1 AND worker_id = $2 AND attempts = $3 AND status = 'active'
            """,
            JobStatus.COMPLETED.value,
            json.dumps(result) if result is not None else None,
            now,
        )

    async def mark_delayed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        error: Dict[str, Any],
        next_run_at: datetime,
        now: datetime,
    ) -> None:
        await self._update_claimed(
            job_id,
            worker_id,
            attempts,
            JobStatus.DELAYED,
            """
            UPDATE ride_jobs
            SET status = $4,
                last_error = $5,
                next_run_at = $6,
                worker_id = NULL,
                lease_expires_at = NULL,
                updated_at = $7
            WHERE id = $1 AND worker_id = $2 AND attempts = $3 AND status = 'active'
            """,
            JobStatus.DELAYED.value,
            json.dumps(error),
            next_run_at,
            now,
        )

    async def mark_failed(
        self, job_id: str, worker_id: str, attempts: int, error: Dict[str, Any], now: datetime
    ) -> None:
        await self._update_claimed(
            job_id,
            worker_id,
            attempts,
            JobStatus.FAILED,
            """
            UPDATE ride_jobs
            SET status = $4,
                last_error = $5,
                lease_expires_at = NULL,
                finished_at = $6,
                updated_at = $6
            WHERE id = $1 AND worker_id = $2 AND attempts = $3 AND status = 'active'
            """,
            JobStatus.FAILED.value,
            json.dumps(error),
            now,
        )

    async def renew_lease(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        lease_expires_at: datetime,
        now: datetime,
    ) -> None:
        await self._update_claimed(
            job_id,
            worker_id,
            attempts,
            JobStatus.ACTIVE,
            """
            UPDATE ride_jobs
            SET lease_expires_at = $4,
                updated_at = $5
            WHERE id = $1 AND worker_id = $2 AND attempts = $3 AND status = 'active'
            """,
            lease_expires_at,
            now,
        )

    async def _update_claimed(
        self,
        job_id: str,
        worker_id: str,
        attempts: int,
        target: JobStatus,
        query: str,
        *args,
    ) -> None:
        """Run ``query`` against one claim; $1..$3 are the job id, worker and attempt."""
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(query, job_id, worker_id, attempts, *args)

        if _affected(result) == 0:
            job = await self.get_job(job_id)
            raise InvalidJobStateError(job_id, job.status.value, target.value)

    async def list_jobs(
        self, queue_name: str, status: JobStatus, start: int = 0, end: int = 9
    ) -> List[Job]:
        if status in (JobStatus.COMPLETED, JobStatus.FAILED):
            order_by = "finished_at DESC, id"
        else:
            order_by = "next_run_at ASC, created_at ASC"
        limit = max(end - start + 1, 0)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM ride_jobs
                WHERE queue_name = $1 AND status = $2
                ORDER BY {order_by}
                OFFSET $3 LIMIT $4
                """,
                queue_name,
                status.value,
                max(start, 0),
                limit,
            )

        return [self._row_to_job(row) for row in rows]

    async def count_by_status(self, queue_name: str, now: datetime) -> Dict[str, int]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                    COUNT(*) FILTER (
                        WHERE status = 'waiting'
                           OR (status = 'delayed' AND next_run_at <= $2)
                    ) AS waiting,
                    COUNT(*) FILTER (WHERE status = 'active') AS active,
                    COUNT(*) FILTER (
                        WHERE status = 'delayed' AND next_run_at > $2
                    ) AS delayed,
                    COUNT(*) FILTER (WHERE status = 'completed') AS completed,
                    COUNT(*) FILTER (WHERE status = 'failed') AS failed
                FROM ride_jobs
                WHERE queue_name = $1
                """,
                queue_name,
                now,
            )

        return {key: row[key] for key in ("waiting", "active", "delayed", "completed", "failed")}

    async def count_completed_since(self, queue_name: str, since: datetime) -> int:
        async with self.db_pool.acquire() as conn:
            count = await conn.fetchval(
                """
                SELECT COUNT(*) FROM ride_jobs
                WHERE queue_name = $1 AND status = $2 AND finished_at > $3
                """,
                queue_name,
                JobStatus.COMPLETED.value,
                since,
            )
        return count

    async def reset_for_retry(self, job_id: str, extra_attempts: int, now: datetime) -> Job:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE ride_jobs
                SET status = $1,
                    max_attempts = attempts + $2,
                    next_run_at = $3,
                    last_error = NULL,
                    worker_id = NULL,
                    finished_at = NULL,
                    updated_at = $3
                WHERE id = $4 AND status = $5
                RETURNING *
                """,
                JobStatus.WAITING.value,
                extra_attempts,
                now,
                job_id,
                JobStatus.FAILED.value,
            )

        if not row:
            job = await self.get_job(job_id)
            raise InvalidJobStateError(job_id, job.status.value, JobStatus.WAITING.value)

        return self._row_to_job(row)

    async def requeue_stalled(self, queue_name: str, now: datetime) -> Tuple[int, List[Job]]:
        error = json.dumps(stalled_error(now))
        async with self.db_pool.acquire() as conn:
            async with conn.transaction():
                requeued = await conn.execute(
                    """
                    UPDATE ride_jobs
                    SET status = $1,
                        worker_id = NULL,
                        lease_expires_at = NULL,
                        last_error = $2,
                        next_run_at = $3,
                        updated_at = $3
                    WHERE queue_name = $4
                      AND status = $5
                      AND lease_expires_at < $3
                      AND attempts < max_attempts
                    """,
                    JobStatus.WAITING.value,
                    error,
                    now,
                    queue_name,
                    JobStatus.ACTIVE.value,
                )

                failed_rows = await conn.fetch(
                    """
                    UPDATE ride_jobs
                    SET status = $1,
                        lease_expires_at = NULL,
                        last_error = $2,
                        finished_at = $3,
                        updated_at = $3
                    WHERE queue_name = $4
                      AND status = $5
                      AND lease_expires_at < $3
                      AND attempts >= max_attempts
                    RETURNING *
                    """,
                    JobStatus.FAILED.value,
                    error,
                    now,
                    queue_name,
                    JobStatus.ACTIVE.value,
                )

        return _affected(requeued), [self._row_to_job(row) for row in failed_rows]

    async def purge(self, queue_name: str, status: JobStatus, finished_before: datetime) -> int:
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                DELETE FROM ride_jobs
                WHERE queue_name = $1 AND status = $2 AND finished_at < $3
                """,
                queue_name,
                status.value,
                finished_before,
            )
        return _affected(result)

    async def set_paused(self, queue_name: str, paused: bool) -> None:
        async with self.db_pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO ride_job_queues (name, paused, updated_at)
                VALUES ($1, $2, now())
                ON CONFLICT (name) DO UPDATE
                SET paused = EXCLUDED.paused, updated_at = now()
                """,
                queue_name,
                paused,
            )

    async def is_paused(self, queue_name: str) -> bool:
        async with self.db_pool.acquire() as conn:
            paused = await conn.fetchval(
                "SELECT paused FROM ride_job_queues WHERE name = $1", queue_name
            )
        return bool(paused)

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            queue_name=row["queue_name"],
            kind=row["kind"],
            status=JobStatus(row["status"]),
            payload=_json_field(row["payload"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_run_at=row["next_run_at"],
            last_error=_json_field(row["last_error"]),
            result=_json_field(row["result"]),
            worker_id=row["worker_id"],
            lease_expires_at=row["lease_expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )


def _json_field(value: Any) -> Any:
    if value is not None and isinstance(value, str):
        return json.loads(value)
    return value


def _affected(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 5"
    return int(status.split()[-1]) if status else 0


def lease_until(now: datetime, lease_seconds: float) -> datetime:
    return now + timedelta(seconds=lease_seconds)
