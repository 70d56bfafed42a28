"""Worker pool executing queued jobs with bounded concurrency."""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from ride_jobs.errors import HandlerNotFoundError, InvalidJobStateError, QueueNotFoundError
from ride_jobs.models import Job, JobStatus
from ride_jobs.payloads import parse_payload
from ride_jobs.queue import Queue
from ride_jobs.ratelimit import RateLimiter
from ride_jobs.registry import JobRegistry


class JobObserver:
    """Hooks run after a job outcome is stored. Override the ones you need."""

    async def on_completed(self, job: Job, result: Optional[Dict[str, Any]]) -> None:
        pass

    async def on_retry_scheduled(self, job: Job, error: BaseException) -> None:
        pass

    async def on_failed(self, job: Job, error: BaseException) -> None:
        """Called exactly once when a job reaches ``failed``."""
        pass


class _QueueRunner:
    def __init__(
        self,
        tasks: List[asyncio.Task],
        stop_event: asyncio.Event,
        limiter: Optional[RateLimiter],
    ):
        self.tasks = tasks
        self.stop_event = stop_event
        self.limiter = limiter


class WorkerPool:
    """
    Runs executor loops over named queues.

    Each started queue gets ``concurrency`` executors sharing one optional
    rate limiter. An executor claims a job, runs its handler and stores the
    outcome; the store's atomic claim is the only coordination between
    executors, in this process or any other.
    """

    def __init__(
        self,
        queues: Dict[str, Queue],
        registry: Optional[JobRegistry] = None,
        observers: Optional[Sequence[JobObserver]] = None,
        poll_interval: float = 1.0,
        error_backoff: float = 5.0,
        worker_name: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.queues = queues
        self.registry = registry or JobRegistry()
        self.observers = list(observers or [])
        self.poll_interval = poll_interval
        self.error_backoff = error_backoff
        self.worker_name = worker_name or f"worker-{uuid4().hex[:8]}"
        self.logger = logger or logging.getLogger(__name__)
        self._runners: Dict[str, _QueueRunner] = {}
        self._in_flight: Dict[str, int] = {name: 0 for name in queues}

    def _queue(self, queue_name: str) -> Queue:
        try:
            return self.queues[queue_name]
        except KeyError:
            raise QueueNotFoundError(queue_name) from None

    def register_handler(self, queue_name: str, handler: Callable) -> None:
        self._queue(queue_name)
        self.registry.register(queue_name, handler)

    def is_running(self, queue_name: str) -> bool:
        return queue_name in self._runners

    def in_flight(self, queue_name: str) -> int:
        return self._in_flight.get(queue_name, 0)

    def start(
        self,
        queue_name: str,
        concurrency: int,
        rate_limit: Optional[Tuple[int, float]] = None,
    ) -> None:
        """
        Start executors for a queue.

        Args:
            queue_name: Queue to process
            concurrency: Number of jobs that may run at once
            rate_limit: Optional ``(max_starts, duration_seconds)`` cap on job starts

        Raises:
            QueueNotFoundError: If the pool does not know the queue
            HandlerNotFoundError: If no handler is registered for it
        """
        queue = self._queue(queue_name)
        self.registry.require_handler(queue_name)
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if queue_name in self._runners:
            raise RuntimeError(f"Queue {queue_name} is already running")

        limiter = RateLimiter(*rate_limit) if rate_limit else None
        stop_event = asyncio.Event()
        tasks = [
            asyncio.create_task(
                self._executor_loop(
                    queue, f"{self.worker_name}:{queue_name}:{i}", limiter, stop_event
                ),
                name=f"{queue_name}-executor-{i}",
            )
            for i in range(concurrency)
        ]
        self._runners[queue_name] = _QueueRunner(tasks, stop_event, limiter)
        self.logger.info(
            f"Started {concurrency} executors for {queue_name}"
            + (f" (max {rate_limit[0]} starts per {rate_limit[1]:g}s)" if rate_limit else "")
        )

    async def stop(
        self, queue_name: str, drain: bool = True, timeout: Optional[float] = None
    ) -> None:
        """
        Stop the executors of a queue.

        With ``drain`` the executors finish their current job first; anything
        still running after ``timeout`` is cancelled and its lease left to
        expire, so stalled-job recovery hands it to another worker.
        """
        runner = self._runners.pop(queue_name, None)
        if runner is None:
            return

        runner.stop_event.set()
        if drain:
            _, pending = await asyncio.wait(runner.tasks, timeout=timeout)
        else:
            pending = set(runner.tasks)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self.logger.info(f"Stopped executors for {queue_name}")

    async def stop_all(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        await asyncio.gather(
            *(self.stop(name, drain=drain, timeout=timeout) for name in list(self._runners))
        )

    async def pause(self, queue_name: str) -> None:
        """Stop claiming new jobs on the queue; running jobs finish."""
        await self._queue(queue_name).pause()

    async def resume(self, queue_name: str) -> None:
        await self._queue(queue_name).resume()

    async def drain(self, queue_name: str, timeout: Optional[float] = None) -> bool:
        """
        Wait until the queue has no ready job and nothing runs here.

        Returns:
            True if drained, False if ``timeout`` elapsed first
        """
        queue = self._queue(queue_name)

        async def wait_empty() -> None:
            while True:
                status = await queue.get_status()
                if status.waiting == 0 and self.in_flight(queue_name) == 0:
                    return
                await asyncio.sleep(self.poll_interval)

        try:
            await asyncio.wait_for(wait_empty(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_once(self, queue_name: str, worker_id: Optional[str] = None) -> Optional[Job]:
        """
        Claim and execute a single job.

        Returns:
            The job as stored after execution, or None if nothing was ready
        """
        queue = self._queue(queue_name)
        job = await queue.claim_next(worker_id or f"{self.worker_name}:{queue_name}")
        if job is None:
            return None
        await self._execute(queue, job)
        return await queue.get_job(job.id)

    async def _executor_loop(
        self,
        queue: Queue,
        worker_id: str,
        limiter: Optional[RateLimiter],
        stop_event: asyncio.Event,
    ) -> None:
        self.logger.debug(f"Executor {worker_id} started")

        while not stop_event.is_set():
            try:
                if limiter:
                    job = await limiter.throttle(lambda: queue.claim_next(worker_id))
                else:
                    job = await queue.claim_next(worker_id)

                if job is None:
                    await self._sleep(stop_event, self.poll_interval)
                    continue

                await self._execute(queue, job)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error in executor {worker_id}: {str(e)}", exc_info=True)
                await self._sleep(stop_event, self.error_backoff)

        self.logger.debug(f"Executor {worker_id} stopped")

    @staticmethod
    async def _sleep(stop_event: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _execute(self, queue: Queue, job: Job) -> None:
        self._in_flight[queue.name] = self._in_flight.get(queue.name, 0) + 1
        heartbeat = asyncio.create_task(
            self._keep_lease(queue, job), name=f"{job.id}-heartbeat"
        )
        try:
            await self._run_handler(queue, job)
        except InvalidJobStateError as e:
            # The claim was recovered by another worker; its outcome wins.
            self.logger.warning(f"Job {job.id} outcome discarded: {e}")
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._in_flight[queue.name] -= 1

    async def _keep_lease(self, queue: Queue, job: Job) -> None:
        """Renew the job's lease every half lease while its handler runs."""
        interval = queue.lease_seconds / 2
        while True:
            await asyncio.sleep(interval)
            try:
                lease_expires_at = await queue.renew_lease(job)
            except InvalidJobStateError as e:
                self.logger.warning(f"Job {job.id} lost its lease: {e}")
                return
            except Exception as e:
                self.logger.error(f"Failed to renew lease for job {job.id}: {str(e)}")
                continue
            self.logger.debug(f"Renewed lease for job {job.id} until {lease_expires_at}")

    async def _run_handler(self, queue: Queue, job: Job) -> None:
        handler = self.registry.get_handler(queue.name)
        if handler is None:
            error = HandlerNotFoundError(queue.name)
            self.logger.error(str(error))
            await queue.mark_failed(job, error, retryable=False)
            await self._notify("on_failed", job, error)
            return

        self.logger.info(
            f"Executing job {job.id} (kind={job.kind}, "
            f"attempt={job.attempts}/{job.max_attempts})"
        )

        try:
            payload = parse_payload(job.kind, job.payload)
            ctx = {"job": job, "logger": self.logger}
            result = await handler(ctx, payload)
        except Exception as e:
            self.logger.error(f"Job {job.id} failed: {str(e)}")
            status = await queue.mark_failed(job, e)
            if status == JobStatus.FAILED:
                await self._notify("on_failed", job, e)
            else:
                await self._notify("on_retry_scheduled", job, e)
            return

        if result is not None and not isinstance(result, dict):
            result = {"value": result}
        await queue.mark_completed(job, result)
        await self._notify("on_completed", job, result)

    async def _notify(self, hook: str, job: Job, arg: Any) -> None:
        for observer in self.observers:
            try:
                await getattr(observer, hook)(job, arg)
            except Exception as e:
                self.logger.error(
                    f"Observer {type(observer).__name__}.{hook} failed for job {job.id}: {e}",
                    exc_info=True,
                )
