"""Queue housekeeping: stalled-job recovery and retention purge."""

import asyncio
import logging
from typing import Dict, Iterable, Optional, Sequence

from ride_jobs.errors import TransientError
from ride_jobs.queue import Queue
from ride_jobs.worker import JobObserver


class QueueMaintenance:
    """Requeues jobs whose worker died and drops jobs past retention."""

    def __init__(
        self,
        queues: Dict[str, Queue],
        observers: Optional[Sequence[JobObserver]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.queues = queues
        self.observers = list(observers or [])
        self.logger = logger or logging.getLogger(__name__)

    async def run_once(self, queue_names: Optional[Iterable[str]] = None) -> None:
        for name in queue_names or list(self.queues):
            queue = self.queues[name]
            try:
                failed = await queue.requeue_stalled()
                for job in failed:
                    error = TransientError(job.failed_reason or "Job stalled")
                    for observer in self.observers:
                        try:
                            await observer.on_failed(job, error)
                        except Exception as e:
                            self.logger.error(
                                f"Observer failed for stalled job {job.id}: {e}", exc_info=True
                            )
                await queue.purge_expired()
            except Exception as e:
                self.logger.error(f"Error in maintenance of {name}: {str(e)}", exc_info=True)

    async def run_forever(self, shutdown_event: asyncio.Event, interval_seconds: float = 60) -> None:
        self.logger.info(f"Starting queue maintenance loop (every {interval_seconds:g}s)")
        while not shutdown_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Shutdown signal received, exiting maintenance loop")
