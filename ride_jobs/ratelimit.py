"""Job start rate limiting for worker pools."""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable, Deque, Optional, TypeVar

T = TypeVar("T")


class RateLimiter:
    """
    Sliding-window limit on job starts: at most ``max_starts`` per ``duration``.

    Shared by every executor of a queue, so the cap holds no matter how many
    executors run.
    """

    def __init__(
        self,
        max_starts: int,
        duration: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_starts < 1:
            raise ValueError(f"max_starts must be >= 1, got {max_starts}")
        if duration <= 0:
            raise ValueError(f"duration must be > 0, got {duration}")
        self.max_starts = max_starts
        self.duration = duration
        self.clock = clock
        self._starts: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._starts and self._starts[0] <= now - self.duration:
            self._starts.popleft()

    def try_acquire(self) -> bool:
        """Take a slot if one is free right now."""
        now = self.clock()
        self._evict(now)
        if len(self._starts) < self.max_starts:
            self._starts.append(now)
            return True
        return False

    def time_until_available(self) -> float:
        now = self.clock()
        self._evict(now)
        if len(self._starts) < self.max_starts:
            return 0.0
        return max(self._starts[0] + self.duration - now, 0.0)

    async def acquire(self) -> None:
        """Wait until a start slot is free and take it."""
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep(self.time_until_available())

    async def throttle(self, start: Callable[[], Awaitable[Optional[T]]]) -> Optional[T]:
        """
        Run ``start`` once a slot is free; only a non-None result uses the slot.

        Idle polls that find no job therefore never eat into the budget.
        """
        async with self._lock:
            delay = self.time_until_available()
            while delay > 0:
                await asyncio.sleep(delay)
                delay = self.time_until_available()
            result = await start()
            if result is not None:
                self._starts.append(self.clock())
            return result
