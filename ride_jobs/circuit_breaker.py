"""Circuit breaker guarding calls to flaky external dependencies."""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel

from ride_jobs.errors import CircuitOpenError, ValidationError


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerSnapshot(BaseModel):
    """Point-in-time view of a breaker, for status endpoints and logs."""

    name: str
    state: CircuitState
    failure_count: int
    opened_at: Optional[float] = None
    trial_deadline: Optional[float] = None
    cooldown_seconds: float
    retry_after: float
    total_calls: int
    successful_calls: int
    failed_calls: int
    rejected_calls: int


class CircuitBreaker:
    """
    Process-wide breaker for one dependency.

    closed -> open after ``failure_threshold`` consecutive failures; open
    short-circuits with ``CircuitOpenError`` until the cooldown elapses; then
    exactly one caller makes the half-open trial call. A successful trial closes
    the circuit, a failed one re-opens it with the cooldown doubled (capped at
    ``max_cooldown_seconds``).

    All state is read and written under one lock; the wrapped call itself
    runs outside it. Short-circuited calls never count as failures, and
    exceptions listed in ``ignored_exceptions`` (the dependency answered, it
    just said no) count as successes.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60,
        max_cooldown_seconds: float = 600,
        ignored_exceptions: Tuple[Type[BaseException], ...] = (ValidationError,),
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        self.name = name
        self.failure_threshold = failure_threshold
        self.base_cooldown_seconds = cooldown_seconds
        self.max_cooldown_seconds = max(max_cooldown_seconds, cooldown_seconds)
        self.ignored_exceptions = ignored_exceptions
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_deadline: Optional[float] = None
        self._cooldown = self.base_cooldown_seconds
        self._trial_in_flight = False
        self._total_calls = 0
        self._successful_calls = 0
        self._failed_calls = 0
        self._rejected_calls = 0

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: Without calling ``fn`` while the circuit is open
                or a half-open trial call is already running
        """
        is_trial = await self._before_call()
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            await self._release_trial(is_trial)
            raise
        except self.ignored_exceptions:
            await self._on_success(is_trial)
            raise
        except Exception as e:
            await self._on_failure(is_trial, e)
            raise
        await self._on_success(is_trial)
        return result

    async def _before_call(self) -> bool:
        async with self._lock:
            now = self.clock()
            self._refresh(now)
            self._total_calls += 1

            if self._state == CircuitState.OPEN or (
                self._state == CircuitState.HALF_OPEN and self._trial_in_flight
            ):
                self._rejected_calls += 1
                raise CircuitOpenError(self.name, self._retry_after(now))

            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = True
                return True
            return False

    async def _on_success(self, is_trial: bool) -> None:
        async with self._lock:
            self._successful_calls += 1
            if is_trial:
                self._trial_in_flight = False
                self._close()
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    async def _on_failure(self, is_trial: bool, error: Exception) -> None:
        async with self._lock:
            now = self.clock()
            self._failed_calls += 1
            self._failure_count += 1
            if is_trial:
                self._trial_in_flight = False
                self._cooldown = min(self._cooldown * 2, self.max_cooldown_seconds)
                self._open(now, f"half-open trial call failed: {error}")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._open(now, f"{self._failure_count} consecutive failures, last: {error}")

    async def _release_trial(self, is_trial: bool) -> None:
        if is_trial:
            async with self._lock:
                self._trial_in_flight = False

    def _refresh(self, now: float) -> None:
        if (
            self._state == CircuitState.OPEN
            and self._trial_deadline is not None
            and now >= self._trial_deadline
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self.logger.info(f"Circuit breaker '{self.name}' half-open, probing recovery")

    def _open(self, now: float, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_deadline = now + self._cooldown
        self.logger.warning(
            f"Circuit breaker '{self.name}' opened for {self._cooldown:g}s ({reason})"
        )

    def _close(self) -> None:
        previous = self._state
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._trial_deadline = None
        self._cooldown = self.base_cooldown_seconds
        if previous != CircuitState.CLOSED:
            self.logger.info(f"Circuit breaker '{self.name}' closed, dependency recovered")

    def _retry_after(self, now: float) -> float:
        if self._trial_deadline is None:
            return 0.0
        return max(self._trial_deadline - now, 0.0)

    async def state(self) -> CircuitState:
        """Current state, with an elapsed cooldown reported as half-open."""
        async with self._lock:
            self._refresh(self.clock())
            return self._state

    async def is_open(self) -> bool:
        """True while calls would be short-circuited."""
        async with self._lock:
            self._refresh(self.clock())
            return self._state == CircuitState.OPEN

    async def retry_after(self) -> float:
        async with self._lock:
            now = self.clock()
            self._refresh(now)
            return self._retry_after(now) if self._state == CircuitState.OPEN else 0.0

    async def snapshot(self) -> BreakerSnapshot:
        async with self._lock:
            now = self.clock()
            self._refresh(now)
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                opened_at=self._opened_at,
                trial_deadline=self._trial_deadline,
                cooldown_seconds=self._cooldown,
                retry_after=self._retry_after(now) if self._state == CircuitState.OPEN else 0.0,
                total_calls=self._total_calls,
                successful_calls=self._successful_calls,
                failed_calls=self._failed_calls,
                rejected_calls=self._rejected_calls,
            )

    async def force_open(self) -> None:
        """Open the circuit by hand (maintenance windows, tests)."""
        async with self._lock:
            self._open(self.clock(), "forced open")

    async def reset(self) -> None:
        """Back to a fresh closed breaker."""
        async with self._lock:
            self._reset_state()
        self.logger.info(f"Circuit breaker '{self.name}' has been reset")


class CircuitBreakerRegistry:
    """Named breakers shared by every call site of a process."""

    def __init__(self, **defaults):
        self.defaults = defaults
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str, **config) -> CircuitBreaker:
        """Get or create the breaker called ``name``."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, **{**self.defaults, **config})
            self._breakers[name] = breaker
        return breaker

    async def status(self) -> Dict[str, BreakerSnapshot]:
        return {name: await breaker.snapshot() for name, breaker in self._breakers.items()}

    async def reset_all(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()
