"""Retry backoff and retention policies."""

from typing import Optional

from pydantic import BaseModel

# 2 ** 32 seconds is far beyond any configured max delay.
_MAX_EXPONENT = 32


def compute_backoff(base_delay: float, max_delay: float, attempt: int) -> float:
    """
    Exponential backoff: ``min(base_delay * 2 ** attempt, max_delay)``.

    Args:
        base_delay: Delay in seconds for attempt 0
        max_delay: Upper bound in seconds
        attempt: Zero-based retry number

    Returns:
        Delay in seconds
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    exponent = min(attempt, _MAX_EXPONENT)
    return min(base_delay * (2**exponent), max_delay)


class RetryPolicy(BaseModel):
    """Per-queue retry ceiling and backoff schedule."""

    model_config = {"frozen": True}

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 3600.0

    def delay_for(self, attempts_made: int) -> float:
        """Backoff before the next run of a job that has run ``attempts_made`` times."""
        return compute_backoff(
            self.base_delay_seconds, self.max_delay_seconds, max(attempts_made - 1, 0)
        )

    def should_retry(
        self, attempts_made: int, retryable: bool, max_attempts: Optional[int] = None
    ) -> bool:
        ceiling = self.max_attempts if max_attempts is None else max_attempts
        return retryable and attempts_made < ceiling


class RetentionPolicy(BaseModel):
    """How long finished jobs are kept before purge."""

    model_config = {"frozen": True}

    keep_completed_seconds: int = 24 * 3600
    keep_failed_seconds: int = 7 * 24 * 3600
