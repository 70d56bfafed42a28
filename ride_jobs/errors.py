"""Exception types for the ride jobs library."""

from typing import Optional


class RideJobsError(Exception):
    """Base exception for all ride jobs errors."""

    pass


class JobNotFoundError(RideJobsError):
    """Raised when a job is not found."""

    def __init__(self, job_id: str, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class QueueNotFoundError(RideJobsError):
    """Raised when a queue name is not configured."""

    def __init__(self, queue_name: str, message: str = None):
        self.queue_name = queue_name
        if message is None:
            message = f"Queue {queue_name} not found"
        super().__init__(message)


class InvalidJobStateError(RideJobsError):
    """Raised when a job cannot make the requested status transition."""

    def __init__(self, job_id: str, current_status: str, target_status: str):
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Job {job_id} cannot transition from {current_status} to {target_status}"
        )


class DuplicateJobIdError(RideJobsError):
    """Raised when an explicit job id is already taken on another queue."""

    def __init__(self, job_id: str, queue_name: str):
        self.job_id = job_id
        self.queue_name = queue_name
        super().__init__(f"Job id {job_id} is already used on queue {queue_name}")


class HandlerNotFoundError(RideJobsError):
    """Raised when no handler is registered for a queue."""

    def __init__(self, queue_name: str):
        self.queue_name = queue_name
        super().__init__(f"No handler registered for queue {queue_name}")


class JobError(RideJobsError):
    """
    Raised by handlers to classify a failed execution.

    The worker pool never guesses: a retryable error is re-enqueued with
    backoff, a non-retryable one fails the job on the spot.
    """

    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class ValidationError(JobError):
    """Deterministic failure (bad file type, oversized upload, bad payload)."""

    retryable = False


class TransientError(JobError):
    """Failure that is expected to go away (timeouts, 5xx, outages)."""

    retryable = True


class GatewayError(TransientError):
    """Raised when the payment gateway call fails."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class GatewayTimeoutError(GatewayError):
    """Raised when the payment gateway does not answer in time."""

    pass


class GatewayRejectedError(ValidationError):
    """Raised when the gateway rejects a request as invalid (4xx)."""

    def __init__(self, message: str, status_code: int, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class CircuitOpenError(TransientError):
    """Raised instead of calling a dependency whose circuit is open."""

    def __init__(self, breaker_name: str, retry_after: float = 0.0):
        self.breaker_name = breaker_name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{breaker_name}' is open, retry after {retry_after:.0f}s"
        )
