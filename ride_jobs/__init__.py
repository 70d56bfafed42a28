"""Background job processing and payment reconciliation for a ride-sharing marketplace."""

from ride_jobs.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from ride_jobs.config import (
    DOCUMENT_QUEUE,
    PAYMENT_CONFIRMATION_QUEUE,
    PAYOUT_QUEUE,
    QueueSettings,
    RideJobsConfig,
)
from ride_jobs.ddl import JOBS_TABLE_DDL
from ride_jobs.domain import Collaborators, Notification, Operator
from ride_jobs.engine import RideJobsEngine
from ride_jobs.errors import (
    CircuitOpenError,
    DuplicateJobIdError,
    GatewayError,
    GatewayRejectedError,
    GatewayTimeoutError,
    InvalidJobStateError,
    JobError,
    JobNotFoundError,
    QueueNotFoundError,
    RideJobsError,
    TransientError,
    ValidationError,
)
from ride_jobs.escalation import FailureEscalation
from ride_jobs.gateway import GuardedGateway, map_gateway_status
from ride_jobs.memory import InMemoryJobStore
from ride_jobs.models import Job, JobStatus, Transaction, TransactionStatus
from ride_jobs.queue import Queue, QueueStatus
from ride_jobs.reconciliation import ReconciliationScheduler, Reconciler
from ride_jobs.registry import JobRegistry
from ride_jobs.retry import RetryPolicy, compute_backoff
from ride_jobs.service import JobService
from ride_jobs.store import JobStore, PostgresJobStore
from ride_jobs.worker import JobObserver, WorkerPool

__version__ = "0.1.0"

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DOCUMENT_QUEUE",
    "PAYMENT_CONFIRMATION_QUEUE",
    "PAYOUT_QUEUE",
    "QueueSettings",
    "RideJobsConfig",
    "JOBS_TABLE_DDL",
    "Collaborators",
    "Notification",
    "Operator",
    "RideJobsEngine",
    "CircuitOpenError",
    "DuplicateJobIdError",
    "GatewayError",
    "GatewayRejectedError",
    "GatewayTimeoutError",
    "InvalidJobStateError",
    "JobError",
    "JobNotFoundError",
    "QueueNotFoundError",
    "RideJobsError",
    "TransientError",
    "ValidationError",
    "FailureEscalation",
    "GuardedGateway",
    "map_gateway_status",
    "InMemoryJobStore",
    "Job",
    "JobStatus",
    "Transaction",
    "TransactionStatus",
    "Queue",
    "QueueStatus",
    "ReconciliationScheduler",
    "Reconciler",
    "JobRegistry",
    "RetryPolicy",
    "compute_backoff",
    "JobService",
    "JobStore",
    "PostgresJobStore",
    "JobObserver",
    "WorkerPool",
]
