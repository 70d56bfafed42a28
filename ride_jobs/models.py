"""Data models for jobs and payment records."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job status values."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: str,
        queue_name: str,
        kind: str,
        status: JobStatus,
        payload: Dict[str, Any],
        attempts: int,
        max_attempts: int,
        next_run_at: datetime,
        last_error: Optional[Dict[str, Any]] = None,
        result: Optional[Dict[str, Any]] = None,
        worker_id: Optional[str] = None,
        lease_expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        self.id = id
        self.queue_name = queue_name
        self.kind = kind
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.payload = payload
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.next_run_at = next_run_at
        self.last_error = last_error
        self.result = result
        self.worker_id = worker_id
        self.lease_expires_at = lease_expires_at
        self.created_at = created_at
        self.updated_at = updated_at
        self.started_at = started_at
        self.finished_at = finished_at

    @property
    def failed_reason(self) -> Optional[str]:
        """Message of the most recent failure, if any."""
        if not self.last_error:
            return None
        return self.last_error.get("error")

    def copy(self) -> "Job":
        """Shallow copy with its own payload/error/result dicts."""
        return Job(
            id=self.id,
            queue_name=self.queue_name,
            kind=self.kind,
            status=self.status,
            payload=dict(self.payload),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            next_run_at=self.next_run_at,
            last_error=dict(self.last_error) if self.last_error else None,
            result=dict(self.result) if self.result else None,
            worker_id=self.worker_id,
            lease_expires_at=self.lease_expires_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "kind": self.kind,
            "status": self.status.value,
            "payload": self.payload,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "last_error": self.last_error,
            "result": self.result,
            "worker_id": self.worker_id,
            "lease_expires_at": (
                self.lease_expires_at.isoformat() if self.lease_expires_at else None
            ),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue_name}, kind={self.kind}, "
            f"status={self.status.value}, attempts={self.attempts}/{self.max_attempts})"
        )


class TransactionStatus(str, Enum):
    """Local status of a payment or payout record."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Transaction(BaseModel):
    """Payment/payout record owned by the domain layer."""

    transaction_id: str
    order_id: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    amount: float = 0.0
    driver_id: Optional[str] = None
    trip_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def reconciled_at(self) -> Optional[datetime]:
        return self.metadata.get("reconciled_at")
