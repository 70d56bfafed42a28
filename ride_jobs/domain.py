"""Boundaries to the marketplace collaborators the engine reads and writes."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from ride_jobs.gateway import PaymentGateway
from ride_jobs.models import Transaction, TransactionStatus
from ride_jobs.storage import ObjectStorage


class Operator(BaseModel):
    """Admin user who receives failure escalations."""

    id: str
    email: str
    role: str = "admin"


class Notification(BaseModel):
    channel: str = "email"
    recipient: str
    template: str
    data: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    related_entity: Optional[Dict[str, Any]] = None


class DocumentRepository(Protocol):
    async def update_document(
        self, driver_id: str, document_id: str, fields: Dict[str, Any]
    ) -> None:
        """Patch a driver document; raise ``ValidationError`` if driver or document is unknown."""
        ...


class TransactionRepository(Protocol):
    async def get(self, transaction_id: str) -> Optional[Transaction]:
        ...

    async def update(
        self,
        transaction_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Set the status and merge ``metadata`` into the stored metadata."""
        ...

    async def find_unreconciled(
        self,
        statuses: Sequence[TransactionStatus],
        created_before: datetime,
        limit: int,
    ) -> List[Transaction]:
        """Transactions in ``statuses`` created before the cutoff with no ``reconciled_at``."""
        ...

    async def record_payout_success(
        self,
        transaction_id: Optional[str],
        driver_id: str,
        amount: float,
        transfer_id: str,
        reference_id: Optional[str],
        attempt: int,
    ) -> None:
        """
        Apply a confirmed payout in one unit: transaction ``completed`` and
        driver ``earnings.total += amount``, ``earnings.pending -= amount``.
        """
        ...

    async def record_attempt_failure(
        self, transaction_id: str, attempt: int, error: str, timestamp: datetime
    ) -> None:
        """Append to ``metadata.retry_attempts``; status and ledger stay as they are."""
        ...

    async def mark_failed(self, transaction_id: str, final_failure: Dict[str, Any]) -> None:
        ...


class BookingRepository(Protocol):
    async def mark_paid(self, booking_id: str, payment_id: Optional[str] = None) -> None:
        ...


class OperatorDirectory(Protocol):
    async def list_active_operators(self) -> List[Operator]:
        """Active users with the admin or super_admin role."""
        ...


class Notifier(Protocol):
    async def send_notification(self, notification: Notification) -> None:
        ...


class Collaborators:
    """Everything outside the engine that handlers and escalation talk to."""

    def __init__(
        self,
        storage: ObjectStorage,
        gateway: PaymentGateway,
        documents: DocumentRepository,
        transactions: TransactionRepository,
        bookings: BookingRepository,
        operators: OperatorDirectory,
        notifier: Notifier,
    ):
        self.storage = storage
        self.gateway = gateway
        self.documents = documents
        self.transactions = transactions
        self.bookings = bookings
        self.operators = operators
        self.notifier = notifier
