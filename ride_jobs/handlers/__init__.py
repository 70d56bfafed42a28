"""Job handlers for the three ride queues."""

from datetime import datetime
from typing import Callable

from ride_jobs.config import DOCUMENT_QUEUE, PAYMENT_CONFIRMATION_QUEUE, PAYOUT_QUEUE
from ride_jobs.domain import Collaborators
from ride_jobs.gateway import GuardedGateway
from ride_jobs.handlers.confirmations import PaymentConfirmationHandler
from ride_jobs.handlers.documents import DocumentHandler
from ride_jobs.handlers.payouts import PayoutHandler
from ride_jobs.models import utcnow
from ride_jobs.registry import JobRegistry

__all__ = [
    "DocumentHandler",
    "PayoutHandler",
    "PaymentConfirmationHandler",
    "build_registry",
]


def build_registry(
    collaborators: Collaborators,
    gateway: GuardedGateway,
    clock: Callable[[], datetime] = utcnow,
) -> JobRegistry:
    """Registry with the standard handler for each queue."""
    registry = JobRegistry()
    registry.register(
        DOCUMENT_QUEUE,
        DocumentHandler(collaborators.storage, collaborators.documents, clock),
    )
    registry.register(
        PAYOUT_QUEUE,
        PayoutHandler(gateway, collaborators.transactions, clock),
    )
    registry.register(
        PAYMENT_CONFIRMATION_QUEUE,
        PaymentConfirmationHandler(
            gateway, collaborators.transactions, collaborators.bookings, clock
        ),
    )
    return registry
