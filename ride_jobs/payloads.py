"""Typed job payloads, one model per job kind."""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ride_jobs.errors import ValidationError

DOCUMENT_KIND = "document"
PAYOUT_KIND = "payout"
CONFIRMATION_KIND = "confirm-payment"
RECONCILIATION_KIND = "reconcile-payment"


class DocumentJob(BaseModel):
    """Validate an uploaded driver document."""

    kind: Literal["document"] = DOCUMENT_KIND
    user_id: str
    driver_id: str
    document_id: str
    document_type: str
    s3_key: str


class PayoutJob(BaseModel):
    """Transfer trip earnings to a driver."""

    kind: Literal["payout"] = PAYOUT_KIND
    trip_id: str
    driver_id: str
    amount: float = Field(gt=0)
    beneficiary_id: str
    transaction_id: Optional[str] = None


class ConfirmationJob(BaseModel):
    """Confirm a payment whose synchronous confirmation timed out."""

    kind: Literal["confirm-payment"] = CONFIRMATION_KIND
    order_id: str
    booking_id: Optional[str] = None
    trip_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    reason: Optional[str] = None


class ReconciliationJob(BaseModel):
    """Re-check a single order against the gateway."""

    kind: Literal["reconcile-payment"] = RECONCILIATION_KIND
    order_id: str
    transaction_id: Optional[str] = None
    expected_status: Optional[str] = None


JobPayload = Annotated[
    Union[DocumentJob, PayoutJob, ConfirmationJob, ReconciliationJob],
    Field(discriminator="kind"),
]

_payload_adapter = TypeAdapter(JobPayload)


def parse_payload(kind: str, data: Dict[str, Any]) -> Union[
    DocumentJob, PayoutJob, ConfirmationJob, ReconciliationJob
]:
    """
    Build the typed payload for a stored job.

    Raises:
        ValidationError: If the kind is unknown or the data does not fit it
    """
    try:
        return _payload_adapter.validate_python({**data, "kind": kind})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {kind} payload: {e}") from e


def business_id(payload: BaseModel) -> Optional[str]:
    """Identifier operators know the job by (transaction, trip or document)."""
    for field in ("transaction_id", "trip_id", "order_id", "document_id"):
        value = getattr(payload, field, None)
        if value:
            return value
    return None
