"""Payment confirmation and single-order reconciliation handler."""

from datetime import datetime
from typing import Any, Callable, Dict, Union

from ride_jobs.domain import BookingRepository, TransactionRepository
from ride_jobs.gateway import GATEWAY_SUCCESS, GuardedGateway, map_gateway_status
from ride_jobs.models import utcnow
from ride_jobs.payloads import ConfirmationJob, ReconciliationJob


class PaymentConfirmationHandler:
    """
    Resolve a payment against the gateway's record of it.

    ``confirm-payment`` jobs come from payments whose synchronous confirmation
    timed out; ``reconcile-payment`` jobs re-check one order on request. The
    gateway's status always wins over the local one.
    """

    def __init__(
        self,
        gateway: GuardedGateway,
        transactions: TransactionRepository,
        bookings: BookingRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.transactions = transactions
        self.bookings = bookings
        self.clock = clock

    async def __call__(
        self, ctx: Dict[str, Any], payload: Union[ConfirmationJob, ReconciliationJob]
    ) -> Dict[str, Any]:
        job = ctx["job"]
        logger = ctx["logger"]
        logger.info(f"Processing {payload.kind} for order {payload.order_id}")

        # Short-circuits with CircuitOpenError (retryable) while the breaker is open.
        payments = await self.gateway.get_payment_status(payload.order_id)
        if not payments:
            logger.info(f"No payment found for order {payload.order_id}")
            return {
                "success": False,
                "order_id": payload.order_id,
                "message": "No payment found",
            }

        latest = payments[0]
        status = map_gateway_status(latest.payment_status)
        now = self.clock()

        if payload.transaction_id:
            metadata = {
                "reconciled_at": now,
                "gateway_status": latest.payment_status,
                "gateway_payment_id": latest.cf_payment_id,
            }
            if isinstance(payload, ReconciliationJob):
                metadata["reconciliation_job_id"] = job.id
            await self.transactions.update(
                payload.transaction_id, status=status, metadata=metadata
            )

        if isinstance(payload, ReconciliationJob):
            logger.info(
                f"Reconciled order {payload.order_id}: expected {payload.expected_status}, "
                f"gateway says {status.value}"
            )
            return {
                "success": True,
                "order_id": payload.order_id,
                "expected_status": payload.expected_status,
                "actual_status": status.value,
                "matched": payload.expected_status == status.value,
            }

        if payload.booking_id and latest.payment_status.upper() == GATEWAY_SUCCESS:
            await self.bookings.mark_paid(payload.booking_id, latest.cf_payment_id)

        logger.info(f"Confirmed order {payload.order_id}: {latest.payment_status}")
        return {
            "success": True,
            "order_id": payload.order_id,
            "payment_status": latest.payment_status,
            "reconciled_at": now.isoformat(),
        }
