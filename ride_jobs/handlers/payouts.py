"""Driver payout handler."""

from datetime import datetime
from typing import Any, Callable, Dict

from ride_jobs.domain import TransactionRepository
from ride_jobs.errors import GatewayError
from ride_jobs.gateway import GuardedGateway
from ride_jobs.models import TransactionStatus, utcnow
from ride_jobs.payloads import PayoutJob

# Transfer statuses that mean the money did not move.
FAILED_TRANSFER_STATUSES = frozenset(["FAILED", "REJECTED", "REVERSED"])


class PayoutHandler:
    """
    Transfer trip earnings to a driver's beneficiary account.

    Each run uses a fresh transfer id. Before transferring, the transaction is
    checked for an earlier run that already completed (a gateway success whose
    acknowledgement was lost), in which case nothing is sent again. The ledger
    is credited only after the gateway confirms the transfer.
    """

    def __init__(
        self,
        gateway: GuardedGateway,
        transactions: TransactionRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.transactions = transactions
        self.clock = clock

    async def __call__(self, ctx: Dict[str, Any], payload: PayoutJob) -> Dict[str, Any]:
        job = ctx["job"]
        logger = ctx["logger"]
        logger.info(
            f"Processing payout job {job.id} for driver {payload.driver_id}, "
            f"attempt {job.attempts}"
        )

        if payload.transaction_id:
            transaction = await self.transactions.get(payload.transaction_id)
            if transaction is not None and transaction.status == TransactionStatus.COMPLETED:
                logger.info(
                    f"Transaction {payload.transaction_id} already completed, skipping payout"
                )
                return {
                    "success": True,
                    "status": "already_completed",
                    "transaction_id": payload.transaction_id,
                }

        now = self.clock()
        transfer_id = f"PAYOUT_{payload.trip_id}_{job.attempts}_{int(now.timestamp() * 1000)}"

        try:
            result = await self.gateway.initiate_payout(
                beneficiary_id=payload.beneficiary_id,
                amount=payload.amount,
                transfer_id=transfer_id,
                transfer_mode="IMPS",
                remarks=f"Earnings for trip {payload.trip_id}",
            )
            if result.status.upper() in FAILED_TRANSFER_STATUSES:
                raise GatewayError(f"Transfer {transfer_id} ended with status {result.status}")
        except Exception as e:
            logger.error(f"Payout failed for driver {payload.driver_id}: {e}")
            if payload.transaction_id:
                await self.transactions.record_attempt_failure(
                    payload.transaction_id, job.attempts, str(e), self.clock()
                )
            raise

        await self.transactions.record_payout_success(
            transaction_id=payload.transaction_id,
            driver_id=payload.driver_id,
            amount=payload.amount,
            transfer_id=result.transfer_id,
            reference_id=result.reference_id,
            attempt=job.attempts,
        )

        logger.info(f"Payout successful for driver {payload.driver_id}: {result.transfer_id}")
        return {
            "success": True,
            "transfer_id": result.transfer_id,
            "reference_id": result.reference_id,
            "amount": payload.amount,
        }
