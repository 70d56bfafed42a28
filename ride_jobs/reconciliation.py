"""Periodic reconciliation of stuck payments against the gateway."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from ride_jobs.domain import TransactionRepository
from ride_jobs.errors import CircuitOpenError
from ride_jobs.gateway import GuardedGateway, map_gateway_status
from ride_jobs.models import TransactionStatus, utcnow

UNRESOLVED_STATUSES = (TransactionStatus.PENDING, TransactionStatus.AUTHORIZED)


class ReconciliationReport(BaseModel):
    """Outcome of one reconciliation pass."""

    processed: int = 0
    reconciled: int = 0
    unresolved: int = 0
    failed: int = 0
    skipped: bool = False
    stopped_early: bool = False


class Reconciler:
    """
    Corrects local payment status from the gateway's record.

    A pass looks at ``pending``/``authorized`` transactions older than the
    grace window that were never reconciled, asks the gateway for each one and
    stores the mapped status with ``reconciled_at`` so the next pass skips
    it. The gateway's answer always wins. When the breaker is open the pass
    does not start, and a pass that sees the breaker open mid-way stops
    there; whatever it already stored stays stored.
    """

    def __init__(
        self,
        transactions: TransactionRepository,
        gateway: GuardedGateway,
        grace_seconds: float = 300,
        batch_size: int = 20,
        logger: Optional[logging.Logger] = None,
    ):
        self.transactions = transactions
        self.gateway = gateway
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size
        self.logger = logger or logging.getLogger(__name__)

    async def run_pass(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport()

        if await self.gateway.is_open():
            self.logger.info("Circuit open, skipping reconciliation pass")
            report.skipped = True
            return report

        candidates = await self.transactions.find_unreconciled(
            UNRESOLVED_STATUSES,
            now - timedelta(seconds=self.grace_seconds),
            self.batch_size,
        )
        if not candidates:
            self.logger.debug("No pending transactions to reconcile")
            return report

        for transaction in candidates:
            report.processed += 1
            try:
                payments = await self.gateway.get_payment_status(transaction.order_id)
                if not payments:
                    report.unresolved += 1
                    continue

                latest = payments[0]
                await self.transactions.update(
                    transaction.transaction_id,
                    status=map_gateway_status(latest.payment_status),
                    metadata={
                        "reconciled_at": now,
                        "gateway_status": latest.payment_status,
                        "gateway_payment_id": latest.cf_payment_id,
                    },
                )
                report.reconciled += 1
            except Exception as e:
                report.failed += 1
                self.logger.error(
                    f"Failed to reconcile transaction {transaction.transaction_id} "
                    f"(order {transaction.order_id}): {e}"
                )
                if isinstance(e, CircuitOpenError) or await self.gateway.is_open():
                    self.logger.warning("Circuit opened, stopping reconciliation pass")
                    report.stopped_early = True
                    break

        self.logger.info(
            f"Reconciliation pass: {report.processed} processed, {report.reconciled} "
            f"reconciled, {report.unresolved} unresolved, {report.failed} failed"
        )
        return report


class ReconciliationScheduler:
    """Runs reconciliation passes on a fixed interval."""

    def __init__(
        self,
        reconciler: Reconciler,
        interval_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    async def run_forever(self, shutdown_event: asyncio.Event) -> None:
        """Run passes until ``shutdown_event`` is set."""
        self.logger.info(
            f"Starting reconciliation loop (every {self.interval_seconds:g}s)"
        )
        while not shutdown_event.is_set():
            try:
                await self.reconciler.run_pass(self.clock())
            except Exception as e:
                self.logger.error(f"Error in reconciliation pass: {str(e)}", exc_info=True)

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Shutdown signal received, exiting reconciliation loop")

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._shutdown_event = asyncio.Event()
        self._task = asyncio.create_task(self.run_forever(self._shutdown_event))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._shutdown_event.set()
        await self._task
        self._task = None
