"""Payment gateway boundary: protocol, status mapping and the breaker-guarded wrapper."""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from pydantic import BaseModel

from ride_jobs.circuit_breaker import CircuitBreaker
from ride_jobs.errors import GatewayTimeoutError
from ride_jobs.models import TransactionStatus

GATEWAY_SUCCESS = "SUCCESS"

_STATUS_MAP = {
    "SUCCESS": TransactionStatus.CAPTURED,
    "PENDING": TransactionStatus.PENDING,
    "NOT_ATTEMPTED": TransactionStatus.PENDING,
    "FAILED": TransactionStatus.FAILED,
    "CANCELLED": TransactionStatus.CANCELLED,
    "USER_DROPPED": TransactionStatus.CANCELLED,
    "VOID": TransactionStatus.CANCELLED,
    "AUTHORIZED": TransactionStatus.AUTHORIZED,
}


def map_gateway_status(gateway_status: Optional[str]) -> TransactionStatus:
    """Map a gateway payment status to the local transaction status (unknown -> pending)."""
    if not gateway_status:
        return TransactionStatus.PENDING
    return _STATUS_MAP.get(gateway_status.upper(), TransactionStatus.PENDING)


class PayoutResult(BaseModel):
    transfer_id: str
    reference_id: Optional[str] = None
    status: str
    amount: Optional[float] = None


class PaymentStatus(BaseModel):
    """One payment attempt the gateway recorded for an order."""

    cf_payment_id: str
    payment_status: str
    payment_amount: Optional[float] = None
    payment_method: Optional[str] = None
    payment_time: Optional[datetime] = None
    bank_reference: Optional[str] = None


class PaymentGateway(Protocol):
    """What the engine needs from a payment provider."""

    async def initiate_payout(
        self,
        beneficiary_id: str,
        amount: float,
        transfer_id: str,
        transfer_mode: str = "IMPS",
        remarks: Optional[str] = None,
    ) -> PayoutResult:
        ...

    async def get_payment_status(self, order_id: str) -> List[PaymentStatus]:
        ...


class GuardedGateway:
    """
    Gateway wrapper every handler and the reconciler call through.

    Each call first consults the shared circuit breaker, then runs under a
    timeout. A timeout surfaces as ``GatewayTimeoutError`` and counts as a
    gateway failure; a short-circuited call raises ``CircuitOpenError`` and
    never reaches the gateway.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        breaker: CircuitBreaker,
        timeout_seconds: float = 15.0,
    ):
        self.gateway = gateway
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds

    async def initiate_payout(
        self,
        beneficiary_id: str,
        amount: float,
        transfer_id: str,
        transfer_mode: str = "IMPS",
        remarks: Optional[str] = None,
    ) -> PayoutResult:
        return await self.breaker.call(
            self._timed,
            self.gateway.initiate_payout,
            beneficiary_id=beneficiary_id,
            amount=amount,
            transfer_id=transfer_id,
            transfer_mode=transfer_mode,
            remarks=remarks,
        )

    async def get_payment_status(self, order_id: str) -> List[PaymentStatus]:
        return await self.breaker.call(self._timed, self.gateway.get_payment_status, order_id)

    async def is_open(self) -> bool:
        return await self.breaker.is_open()

    async def _timed(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        try:
            return await asyncio.wait_for(fn(*args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise GatewayTimeoutError(
                f"Payment gateway did not answer within {self.timeout_seconds:g}s"
            ) from e
