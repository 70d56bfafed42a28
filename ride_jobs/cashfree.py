"""Cashfree payment gateway client."""

import asyncio
from typing import Any, Dict, List, Optional

import aiohttp
from dateutil.parser import isoparse

from ride_jobs.errors import GatewayError, GatewayRejectedError, GatewayTimeoutError
from ride_jobs.gateway import PaymentStatus, PayoutResult


class CashfreeGateway:
    """aiohttp client for the Cashfree PG and Payouts REST APIs."""

    def __init__(
        self,
        base_url: str,
        app_id: str,
        secret_key: str,
        api_version: str = "2023-08-01",
        payout_api_version: str = "2024-01-01",
        timeout: float = 15.0,
    ):
        """
        Initialize the Cashfree client.

        Args:
            base_url: API root (e.g., "https://sandbox.cashfree.com")
            app_id: Cashfree client id, sent as x-client-id
            secret_key: Cashfree client secret, sent as x-client-secret
            api_version: x-api-version for the PG endpoints
            payout_api_version: x-api-version for the Payouts endpoints
            timeout: Request timeout in seconds
        """
        if not app_id or not secret_key:
            raise ValueError("Cashfree app id and secret key are required")
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.secret_key = secret_key
        self.api_version = api_version
        self.payout_api_version = payout_api_version
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @classmethod
    def from_config(cls, config) -> "CashfreeGateway":
        return cls(
            base_url=config.cashfree_base_url,
            app_id=config.cashfree_app_id,
            secret_key=config.cashfree_secret_key,
            api_version=config.cashfree_api_version,
            payout_api_version=config.cashfree_payout_api_version,
            timeout=config.gateway_timeout_seconds,
        )

    def _headers(self, api_version: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-version": api_version,
            "x-client-id": self.app_id,
            "x-client-secret": self.secret_key,
        }

    async def get_payment_status(self, order_id: str) -> List[PaymentStatus]:
        """
        Fetch the payments Cashfree recorded for an order.

        Returns:
            One entry per payment attempt, possibly empty

        Raises:
            GatewayError: On network errors, 429 and 5xx responses
            GatewayRejectedError: On other 4xx responses
        """
        url = f"{self.base_url}/pg/orders/{order_id}/payments"
        payments = await self._request(
            "GET", url, self._headers(self.api_version), operation="fetch payments"
        )
        return [_to_payment_status(payment) for payment in payments or []]

    async def initiate_payout(
        self,
        beneficiary_id: str,
        amount: float,
        transfer_id: str,
        transfer_mode: str = "IMPS",
        remarks: Optional[str] = None,
    ) -> PayoutResult:
        """
        Request a transfer to a registered beneficiary.

        ``transfer_id`` doubles as the request id, so Cashfree rejects a
        replay of the same transfer.
        """
        url = f"{self.base_url}/payout/transfers"
        headers = self._headers(self.payout_api_version)
        headers["x-request-id"] = transfer_id

        request_body = {
            "transfer_id": transfer_id,
            "transfer_amount": amount,
            "transfer_mode": transfer_mode.lower(),
            "beneficiary_details": {"beneficiary_id": beneficiary_id},
            "transfer_remarks": remarks or "Driver earnings",
        }

        data = await self._request(
            "POST", url, headers, operation="initiate payout", json=request_body
        )
        return PayoutResult(
            transfer_id=data.get("transfer_id", transfer_id),
            reference_id=_optional_str(data.get("cf_transfer_id")),
            status=data.get("status", "PENDING"),
            amount=data.get("transfer_amount", amount),
        )

    async def _request(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        operation: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.request(method, url, json=json, headers=headers) as resp:
                    response_body = await resp.text()

                    if resp.status == 429 or resp.status >= 500:
                        raise GatewayError(
                            f"Cashfree {operation} failed with {resp.status}: {response_body}",
                            status_code=resp.status,
                            response_body=response_body,
                        )

                    if resp.status >= 400:
                        raise GatewayRejectedError(
                            f"Cashfree rejected {operation} ({resp.status}): {response_body}",
                            status_code=resp.status,
                            response_body=response_body,
                        )

                    return await resp.json()

            except asyncio.TimeoutError as e:
                raise GatewayTimeoutError(f"Cashfree {operation} timed out") from e
            except aiohttp.ClientError as e:
                raise GatewayError(
                    f"Network error during Cashfree {operation}: {str(e)}",
                    status_code=0,
                ) from e


def _to_payment_status(payment: Dict[str, Any]) -> PaymentStatus:
    payment_time = payment.get("payment_time")
    return PaymentStatus(
        cf_payment_id=str(payment.get("cf_payment_id")),
        payment_status=payment.get("payment_status") or "PENDING",
        payment_amount=payment.get("payment_amount"),
        payment_method=_payment_method(payment.get("payment_method")),
        payment_time=isoparse(payment_time) if payment_time else None,
        bank_reference=_optional_str(payment.get("bank_reference")),
    )


def _payment_method(method: Any) -> Optional[str]:
    # Cashfree nests the method as {"upi": {...}} or {"card": {...}}.
    if isinstance(method, dict):
        return next(iter(method), None)
    return method


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
