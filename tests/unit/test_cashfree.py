"""Unit tests for the Cashfree client."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import patch

import aiohttp
import pytest

from ride_jobs.cashfree import CashfreeGateway
from ride_jobs.config import RideJobsConfig
from ride_jobs.errors import GatewayError, GatewayRejectedError, GatewayTimeoutError


class FakeResponse:
    def __init__(self, status=200, body=None, text="", enter_error=None):
        self.status = status
        self._body = body
        self._text = text
        self._enter_error = enter_error

    async def __aenter__(self):
        if self._enter_error:
            raise self._enter_error
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return self._text

    async def json(self):
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def request(self, method, url, json=None, headers=None):
        self.requests.append({"method": method, "url": url, "json": json, "headers": headers})
        if self.error:
            raise self.error
        return self.response


@pytest.fixture
def client():
    return CashfreeGateway(
        base_url="https://sandbox.cashfree.com/",
        app_id="app-id",
        secret_key="secret",
    )


def patched(session):
    return patch("ride_jobs.cashfree.aiohttp.ClientSession", return_value=session)


def test_credentials_required():
    with pytest.raises(ValueError):
        CashfreeGateway(base_url="https://sandbox.cashfree.com", app_id="", secret_key="x")


def test_from_config():
    config = RideJobsConfig(
        db_dsn="postgresql://localhost/test",
        cashfree_environment="production",
        cashfree_app_id="app",
        cashfree_secret_key="secret",
    )

    client = CashfreeGateway.from_config(config)

    assert client.base_url == "https://api.cashfree.com"
    assert client.payout_api_version == "2024-01-01"


@pytest.mark.asyncio
async def test_get_payment_status(client):
    body = [
        {
            "cf_payment_id": 12345,
            "payment_status": "SUCCESS",
            "payment_amount": 480.5,
            "payment_method": {"upi": {"upi_id": "rider@upi"}},
            "payment_time": "2024-01-01T12:00:00+05:30",
            "bank_reference": 998877,
        }
    ]
    session = FakeSession(FakeResponse(200, body=body))

    with patched(session):
        payments = await client.get_payment_status("order-1")

    request = session.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://sandbox.cashfree.com/pg/orders/order-1/payments"
    assert request["headers"]["x-client-id"] == "app-id"
    assert request["headers"]["x-api-version"] == "2023-08-01"

    payment = payments[0]
    assert payment.cf_payment_id == "12345"
    assert payment.payment_status == "SUCCESS"
    assert payment.payment_method == "upi"
    assert payment.bank_reference == "998877"
    assert payment.payment_time == datetime(2024, 1, 1, 6, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_get_payment_status_empty(client):
    with patched(FakeSession(FakeResponse(200, body=[]))):
        assert await client.get_payment_status("order-1") == []


@pytest.mark.asyncio
async def test_initiate_payout(client):
    body = {"transfer_id": "PAYOUT_t1_1_0", "cf_transfer_id": 555, "status": "SUCCESS"}
    session = FakeSession(FakeResponse(200, body=body))

    with patched(session):
        result = await client.initiate_payout("bene-1", 500.0, "PAYOUT_t1_1_0")

    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://sandbox.cashfree.com/payout/transfers"
    assert request["headers"]["x-request-id"] == "PAYOUT_t1_1_0"
    assert request["headers"]["x-api-version"] == "2024-01-01"
    assert request["json"] == {
        "transfer_id": "PAYOUT_t1_1_0",
        "transfer_amount": 500.0,
        "transfer_mode": "imps",
        "beneficiary_details": {"beneficiary_id": "bene-1"},
        "transfer_remarks": "Driver earnings",
    }
    assert result.reference_id == "555"
    assert result.status == "SUCCESS"
    assert result.amount == 500.0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_transient_http_errors(client, status):
    session = FakeSession(FakeResponse(status, text="try later"))

    with patched(session):
        with pytest.raises(GatewayError) as exc_info:
            await client.get_payment_status("order-1")

    assert exc_info.value.status_code == status
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_client_errors_are_rejections(client):
    session = FakeSession(FakeResponse(400, text="invalid beneficiary"))

    with patched(session):
        with pytest.raises(GatewayRejectedError) as exc_info:
            await client.initiate_payout("bene-1", 10.0, "PAYOUT_x")

    assert exc_info.value.status_code == 400
    assert exc_info.value.response_body == "invalid beneficiary"
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_network_error(client):
    session = FakeSession(error=aiohttp.ClientConnectionError("connection refused"))

    with patched(session):
        with pytest.raises(GatewayError) as exc_info:
            await client.get_payment_status("order-1")

    assert exc_info.value.status_code == 0
    assert "connection refused" in str(exc_info.value)


@pytest.mark.asyncio
async def test_timeout(client):
    session = FakeSession(FakeResponse(enter_error=asyncio.TimeoutError()))

    with patched(session):
        with pytest.raises(GatewayTimeoutError):
            await client.get_payment_status("order-1")
