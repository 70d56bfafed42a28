"""Unit tests for the worker pool and job lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from ride_jobs.config import DOCUMENT_QUEUE, PAYMENT_CONFIRMATION_QUEUE, PAYOUT_QUEUE
from ride_jobs.errors import (
    GatewayError,
    HandlerNotFoundError,
    QueueNotFoundError,
    ValidationError,
)
from ride_jobs.models import JobStatus, TransactionStatus
from ride_jobs.queue import Queue
from ride_jobs.registry import JobRegistry
from ride_jobs.service import build_queues
from ride_jobs.worker import JobObserver, WorkerPool


class RecordingObserver(JobObserver):
    def __init__(self):
        self.events = []

    async def on_completed(self, job, result):
        self.events.append(("completed", job.id, result))

    async def on_retry_scheduled(self, job, error):
        self.events.append(("retry", job.id, str(error)))

    async def on_failed(self, job, error):
        self.events.append(("failed", job.id, str(error)))


class BrokenObserver(JobObserver):
    async def on_completed(self, job, result):
        raise RuntimeError("observer bug")


@pytest.fixture
def queues(config, store, clock):
    return build_queues(config, store, clock)


@pytest.fixture
def recorder():
    return RecordingObserver()


def make_pool(queues, handler=None, observers=(), queue_name=PAYMENT_CONFIRMATION_QUEUE):
    registry = JobRegistry()
    if handler is not None:
        registry.register(queue_name, handler)
    return WorkerPool(queues, registry, observers=observers, poll_interval=0.01)


async def enqueue_confirmation(queues, order_id="order-1", **kwargs):
    return await queues[PAYMENT_CONFIRMATION_QUEUE].enqueue(
        "confirm-payment", {"order_id": order_id}, **kwargs
    )


@pytest.mark.asyncio
async def test_run_once_completes_job(queues, recorder):
    seen = []

    async def handler(ctx, payload):
        seen.append((ctx["job"].attempts, payload.order_id))
        return {"ok": True}

    pool = make_pool(queues, handler, [recorder])
    job = await enqueue_confirmation(queues)

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.id == job.id
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"ok": True}
    assert seen == [(1, "order-1")]
    assert recorder.events == [("completed", job.id, {"ok": True})]


@pytest.mark.asyncio
async def test_run_once_with_nothing_ready(queues):
    pool = make_pool(queues, lambda ctx, payload: None)

    assert await pool.run_once(PAYMENT_CONFIRMATION_QUEUE) is None


@pytest.mark.asyncio
async def test_non_dict_result_is_wrapped(queues):
    async def handler(ctx, payload):
        return "done"

    pool = make_pool(queues, handler)
    await enqueue_confirmation(queues)

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.result == {"value": "done"}


@pytest.mark.asyncio
async def test_retryable_failure_then_exhaustion(queues, recorder, clock):
    """Test that a job failing every run executes max_attempts times and fails once."""
    runs = []

    async def handler(ctx, payload):
        runs.append(ctx["job"].attempts)
        raise GatewayError("gateway 503", status_code=503)

    pool = make_pool(queues, handler, [recorder])
    job = await enqueue_confirmation(queues, max_attempts=3)

    for _ in range(3):
        await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)
        clock.advance(600)

    assert runs == [1, 2, 3]
    assert (await queues[PAYMENT_CONFIRMATION_QUEUE].get_job(job.id)).status == JobStatus.FAILED
    assert [event[0] for event in recorder.events] == ["retry", "retry", "failed"]
    assert await pool.run_once(PAYMENT_CONFIRMATION_QUEUE) is None


@pytest.mark.asyncio
async def test_non_retryable_failure_fails_on_first_run(queues, recorder):
    async def handler(ctx, payload):
        raise ValidationError("order belongs to another merchant")

    pool = make_pool(queues, handler, [recorder])
    await enqueue_confirmation(queues)

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 1
    assert recorder.events[0][0] == "failed"


@pytest.mark.asyncio
async def test_invalid_payload_fails_without_retry(queues):
    async def handler(ctx, payload):
        return {}

    pool = make_pool(queues, handler)
    await queues[PAYMENT_CONFIRMATION_QUEUE].enqueue("confirm-payment", {"booking_id": "b1"})

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.status == JobStatus.FAILED
    assert stored.last_error["type"] == "ValidationError"


@pytest.mark.asyncio
async def test_missing_handler_fails_job(queues, recorder):
    pool = make_pool(queues, observers=[recorder])
    await enqueue_confirmation(queues)

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.status == JobStatus.FAILED
    assert stored.last_error["type"] == "HandlerNotFoundError"
    assert recorder.events[0][0] == "failed"


@pytest.mark.asyncio
async def test_observer_errors_are_swallowed(queues):
    async def handler(ctx, payload):
        return {"ok": True}

    pool = make_pool(queues, handler, [BrokenObserver()])
    await enqueue_confirmation(queues)

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_start_validation(queues):
    pool = make_pool(queues)

    with pytest.raises(QueueNotFoundError):
        pool.start("emails", 1)
    with pytest.raises(HandlerNotFoundError):
        pool.start(PAYMENT_CONFIRMATION_QUEUE, 1)

    pool.register_handler(PAYMENT_CONFIRMATION_QUEUE, lambda ctx, payload: None)
    with pytest.raises(ValueError):
        pool.start(PAYMENT_CONFIRMATION_QUEUE, 0)
    with pytest.raises(QueueNotFoundError):
        pool.register_handler("emails", lambda ctx, payload: None)


@pytest.mark.asyncio
async def test_started_pool_processes_and_drains(queues):
    done = []

    async def handler(ctx, payload):
        done.append(payload.order_id)
        return {"ok": True}

    pool = make_pool(queues, handler)
    for i in range(5):
        await enqueue_confirmation(queues, order_id=f"order-{i}")

    pool.start(PAYMENT_CONFIRMATION_QUEUE, concurrency=2, rate_limit=(100, 1))
    assert pool.is_running(PAYMENT_CONFIRMATION_QUEUE)
    with pytest.raises(RuntimeError):
        pool.start(PAYMENT_CONFIRMATION_QUEUE, 1)

    drained = await pool.drain(PAYMENT_CONFIRMATION_QUEUE, timeout=5)
    await pool.stop_all()

    assert drained
    assert sorted(done) == [f"order-{i}" for i in range(5)]
    assert not pool.is_running(PAYMENT_CONFIRMATION_QUEUE)


@pytest.mark.asyncio
async def test_concurrency_is_bounded(queues):
    running = 0
    peak = 0

    async def handler(ctx, payload):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        return {}

    pool = make_pool(queues, handler)
    for i in range(8):
        await enqueue_confirmation(queues, order_id=f"order-{i}")

    pool.start(PAYMENT_CONFIRMATION_QUEUE, concurrency=3)
    assert await pool.drain(PAYMENT_CONFIRMATION_QUEUE, timeout=5)
    await pool.stop(PAYMENT_CONFIRMATION_QUEUE)

    assert 1 <= peak <= 3


@pytest.mark.asyncio
async def test_stop_timeout_cancels_running_job(queues):
    """Test that a job still running at the stop deadline keeps its lease."""
    release = asyncio.Event()

    async def handler(ctx, payload):
        await release.wait()
        return {}

    pool = make_pool(queues, handler)
    job = await enqueue_confirmation(queues)
    pool.start(PAYMENT_CONFIRMATION_QUEUE, concurrency=1)

    async def wait_in_flight():
        while pool.in_flight(PAYMENT_CONFIRMATION_QUEUE) == 0:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait_in_flight(), timeout=2)
    await pool.stop(PAYMENT_CONFIRMATION_QUEUE, timeout=0.05)

    stored = await queues[PAYMENT_CONFIRMATION_QUEUE].get_job(job.id)
    assert stored.status == JobStatus.ACTIVE
    assert stored.lease_expires_at is not None
    assert pool.in_flight(PAYMENT_CONFIRMATION_QUEUE) == 0


@pytest.mark.asyncio
async def test_rate_limit_caps_starts_below_concurrency(queues):
    """Test that five idle executors still start only two jobs per window."""
    started = []

    async def handler(ctx, payload):
        started.append(payload.order_id)
        return {}

    pool = make_pool(queues, handler)
    for i in range(6):
        await enqueue_confirmation(queues, order_id=f"order-{i}")

    pool.start(PAYMENT_CONFIRMATION_QUEUE, concurrency=5, rate_limit=(2, 60))

    async def wait_started():
        while len(started) < 2:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait_started(), timeout=2)
    await asyncio.sleep(0.1)

    assert len(started) == 2
    status = await queues[PAYMENT_CONFIRMATION_QUEUE].get_status()
    assert status.waiting == 4
    assert status.completed == 2

    await pool.stop(PAYMENT_CONFIRMATION_QUEUE, drain=False)


@pytest.mark.asyncio
async def test_lease_is_renewed_while_handler_runs(store, clock):
    queue = Queue(PAYMENT_CONFIRMATION_QUEUE, store, lease_seconds=0.02, clock=clock)
    leases = []

    async def handler(ctx, payload):
        clock.advance(100)
        await asyncio.sleep(0.1)
        leases.append((await queue.get_job(ctx["job"].id)).lease_expires_at)
        return {}

    pool = make_pool({PAYMENT_CONFIRMATION_QUEUE: queue}, handler)
    await enqueue_confirmation({PAYMENT_CONFIRMATION_QUEUE: queue})

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.status == JobStatus.COMPLETED
    assert leases == [clock() + timedelta(seconds=0.02)]


@pytest.mark.asyncio
async def test_outcome_of_recovered_job_is_discarded(queues, recorder, clock):
    """Test that a worker whose job was recovered and re-claimed stores nothing."""
    queue = queues[PAYMENT_CONFIRMATION_QUEUE]

    async def handler(ctx, payload):
        clock.advance(queue.lease_seconds + 1)
        await queue.requeue_stalled()
        await queue.claim_next("other-worker")
        return {"ok": True}

    pool = make_pool(queues, handler, [recorder])
    job = await enqueue_confirmation(queues)

    stored = await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)

    assert stored.id == job.id
    assert stored.status == JobStatus.ACTIVE
    assert stored.worker_id == "other-worker"
    assert stored.attempts == 2
    assert stored.result is None
    assert recorder.events == []
    assert pool.in_flight(PAYMENT_CONFIRMATION_QUEUE) == 0


@pytest.mark.asyncio
async def test_pause_stops_claims(queues):
    async def handler(ctx, payload):
        return {}

    pool = make_pool(queues, handler)
    await enqueue_confirmation(queues)

    await pool.pause(PAYMENT_CONFIRMATION_QUEUE)
    assert await pool.run_once(PAYMENT_CONFIRMATION_QUEUE) is None

    await pool.resume(PAYMENT_CONFIRMATION_QUEUE)
    assert (await pool.run_once(PAYMENT_CONFIRMATION_QUEUE)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_payout_succeeds_on_third_attempt(engine, gateway, transactions, notifier, make_transaction, clock):
    """Test two gateway failures followed by a success credit the driver once."""
    make_transaction("txn-1", driver_id="driver-1", amount=500.0)
    transactions.earnings["driver-1"] = {"total": 1000.0, "pending": 500.0}
    gateway.payout_outcomes = [GatewayError("503", status_code=503), GatewayError("503", status_code=503)]

    queued = await engine.service.enqueue_payout_job(
        trip_id="trip-1",
        driver_id="driver-1",
        amount=500.0,
        beneficiary_id="bene-1",
        transaction_id="txn-1",
    )
    assert queued.job_id == "txn-1"
    assert queued.status == "queued"

    first = await engine.pool.run_once(PAYOUT_QUEUE)
    assert first.status == JobStatus.DELAYED
    assert first.next_run_at == clock() + timedelta(seconds=5)
    assert await engine.pool.run_once(PAYOUT_QUEUE) is None

    clock.advance(5)
    second = await engine.pool.run_once(PAYOUT_QUEUE)
    assert second.status == JobStatus.DELAYED
    assert second.next_run_at == clock() + timedelta(seconds=10)

    clock.advance(10)
    third = await engine.pool.run_once(PAYOUT_QUEUE)

    assert third.status == JobStatus.COMPLETED
    assert third.attempts == 3
    assert len(gateway.payout_calls) == 3
    assert len({call["transfer_id"] for call in gateway.payout_calls}) == 3
    transaction = transactions.transactions["txn-1"]
    assert transaction.status == TransactionStatus.COMPLETED
    assert len(transaction.metadata["retry_attempts"]) == 2
    assert transactions.earnings["driver-1"] == {"total": 1500.0, "pending": 0.0}
    assert transactions.success_calls == 1
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_payout_exhausts_attempts_and_escalates(engine, gateway, transactions, notifier, make_transaction, clock):
    make_transaction("txn-1", driver_id="driver-1", amount=500.0)
    gateway.payout_outcomes = [GatewayError("gateway 503", status_code=503)] * 5
    await engine.service.enqueue_payout_job("trip-1", "driver-1", 500.0, "bene-1", "txn-1")

    for _ in range(5):
        await engine.pool.run_once(PAYOUT_QUEUE)
        clock.advance(300)

    job = await engine.service.get_job("txn-1")
    assert job.status == JobStatus.FAILED
    assert job.attempts == 5

    transaction = transactions.transactions["txn-1"]
    assert transaction.status == TransactionStatus.FAILED
    assert transaction.metadata["final_failure"]["total_attempts"] == 5
    assert transactions.success_calls == 0

    assert [n.recipient for n in notifier.sent] == ["ops@example.com", "lead@example.com"]
    notification = notifier.sent[0]
    assert notification.template == "payout_failure_admin"
    assert notification.data["retry_count"] == 5
    assert notification.data["trip_id"] == "trip-1"
    assert notification.data["amount"] == 500.0
    assert notification.data["failure_reason"] == "Final failure after 5 attempt(s): gateway 503"


@pytest.mark.asyncio
async def test_invalid_document_fails_once_and_escalates(engine, storage, documents, notifier):
    storage.put("drivers/driver-1/notes.txt", "text/plain", 120)
    documents.add("driver-1", "doc-1")

    queued = await engine.service.enqueue_document_job(
        user_id="user-1",
        driver_id="driver-1",
        document_id="doc-1",
        document_type="license",
        s3_key="drivers/driver-1/notes.txt",
    )
    job = await engine.pool.run_once(DOCUMENT_QUEUE)

    assert job.id == queued.job_id
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1

    document = documents.documents[("driver-1", "doc-1")]
    assert document["status"] == "rejected"
    assert document["rejection_reason"] == "Validation failed: Invalid content type: text/plain"
    assert document["processing_error"].startswith("Non-retryable failure")

    assert len(notifier.sent) == 2
    assert notifier.sent[0].template == "job_failure_admin"
    assert notifier.sent[0].related_entity == {"type": "document", "id": "doc-1"}
