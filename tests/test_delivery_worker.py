"""
Tests for the delivery worker polling cycle.

Destinations are mocked with httpx.MockTransport; time is moved with the
FakeClock so backoff can be stepped through without sleeping.
"""
import asyncio
import json
import random
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from hookrelay.models.retry_job import RetryJobStatus
from hookrelay.services.delivery_worker import CycleSummary
from hookrelay.services.retry_job_store import StorageError
from hookrelay.services.retry_policy import BackoffPolicy
from hookrelay.services.webhook_service import generate_webhook_signature
from tests.helpers import Destination


URL = "https://merchant.example.com/hooks/payments"
PAYLOAD = {"event_type": "payment.completed", "transaction_id": "tx-2002"}

# Longer than any capped backoff, so every job is due again
PAST_MAX_BACKOFF = 3600


@pytest.mark.asyncio
async def test_empty_cycle_is_a_noop(make_worker):
    destination = Destination(200)
    summary = await make_worker(destination).run_once()

    assert summary.to_dict() == {"attempted": 0, "succeeded": 0, "rescheduled": 0, "failed": 0, "errored": 0}
    assert destination.requests == []


@pytest.mark.asyncio
async def test_successful_delivery_completes_job(store, make_worker):
    destination = Destination(200)
    job = await store.create(URL, PAYLOAD, max_retries=5)

    summary = await make_worker(destination).run_once()

    assert summary.attempted == 1
    assert summary.succeeded == 1
    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.COMPLETED
    assert stored.attempt_count == 1
    assert stored.last_status_code == 200


@pytest.mark.asyncio
async def test_delivery_request_carries_payload_and_headers(store, make_worker):
    destination = Destination(200)
    job = await store.create(URL, PAYLOAD, max_retries=5)

    await make_worker(destination, signing_secret="s3cret").run_once()

    request = destination.requests[0]
    body = request.content.decode()
    assert request.method == "POST"
    assert str(request.url) == URL
    assert json.loads(body) == PAYLOAD
    assert request.headers["Content-Type"] == "application/json"
    assert request.headers["X-Retry-Attempt"] == "1"
    assert request.headers["X-Webhook-Id"] == job.id
    assert request.headers["X-Webhook-Signature"] == generate_webhook_signature(body, "s3cret")


@pytest.mark.asyncio
async def test_always_failing_endpoint_exhausts_retries(store, make_worker, clock):
    """max_retries=3 against a permanent 500: failed after exactly 3 attempts"""
    destination = Destination(500)
    job = await store.create(URL, PAYLOAD, max_retries=3)
    worker = make_worker(destination)

    first = await worker.run_once()
    assert first.rescheduled == 1
    clock.advance(PAST_MAX_BACKOFF)

    second = await worker.run_once()
    assert second.rescheduled == 1
    clock.advance(PAST_MAX_BACKOFF)

    third = await worker.run_once()
    assert third.failed == 1

    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.FAILED
    assert stored.attempt_count == 3
    assert stored.last_error == "HTTP 500"
    assert [r.headers["X-Retry-Attempt"] for r in destination.requests] == ["1", "2", "3"]

    clock.advance(PAST_MAX_BACKOFF)
    assert (await worker.run_once()).attempted == 0
    assert len(destination.requests) == 3


@pytest.mark.asyncio
async def test_non_retryable_status_fails_immediately(store, make_worker):
    """404 is permanent regardless of the remaining budget"""
    destination = Destination(404)
    job = await store.create(URL, PAYLOAD, max_retries=5)

    summary = await make_worker(destination).run_once()

    assert summary.failed == 1
    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.FAILED
    assert stored.attempt_count == 1
    assert stored.last_status_code == 404


@pytest.mark.asyncio
async def test_job_is_not_redelivered_before_backoff_elapses(store, make_worker, clock):
    destination = Destination(503, 200)
    job = await store.create(URL, PAYLOAD, max_retries=5)
    worker = make_worker(destination)

    await worker.run_once()
    stored = await store.get(job.id)
    assert stored.next_retry_at == clock.now + timedelta(seconds=1)

    clock.advance(0.5)
    assert (await worker.run_once()).attempted == 0

    clock.advance(0.5)
    summary = await worker.run_once()
    assert summary.succeeded == 1
    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.COMPLETED
    assert stored.attempt_count == 2


@pytest.mark.asyncio
async def test_next_retry_at_never_moves_backwards(store, make_worker, clock):
    destination = Destination(503)
    job = await store.create(URL, PAYLOAD, max_retries=12)
    policy = BackoffPolicy(initial_delay=1.0, multiplier=2.0, max_delay=300.0, jitter_ratio=0.2)
    worker = make_worker(destination, policy=policy, rng=random.Random(3))

    scheduled = []
    for _ in range(11):
        before = clock.now
        await worker.run_once()
        stored = await store.get(job.id)
        scheduled.append(stored.next_retry_at)
        assert (stored.next_retry_at - before).total_seconds() <= 300.0
        clock.advance(PAST_MAX_BACKOFF)

    assert scheduled == sorted(scheduled)
    assert (await store.get(job.id)).attempt_count == 11


@pytest.mark.asyncio
async def test_network_errors_are_retried(store, make_worker):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    job = await store.create(URL, PAYLOAD, max_retries=3)

    summary = await make_worker(client).run_once()

    assert summary.rescheduled == 1
    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.PENDING
    assert stored.attempt_count == 1
    assert "ConnectError" in stored.last_error
    assert stored.last_status_code is None


@pytest.mark.asyncio
async def test_slow_endpoint_times_out_as_retryable(store, make_worker):
    async def hang(request):
        await asyncio.sleep(5)
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(hang))
    job = await store.create(URL, PAYLOAD, max_retries=3)

    summary = await make_worker(client, timeout=0.05).run_once()

    assert summary.rescheduled == 1
    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.PENDING
    assert stored.last_error.startswith("Timeout")


@pytest.mark.asyncio
async def test_one_broken_job_does_not_stop_the_batch(store, make_worker, clock):
    def handler(request):
        if request.url.host == "broken.example.com":
            raise RuntimeError("receiver exploded")
        return httpx.Response(200)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    broken = await store.create("https://broken.example.com/hook", PAYLOAD, max_retries=3)
    clock.advance(1)
    healthy = await store.create(URL, PAYLOAD, max_retries=3)

    summary = await make_worker(client).run_once()

    assert summary.errored == 1
    assert summary.succeeded == 1
    assert (await store.get(healthy.id)).status == RetryJobStatus.COMPLETED
    still_pending = await store.get(broken.id)
    assert still_pending.status == RetryJobStatus.PENDING
    assert still_pending.attempt_count == 0


@pytest.mark.asyncio
async def test_storage_error_on_one_job_leaves_it_for_next_cycle(store, make_worker, clock, monkeypatch):
    destination = Destination(200)
    first = await store.create(URL, {"n": 1}, max_retries=3)
    clock.advance(1)
    second = await store.create(URL, {"n": 2}, max_retries=3)

    real_mark_completed = store.mark_completed

    async def flaky_mark_completed(job_id, status_code=None):
        if job_id == first.id:
            raise StorageError("mark_completed failed: connection reset")
        return await real_mark_completed(job_id, status_code=status_code)

    monkeypatch.setattr(store, "mark_completed", flaky_mark_completed)
    summary = await make_worker(destination).run_once()

    assert summary.errored == 1
    assert summary.succeeded == 1
    assert (await store.get(second.id)).status == RetryJobStatus.COMPLETED
    assert (await store.get(first.id)).status == RetryJobStatus.PENDING

    monkeypatch.setattr(store, "mark_completed", real_mark_completed)
    clock.advance(PAST_MAX_BACKOFF)
    assert (await make_worker(destination).run_once()).succeeded == 1
    assert (await store.get(first.id)).status == RetryJobStatus.COMPLETED


@pytest.mark.asyncio
async def test_fetch_failure_aborts_the_cycle(store, make_worker, monkeypatch):
    monkeypatch.setattr(store, "fetch_due_jobs", AsyncMock(side_effect=StorageError("fetch_due_jobs failed")))

    with pytest.raises(StorageError):
        await make_worker(Destination(200)).run_once()


@pytest.mark.asyncio
async def test_batch_limit_bounds_the_cycle(store, make_worker, clock):
    destination = Destination(200)
    for n in range(5):
        await store.create(URL, {"n": n}, max_retries=3)
        clock.advance(1)

    summary = await make_worker(destination, batch_limit=2).run_once()

    assert summary.attempted == 2
    assert [json.loads(r.content)["n"] for r in destination.requests] == [0, 1]


@pytest.mark.asyncio
async def test_lost_claim_skips_delivery(store, make_worker, monkeypatch):
    destination = Destination(200)
    await store.create(URL, PAYLOAD, max_retries=3)
    monkeypatch.setattr(store, "claim", AsyncMock(return_value=None))

    summary = await make_worker(destination).run_once()

    assert summary.attempted == 0
    assert destination.requests == []



@pytest.mark.parametrize("transition, status_code", [
    ("mark_completed", 200),
    ("mark_failed_attempt", 503),
    ("mark_terminal_failure", 404),
])
@pytest.mark.asyncio
async def test_state_conflict_is_counted_as_error(store, make_worker, monkeypatch, transition, status_code):
    await store.create(URL, PAYLOAD, max_retries=3)
    monkeypatch.setattr(store, transition, AsyncMock(return_value=False))

    summary = await make_worker(Destination(status_code)).run_once()

    assert summary.to_dict() == {"attempted": 1, "succeeded": 0, "rescheduled": 0, "failed": 0, "errored": 1}


@pytest.mark.asyncio
async def test_stale_batch_copy_does_not_exceed_retry_budget(store, make_worker, clock):
    """A job read before another worker attempted it is delivered with the current attempt number"""
    destination = Destination(500)
    job = await store.create(URL, PAYLOAD, max_retries=2)
    worker_a = make_worker(destination)
    worker_b = make_worker(destination)

    stale_batch = await store.fetch_due_jobs(10)
    assert (await worker_a.run_once()).rescheduled == 1
    clock.advance(2)

    summary = CycleSummary()
    async with destination.client() as client:
        await worker_b.process_job(client, stale_batch[0], summary)

    assert summary.failed == 1
    stored = await store.get(job.id)
    assert stored.status == RetryJobStatus.FAILED
    assert stored.attempt_count == 2

    clock.advance(PAST_MAX_BACKOFF)
    assert (await worker_a.run_once()).attempted == 0
    assert [r.headers["X-Retry-Attempt"] for r in destination.requests] == ["1", "2"]


@pytest.mark.asyncio
async def test_concurrent_batch_delivers_each_job_once(shared_store, make_worker, clock):
    in_flight = 0
    peak = 0
    delivered = []

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.02)
        in_flight -= 1
        delivered.append(json.loads(request.content)["n"])
        return httpx.Response(200)

    for n in range(8):
        await shared_store.create(URL, {"n": n}, max_retries=3)
        clock.advance(1)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    summary = await make_worker(client, job_store=shared_store, concurrency=4).run_once()

    assert summary.succeeded == 8
    assert summary.errored == 0
    assert sorted(delivered) == list(range(8))
    assert peak <= 4
    assert (await shared_store.count_by_status())["completed"] == 8


@pytest.mark.asyncio
async def test_overlapping_workers_never_double_deliver(shared_store, make_worker, clock):
    destination = Destination(200)
    jobs = []
    for n in range(6):
        jobs.append(await shared_store.create(URL, {"n": n}, max_retries=3))
        clock.advance(1)

    worker_a = make_worker(destination, job_store=shared_store, concurrency=2)
    worker_b = make_worker(destination, job_store=shared_store, concurrency=2)
    first, second = await asyncio.gather(worker_a.run_once(), worker_b.run_once())

    assert first.succeeded + second.succeeded == 6
    assert first.errored == second.errored == 0
    delivered_ids = [r.headers["X-Webhook-Id"] for r in destination.requests]
    assert sorted(delivered_ids) == sorted(job.id for job in jobs)


@pytest.mark.asyncio
async def test_overlapping_workers_stay_within_retry_budget(shared_store, make_worker, clock):
    destination = Destination(500)
    jobs = []
    for n in range(3):
        jobs.append(await shared_store.create(URL, {"n": n}, max_retries=2))
        clock.advance(1)

    worker_a = make_worker(destination, job_store=shared_store, concurrency=2)
    worker_b = make_worker(destination, job_store=shared_store, concurrency=2)
    for _ in range(4):
        await asyncio.gather(worker_a.run_once(), worker_b.run_once())
        clock.advance(PAST_MAX_BACKOFF)

    for job in jobs:
        attempts = [r.headers["X-Retry-Attempt"] for r in destination.requests if r.headers["X-Webhook-Id"] == job.id]
        assert attempts == ["1", "2"]
        stored = await shared_store.get(job.id)
        assert stored.status == RetryJobStatus.FAILED
        assert stored.attempt_count == 2
