import json
import time
from decimal import Decimal

import httpx
import pytest

from ..core.errors import InvalidRequestError, StoreFailureError
from ..models import JobStatus, NotificationJobModel, TransferRequest
from ..services import (
    IdempotencyCache,
    NotificationDispatcher,
    NotificationJobSpec,
    RateLimiter,
    TransferExecutor,
    TransferGateway,
)
from ..services.notifications import backoff_delay
from .helpers import WEBHOOK_URL, FakeClock, Subscriber, count_rows


def _dispatcher(session_factory, subscriber: Subscriber, clock=None, **kwargs) -> NotificationDispatcher:
    return NotificationDispatcher(
        session_factory,
        httpx.Client(transport=httpx.MockTransport(subscriber)),
        rate_limiter=RateLimiter(limit=1000, window_seconds=1.0),
        clock=clock or FakeClock(),
        **kwargs,
    )


def _spec(transaction_id: int = 1) -> NotificationJobSpec:
    return NotificationJobSpec(
        url=WEBHOOK_URL,
        transaction_id=transaction_id,
        payload={"event": "transfer.success", "transactionId": transaction_id, "amount": "100.00"},
    )


def _drive(dispatcher: NotificationDispatcher, clock: FakeClock, job_id: int, rounds: int = 10) -> None:
    """Run due jobs, then jump the clock to the next scheduled attempt."""
    for _ in range(rounds):
        dispatcher.run_pending()
        job = dispatcher.get_job(job_id)
        if job.status != JobStatus.PENDING:
            return
        clock.advance_to(job.next_attempt_at)


def test_backoff_delay_doubles() -> None:
    assert [backoff_delay(attempt, 1.5) for attempt in range(1, 6)] == [1.5, 3.0, 6.0, 12.0, 24.0]


def test_enqueue_does_not_deliver(session_factory) -> None:
    subscriber = Subscriber()
    dispatcher = _dispatcher(session_factory, subscriber)

    job_id = dispatcher.enqueue(_spec())

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert subscriber.requests == []


def test_successful_delivery_carries_payload(session_factory) -> None:
    subscriber = Subscriber()
    dispatcher = _dispatcher(session_factory, subscriber)
    job_id = dispatcher.enqueue(_spec(transaction_id=42))

    assert dispatcher.run_pending() == 1

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.DELIVERED
    assert job.attempts == 1
    request = subscriber.requests[0]
    assert request.method == "POST"
    assert request.headers["X-Notification-Id"] == str(job_id)
    assert json.loads(request.content) == {
        "amount": "100.00",
        "event": "transfer.success",
        "transactionId": 42,
    }


def test_retries_with_exponential_backoff_until_delivered(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber([500, 503, httpx.ConnectError("connection refused"), 404, 200])
    dispatcher = _dispatcher(session_factory, subscriber, clock, backoff_base_seconds=2.0)
    job_id = dispatcher.enqueue(_spec())

    _drive(dispatcher, clock, job_id)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.DELIVERED
    assert job.attempts == 5
    assert [attempt.attempt for attempt in job.history] == [1, 2, 3, 4, 5]
    assert [attempt.succeeded for attempt in job.history] == [False, False, False, False, True]
    assert [attempt.status_code for attempt in job.history] == [500, 503, None, 404, 200]
    assert job.history[2].error.startswith("ConnectError")
    delays = [
        (later.started_at - earlier.started_at).total_seconds()
        for earlier, later in zip(job.history, job.history[1:])
    ]
    assert delays == [2.0, 4.0, 8.0, 16.0]
    assert count_rows(session_factory, NotificationJobModel, NotificationJobModel.status == JobStatus.DELIVERED) == 1


def test_retry_is_not_attempted_before_backoff_elapses(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber([500, 200])
    dispatcher = _dispatcher(session_factory, subscriber, clock)
    job_id = dispatcher.enqueue(_spec())

    assert dispatcher.run_pending() == 1
    clock.advance(0.5)
    assert dispatcher.run_pending() == 0
    clock.advance(0.5)
    assert dispatcher.run_pending() == 1
    assert dispatcher.get_job(job_id).status == JobStatus.DELIVERED


def test_gives_up_after_max_attempts(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber(default=500)
    dispatcher = _dispatcher(session_factory, subscriber, clock)
    job_id = dispatcher.enqueue(_spec())

    _drive(dispatcher, clock, job_id)
    clock.advance(3600)
    dispatcher.run_pending()

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.EXHAUSTED
    assert job.attempts == 5
    assert job.last_error == "HTTP 500"
    assert len(subscriber.requests) == 5


def test_timeout_counts_as_failed_attempt(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber([httpx.ReadTimeout("timed out"), 204])
    dispatcher = _dispatcher(session_factory, subscriber, clock)
    job_id = dispatcher.enqueue(_spec())

    _drive(dispatcher, clock, job_id)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.DELIVERED
    assert job.history[0].error.startswith("ReadTimeout")


def test_replay_exhausted_job(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber([500] * 5 + [200])
    dispatcher = _dispatcher(session_factory, subscriber, clock)
    job_id = dispatcher.enqueue(_spec())
    _drive(dispatcher, clock, job_id)
    assert dispatcher.get_job(job_id).status == JobStatus.EXHAUSTED

    replayed = dispatcher.replay(job_id)
    assert replayed.status == JobStatus.PENDING
    assert replayed.attempts == 0
    dispatcher.run_pending()

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.DELIVERED
    assert len(job.history) == 6


def test_replay_rejects_pending_job(session_factory) -> None:
    dispatcher = _dispatcher(session_factory, Subscriber())
    job_id = dispatcher.enqueue(_spec())

    with pytest.raises(InvalidRequestError):
        dispatcher.replay(job_id)


def test_requeue_stalled_jobs(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber()
    dispatcher = _dispatcher(session_factory, subscriber, clock)
    job_id = dispatcher.enqueue(_spec())
    assert dispatcher._claim_next() == job_id
    assert dispatcher.get_job(job_id).status == JobStatus.DELIVERING

    assert dispatcher.requeue_stalled() == 1
    dispatcher.run_pending()

    assert dispatcher.get_job(job_id).status == JobStatus.DELIVERED


def test_rate_limiter_caps_attempts_per_window() -> None:
    now = [0.0]
    sleeps = []

    def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(limit=5, window_seconds=1.0, clock=lambda: now[0], sleep=sleep)
    started = []
    for _ in range(12):
        limiter.acquire()
        started.append(now[0])

    assert started == [0.0] * 5 + [1.0] * 5 + [2.0] * 2
    assert sleeps == [1.0, 1.0]


def test_rate_limiter_is_shared_across_jobs(session_factory) -> None:
    now = [0.0]

    def sleep(seconds: float) -> None:
        now[0] += seconds

    subscriber = Subscriber()
    dispatcher = NotificationDispatcher(
        session_factory,
        httpx.Client(transport=httpx.MockTransport(subscriber)),
        rate_limiter=RateLimiter(limit=2, window_seconds=1.0, clock=lambda: now[0], sleep=sleep),
        clock=FakeClock(),
    )
    for transaction_id in range(1, 6):
        dispatcher.enqueue(_spec(transaction_id))

    assert dispatcher.run_pending() == 5
    assert now[0] == 2.0


def test_workers_deliver_in_background(session_factory) -> None:
    subscriber = Subscriber([500])
    dispatcher = NotificationDispatcher(
        session_factory,
        httpx.Client(transport=httpx.MockTransport(subscriber)),
        backoff_base_seconds=0.05,
        workers=2,
        poll_interval=0.01,
    )
    job_id = dispatcher.enqueue(_spec())

    dispatcher.start()
    try:
        deadline = time.monotonic() + 5
        while dispatcher.get_job(job_id).status != JobStatus.DELIVERED and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        dispatcher.stop()

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.DELIVERED
    assert job.attempts == 2


def test_enqueue_failure_never_fails_the_transfer(session_factory, make_accounts) -> None:
    source_id, dest_id = make_accounts("1000.00", "0.00")

    class BrokenQueue:
        def enqueue(self, spec):
            raise StoreFailureError("Notification queue unavailable")

    gateway = TransferGateway(
        TransferExecutor(session_factory),
        IdempotencyCache(session_factory),
        BrokenQueue(),
        webhook_url=WEBHOOK_URL,
    )
    request = TransferRequest(
        from_account_id=source_id,
        to_account_id=dest_id,
        amount=Decimal("10.00"),
        reference="x",
    )

    response = gateway.transfer(request, "key-1")

    assert response.success
    assert response.transaction_id == 1


def test_gateway_enqueues_transfer_notification(session_factory, make_accounts) -> None:
    source_id, dest_id = make_accounts("1000.00", "0.00")
    clock = FakeClock()
    dispatcher = _dispatcher(session_factory, Subscriber(), clock)
    gateway = TransferGateway(
        TransferExecutor(session_factory),
        IdempotencyCache(session_factory),
        dispatcher,
        webhook_url=WEBHOOK_URL,
    )
    request = TransferRequest(
        from_account_id=source_id,
        to_account_id=dest_id,
        amount=Decimal("100.00"),
        reference="rent",
    )

    gateway.transfer(request, "key-1")
    gateway.transfer(request, "key-1")

    assert count_rows(session_factory, NotificationJobModel) == 1
    with session_factory() as session:
        job = session.get(NotificationJobModel, 1)
    assert job.next_attempt_at == clock.now
    assert json.loads(job.payload) == {
        "amount": "100.00",
        "event": "transfer.success",
        "fromAccountId": source_id,
        "reference": "rent",
        "toAccountId": dest_id,
        "transactionId": 1,
    }


def test_invalid_url_counts_as_failed_attempt(session_factory) -> None:
    clock = FakeClock()
    subscriber = Subscriber()
    dispatcher = _dispatcher(session_factory, subscriber, clock)
    job_id = dispatcher.enqueue(NotificationJobSpec(url="http://[::1", transaction_id=1, payload={}))

    _drive(dispatcher, clock, job_id)

    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.EXHAUSTED
    assert job.attempts == 5
    assert job.last_error.startswith("InvalidURL")
    assert subscriber.requests == []


def test_requeue_stalled_skips_recently_claimed_jobs(session_factory) -> None:
    clock = FakeClock()
    dispatcher = _dispatcher(session_factory, Subscriber(), clock)
    job_id = dispatcher.enqueue(_spec())
    assert dispatcher._claim_next() == job_id

    clock.advance(29)
    assert dispatcher.requeue_stalled(older_than_seconds=30) == 0
    clock.advance(1)
    assert dispatcher.requeue_stalled(older_than_seconds=30) == 1
    assert dispatcher.get_job(job_id).status == JobStatus.PENDING


def test_worker_survives_unexpected_delivery_error(session_factory) -> None:
    subscriber = Subscriber([RuntimeError("subscriber exploded")])
    dispatcher = NotificationDispatcher(
        session_factory,
        httpx.Client(transport=httpx.MockTransport(subscriber)),
        workers=1,
        poll_interval=0.01,
        stall_timeout_seconds=0.2,
    )
    job_id = dispatcher.enqueue(_spec())

    dispatcher.start()
    try:
        deadline = time.monotonic() + 5
        while dispatcher.get_job(job_id).status != JobStatus.DELIVERED and time.monotonic() < deadline:
            time.sleep(0.02)
        alive = [thread.is_alive() for thread in dispatcher._threads]
    finally:
        dispatcher.stop()

    assert alive == [True]
    job = dispatcher.get_job(job_id)
    assert job.status == JobStatus.DELIVERED
    assert len(subscriber.requests) == 2
