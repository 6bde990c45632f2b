from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from ..core.db import SessionFactory
from ..core.errors import InvalidRequestError, NotificationJobNotFoundError, StoreFailureError
from ..models import (
    JobStatus,
    NotificationAttemptModel,
    NotificationAttemptResponse,
    NotificationJobModel,
    NotificationJobResponse,
    utcnow,
)


logger = logging.getLogger(__name__)

TRANSFER_SUCCESS_EVENT = "transfer.success"


@dataclass(frozen=True)
class NotificationJobSpec:
    url: str
    transaction_id: int
    payload: dict[str, Any] = field(default_factory=dict)


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Seconds to wait after failed attempt ``attempt`` (1-based)."""
    return base_seconds * 2 ** (attempt - 1)


class RateLimiter:
    """Fixed-window limiter: at most ``limit`` acquisitions per ``window_seconds``.

    One instance is shared by every worker, so the cap is global rather than
    per job.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._window_start = clock()
        self._count = 0

    def acquire(self) -> None:
        """Block until a slot in the current window is free, then take it."""
        while True:
            with self._lock:
                now = self._clock()
                elapsed = now - self._window_start
                if elapsed >= self.window_seconds:
                    self._window_start = now
                    self._count = 0
                    elapsed = 0.0
                if self._count < self.limit:
                    self._count += 1
                    return
                wait = self.window_seconds - elapsed
            self._sleep(wait)


class NotificationDispatcher:
    """At-least-once, rate-limited, retrying webhook delivery.

    Jobs live in the ``notification_jobs`` table and move through
    ``pending -> delivering -> delivered | pending (retry) | exhausted``.
    Exhausted jobs are kept with their attempt history until someone
    replays them.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        http_client: httpx.Client,
        *,
        max_attempts: int = 5,
        backoff_base_seconds: float = 1.0,
        attempt_timeout_seconds: float = 10.0,
        rate_limiter: Optional[RateLimiter] = None,
        workers: int = 4,
        poll_interval: float = 0.5,
        stall_timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.http_client = http_client
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.attempt_timeout_seconds = attempt_timeout_seconds
        self.rate_limiter = rate_limiter or RateLimiter(limit=5, window_seconds=1.0)
        self.workers = workers
        self.poll_interval = poll_interval
        self.stall_timeout_seconds = stall_timeout_seconds
        self.clock = clock
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._sweep_lock = threading.Lock()
        self._last_sweep: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def enqueue(self, spec: NotificationJobSpec) -> int:
        """Persist a delivery job and return its id without attempting delivery."""
        now = self.clock()
        job = NotificationJobModel(
            url=spec.url,
            payload=json.dumps(spec.payload, sort_keys=True, default=str),
            transaction_id=spec.transaction_id,
            status=JobStatus.PENDING,
            max_attempts=self.max_attempts,
            next_attempt_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.session_factory() as session:
                session.add(job)
                session.commit()
                job_id = job.id
        except SQLAlchemyError as exc:
            raise StoreFailureError("Notification queue unavailable") from exc

        logger.info(
            "notification.enqueued",
            extra={"job_id": job_id, "transaction_id": spec.transaction_id},
        )
        return job_id

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def _claim_next(self) -> Optional[int]:
        """Move the oldest due pending job to ``delivering`` and return its id."""
        now = self.clock()
        with self.session_factory() as session:
            while True:
                stmt = (
                    select(NotificationJobModel.id)
                    .where(NotificationJobModel.status == JobStatus.PENDING)
                    .where(NotificationJobModel.next_attempt_at <= now)
                    .order_by(NotificationJobModel.next_attempt_at, NotificationJobModel.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job_id = session.exec(stmt).first()
                if job_id is None:
                    session.commit()
                    return None

                claimed = session.exec(
                    update(NotificationJobModel)
                    .where(NotificationJobModel.id == job_id)
                    .where(NotificationJobModel.status == JobStatus.PENDING)
                    .values(status=JobStatus.DELIVERING, updated_at=now)
                )
                session.commit()
                if claimed.rowcount == 1:
                    return job_id

    def _deliver(self, job_id: int) -> JobStatus:
        with self.session_factory() as session:
            job = session.get(NotificationJobModel, job_id)
            url, payload, attempt = job.url, job.payload, job.attempts + 1

        self.rate_limiter.acquire()
        started_at = self.clock()
        status_code: Optional[int] = None
        error: Optional[str] = None
        try:
            response = self.http_client.post(
                url,
                content=payload,
                headers={
                    "Content-Type": "application/json",
                    "X-Notification-Id": str(job_id),
                    "X-Notification-Attempt": str(attempt),
                },
                timeout=self.attempt_timeout_seconds,
            )
            status_code = response.status_code
            succeeded = response.is_success
            if not succeeded:
                error = f"HTTP {status_code}"
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            succeeded = False
            error = f"{type(exc).__name__}: {exc}"

        return self._record_attempt(job_id, attempt, started_at, succeeded, status_code, error)

    def _record_attempt(
        self,
        job_id: int,
        attempt: int,
        started_at: datetime,
        succeeded: bool,
        status_code: Optional[int],
        error: Optional[str],
    ) -> JobStatus:
        finished_at = self.clock()
        with self.session_factory() as session:
            job = session.get(NotificationJobModel, job_id)
            session.add(
                NotificationAttemptModel(
                    job_id=job_id,
                    attempt=attempt,
                    started_at=started_at,
                    finished_at=finished_at,
                    succeeded=succeeded,
                    status_code=status_code,
                    error=error,
                )
            )
            job.attempts = attempt
            job.updated_at = finished_at
            if succeeded:
                job.status = JobStatus.DELIVERED
                job.last_error = None
            elif attempt >= job.max_attempts:
                job.status = JobStatus.EXHAUSTED
                job.last_error = error
            else:
                delay = backoff_delay(attempt, self.backoff_base_seconds)
                job.status = JobStatus.PENDING
                job.last_error = error
                job.next_attempt_at = finished_at + timedelta(seconds=delay)
            session.add(job)
            session.commit()
            status = job.status
            next_attempt_at = job.next_attempt_at
            transaction_id = job.transaction_id

        context = {
            "job_id": job_id,
            "transaction_id": transaction_id,
            "attempt": attempt,
            "status_code": status_code,
        }
        if status == JobStatus.DELIVERED:
            logger.info("notification.delivered", extra=context)
        elif status == JobStatus.EXHAUSTED:
            logger.error("notification.exhausted", extra={**context, "error": error})
        else:
            logger.warning(
                "notification.retry_scheduled",
                extra={**context, "error": error, "next_attempt_at": next_attempt_at.isoformat()},
            )
        return status

    def run_pending(self) -> int:
        """Deliver every job that is due right now; returns the number of attempts made."""
        attempts = 0
        while not self._stop.is_set():
            job_id = self._claim_next()
            if job_id is None:
                break
            self._deliver(job_id)
            attempts += 1
        return attempts

    def requeue_stalled(self, older_than_seconds: Optional[float] = None) -> int:
        """Return jobs stuck in ``delivering`` to ``pending``.

        Without ``older_than_seconds`` every delivering job is requeued, which
        is only safe before any worker runs. Otherwise only jobs whose last
        update is at least that old are touched.
        """
        now = self.clock()
        stmt = update(NotificationJobModel).where(NotificationJobModel.status == JobStatus.DELIVERING)
        if older_than_seconds is not None:
            stmt = stmt.where(
                NotificationJobModel.updated_at <= now - timedelta(seconds=older_than_seconds)
            )
        with self.session_factory() as session:
            result = session.exec(
                stmt.values(status=JobStatus.PENDING, next_attempt_at=now, updated_at=now)
            )
            session.commit()
        if result.rowcount:
            logger.warning("notification.requeued_stalled", extra={"jobs": result.rowcount})
        return result.rowcount

    def _sweep_stalled(self) -> None:
        """Requeue stale delivering jobs, at most once per stall timeout across all workers."""
        now = self.clock()
        interval = timedelta(seconds=self.stall_timeout_seconds)
        with self._sweep_lock:
            if self._last_sweep is not None and now - self._last_sweep < interval:
                return
            self._last_sweep = now
        self.requeue_stalled(older_than_seconds=self.stall_timeout_seconds)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._sweep_stalled()
                job_id = self._claim_next()
                if job_id is None:
                    self._stop.wait(self.poll_interval)
                    continue
                self._deliver(job_id)
            except SQLAlchemyError:
                logger.exception("notification.worker_store_failure")
                self._stop.wait(self.poll_interval)
            except Exception:
                # A claimed job left in "delivering" is picked up by the stall sweep.
                logger.exception("notification.worker_failure")
                self._stop.wait(self.poll_interval)

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        self.requeue_stalled()
        for index in range(self.workers):
            thread = threading.Thread(
                target=self._worker_loop,
                name=f"notification-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("notification.dispatcher_started", extra={"workers": self.workers})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads.clear()
        logger.info("notification.dispatcher_stopped")

    # ------------------------------------------------------------------
    # Inspection and manual replay
    # ------------------------------------------------------------------
    def _job_response(self, session, job: NotificationJobModel) -> NotificationJobResponse:
        attempts = session.exec(
            select(NotificationAttemptModel)
            .where(NotificationAttemptModel.job_id == job.id)
            .order_by(NotificationAttemptModel.id)
        )
        return NotificationJobResponse(
            id=job.id,
            url=job.url,
            transaction_id=job.transaction_id,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            next_attempt_at=job.next_attempt_at,
            last_error=job.last_error,
            history=[
                NotificationAttemptResponse(
                    attempt=row.attempt,
                    started_at=row.started_at,
                    finished_at=row.finished_at,
                    succeeded=row.succeeded,
                    status_code=row.status_code,
                    error=row.error,
                )
                for row in attempts
            ],
        )

    def get_job(self, job_id: int) -> NotificationJobResponse:
        with self.session_factory() as session:
            job = session.get(NotificationJobModel, job_id)
            if job is None:
                raise NotificationJobNotFoundError(f"Notification job {job_id} not found")
            return self._job_response(session, job)

    def replay(self, job_id: int) -> NotificationJobResponse:
        """Give an exhausted job a fresh attempt budget and queue it again."""
        now = self.clock()
        with self.session_factory() as session:
            job = session.get(NotificationJobModel, job_id)
            if job is None:
                raise NotificationJobNotFoundError(f"Notification job {job_id} not found")
            if job.status != JobStatus.EXHAUSTED:
                raise InvalidRequestError("Only exhausted notification jobs can be replayed")
            job.status = JobStatus.PENDING
            job.attempts = 0
            job.next_attempt_at = now
            job.updated_at = now
            session.add(job)
            session.commit()
            logger.info(
                "notification.replayed",
                extra={"job_id": job_id, "transaction_id": job.transaction_id},
            )
            return self._job_response(session, job)
