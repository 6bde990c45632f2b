from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from ..core.db import SessionFactory
from ..core.errors import DuplicateIdempotencyKeyError, IdempotencyUnavailableError
from ..models import IdempotencyRecordModel, IdempotencyStatus, utcnow


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60 * 24


@dataclass(frozen=True)
class Reservation:
    """Result of trying to claim an idempotency key.

    ``acquired`` means this caller owns the key and must execute the request.
    Otherwise ``record`` is the live record held by an earlier request (it can
    be ``None`` if that record vanished between the insert and the re-read).
    """

    acquired: bool
    record: Optional[IdempotencyRecordModel] = None

    @property
    def completed(self) -> bool:
        return self.record is not None and self.record.status == IdempotencyStatus.COMPLETED


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def encode_signature(payload: Any) -> str:
    """Canonical JSON form of a request payload."""
    return json.dumps(payload, default=_json_default, sort_keys=True, separators=(",", ":"))


class IdempotencyCache:
    """Time-bounded key to response memo, backed by the idempotency table.

    Every call runs in its own short transaction, independent of the ledger
    unit of work. Any store error is reported as
    ``IdempotencyUnavailableError`` so the caller fails the request rather
    than executing it unprotected.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def _expiry(self, now: datetime, ttl: Optional[int]) -> datetime:
        return now + timedelta(seconds=self.ttl_seconds if ttl is None else ttl)

    def _live_record(self, session: Session, key: str, now: datetime) -> Optional[IdempotencyRecordModel]:
        """Fetch the record for ``key``, deleting it first if it has expired."""
        record = session.get(IdempotencyRecordModel, key)
        if record is not None and record.expires_at <= now:
            session.delete(record)
            session.flush()
            return None
        return record

    def lookup(self, key: str) -> Optional[str]:
        """Return the cached response for ``key``, or ``None`` on a miss.

        Expired records and claims whose request has not finished yet are
        both misses.
        """
        now = self.clock()
        try:
            with self.session_factory() as session:
                record = session.get(IdempotencyRecordModel, key)
        except SQLAlchemyError as exc:
            raise IdempotencyUnavailableError("Idempotency cache unavailable") from exc

        if record is None or record.expires_at <= now:
            return None
        if record.status != IdempotencyStatus.COMPLETED:
            return None
        return record.response_payload

    def reserve(self, key: str, signature: str, ttl: Optional[int] = None) -> Reservation:
        """Atomically claim ``key`` before the request it guards is executed.

        The claim is an insert that relies on the primary key, so of two
        concurrent first-time requests exactly one acquires the key.
        """
        now = self.clock()
        try:
            with self.session_factory() as session:
                existing = self._live_record(session, key, now)
                if existing is None:
                    session.add(
                        IdempotencyRecordModel(
                            key=key,
                            request_signature=signature,
                            status=IdempotencyStatus.IN_PROGRESS,
                            created_at=now,
                            expires_at=self._expiry(now, ttl),
                        )
                    )
                    try:
                        session.commit()
                        return Reservation(acquired=True)
                    except IntegrityError:
                        # Lost the race to a concurrent claim on the same key.
                        session.rollback()
                    existing = session.get(IdempotencyRecordModel, key)
                else:
                    session.commit()
        except SQLAlchemyError as exc:
            raise IdempotencyUnavailableError("Idempotency cache unavailable") from exc

        if existing is not None and existing.request_signature != signature:
            raise DuplicateIdempotencyKeyError(
                "Idempotency key was previously used with different parameters"
            )
        return Reservation(acquired=False, record=existing)

    def store(
        self,
        key: str,
        response: str,
        ttl: Optional[int] = None,
        signature: str = "",
    ) -> None:
        """Record the response for ``key``, completing an earlier reservation."""
        now = self.clock()
        try:
            with self.session_factory() as session:
                record = self._live_record(session, key, now)
                if record is None:
                    record = IdempotencyRecordModel(
                        key=key,
                        request_signature=signature,
                        created_at=now,
                        expires_at=self._expiry(now, ttl),
                    )
                record.status = IdempotencyStatus.COMPLETED
                record.response_payload = response
                session.add(record)
                session.commit()
        except SQLAlchemyError as exc:
            raise IdempotencyUnavailableError("Idempotency cache unavailable") from exc

    def release(self, key: str) -> None:
        """Drop an unfinished claim so the client can retry the request."""
        try:
            with self.session_factory() as session:
                record = session.get(IdempotencyRecordModel, key)
                if record is not None and record.status == IdempotencyStatus.IN_PROGRESS:
                    session.delete(record)
                    session.commit()
        except SQLAlchemyError as exc:
            raise IdempotencyUnavailableError("Idempotency cache unavailable") from exc
