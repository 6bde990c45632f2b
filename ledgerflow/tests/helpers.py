from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Union

import httpx
from sqlalchemy import func
from sqlmodel import select

WEBHOOK_URL = "http://subscriber.test/hooks"


class FakeClock:
    """Wall clock that only moves when a test says so."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def advance_to(self, moment: datetime) -> None:
        if moment > self.now:
            self.now = moment


class Subscriber:
    """httpx.MockTransport handler replaying scripted status codes or errors."""

    def __init__(self, outcomes: list[Union[int, Exception]] | None = None, default: int = 200) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"ok": 200 <= outcome < 300})


def count_rows(session_factory, model, *criteria) -> int:
    with session_factory() as session:
        stmt = select(func.count()).select_from(model)
        for criterion in criteria:
            stmt = stmt.where(criterion)
        return session.exec(stmt).one()
