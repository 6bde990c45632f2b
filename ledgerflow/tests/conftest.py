from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from ..core.config import Settings
from ..core.db import create_engine_for_url, init_db, make_session_factory
from ..main import create_app
from ..services import LedgerRepository
from .helpers import WEBHOOK_URL, Subscriber


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        lock_timeout_ms=30000,
        webhook_url=WEBHOOK_URL,
        dispatcher_enabled=False,
        idempotency_wait_seconds=5.0,
        idempotency_poll_interval=0.01,
    )


@pytest.fixture
def engine(settings: Settings):
    engine = create_engine_for_url(settings.database_url, settings.lock_timeout_ms)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def make_accounts(session_factory):
    """Create accounts holding the given balances, without opening entries."""

    def _make(*balances: str) -> list[int]:
        with session_factory() as session:
            repository = LedgerRepository(session)
            ids = [
                repository.add_account(f"Account {index}", Decimal(balance)).id
                for index, balance in enumerate(balances, start=1)
            ]
            session.commit()
        return ids

    return _make


@pytest.fixture
def subscriber() -> Subscriber:
    return Subscriber()


@pytest.fixture
def client(settings: Settings, subscriber: Subscriber) -> TestClient:
    http_client = httpx.Client(transport=httpx.MockTransport(subscriber))
    app = create_app(settings, http_client=http_client)
    with TestClient(app) as test_client:
        yield test_client
    http_client.close()
