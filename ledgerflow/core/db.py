from __future__ import annotations

from collections.abc import Callable, Generator
from typing import Any

from fastapi import Request
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel, create_engine

from ..models import db as _db_models  # noqa: F401 - ensure models register with metadata

SessionFactory = Callable[[], Session]


def _use_immediate_transactions(engine: Engine) -> None:
    # SQLite has no row locks; BEGIN IMMEDIATE takes the database write lock
    # up front so concurrent units of work serialize instead of racing.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str, lock_timeout_ms: int = 5000) -> Engine:
    connect_args: dict[str, Any] = {}
    sqlite = database_url.startswith("sqlite")
    if sqlite:
        connect_args = {
            "check_same_thread": False,
            "timeout": lock_timeout_ms / 1000,
        }
    engine = create_engine(database_url, echo=False, connect_args=connect_args)
    if sqlite:
        _use_immediate_transactions(engine)
    return engine


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def make_session_factory(engine: Engine) -> SessionFactory:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


def get_session(request: Request) -> Generator[Session, None, None]:
    with request.app.state.session_factory() as session:
        yield session
