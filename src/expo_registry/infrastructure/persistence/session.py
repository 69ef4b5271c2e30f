# -*- coding: utf-8 -*-
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def make_engine(dsn: str, *, statement_timeout_ms: int = 2000) -> Engine:
    url = make_url(dsn)
    if url.get_backend_name() == "sqlite":
        # File databases get a pooled engine shared across threads; writers
        # queue on the sqlite busy handler instead of failing immediately.
        return create_engine(
            url,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
            future=True,
        )

    engine = create_engine(
        url,
        pool_size=20,
        max_overflow=40,
        pool_timeout=5,
        pool_recycle=1800,
        pool_pre_ping=True,
        future=True,
    )

    if url.get_backend_name() == "postgresql":

        @event.listens_for(engine, "connect")
        def set_statement_timeout(dbapi_connection, connection_record):  # pragma: no cover - driver specific
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute(f"SET statement_timeout TO {int(statement_timeout_ms)}")
            finally:
                cursor.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False, future=True)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["make_engine", "make_session_factory", "session_scope"]
