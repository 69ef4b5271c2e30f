# -*- coding: utf-8 -*-
"""Atomic per-scope, per-day sequence allocation."""
from __future__ import annotations

from typing import Any, Mapping, Optional, Tuple

from sqlalchemy import case, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from expo_registry.core.clock import utc_now
from expo_registry.infrastructure.persistence.models import RegistrationCounterModel
from expo_registry.infrastructure.persistence.session import session_scope

from .errors import sequence_collision, validation_failed
from .faults import FaultInjector
from .metrics import DEFAULT_METERS
from .types import LoggerLike, MeterLike
from .validation import DATE_BUCKET_PATTERN, SCOPE_KEY_PATTERN

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _upsert_for(dialect: str) -> Any:
    try:
        return _UPSERT_DIALECTS[dialect]
    except KeyError:
        raise ValueError(
            f"dialect {dialect!r} has no atomic upsert; supported: {', '.join(sorted(_UPSERT_DIALECTS))}"
        ) from None


class SqlAlchemySequenceAllocator:
    """Hands out strictly unique integers per ``(scope_key, date_bucket)``.

    The increment and the read happen in one ``INSERT .. ON CONFLICT DO UPDATE
    .. RETURNING`` statement, so the database serializes concurrent callers and
    no two of them can observe the same value. The counter row is created lazily
    by the first allocation for a pair. Allocations are committed on their own;
    a value whose registration later fails to persist is simply skipped.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        meters: MeterLike = DEFAULT_METERS,
        logger: Optional[LoggerLike] = None,
        fault_injector: Optional[FaultInjector] = None,
        max_attempts: int = 3,
    ) -> None:
        bind = session_factory.kw.get("bind")
        if bind is not None:
            _upsert_for(bind.dialect.name)
        self._session_factory = session_factory
        self._meters = meters
        self._logger = logger
        self._faults = fault_injector or FaultInjector()
        self._max_attempts = max(1, max_attempts)

    # Public API -----------------------------------------------------------
    def allocate(self, scope_key: str, date_bucket: str) -> int:
        self._ensure_key(scope_key, date_bucket)
        attempt = 0
        while True:
            attempt += 1
            with self._session_factory() as session:
                try:
                    self._faults.raise_if("sequence_race")
                    value = session.execute(self._increment_statement(session, scope_key, date_bucket)).scalar_one()
                    session.commit()
                except (IntegrityError, OperationalError) as exc:
                    session.rollback()
                    self._meters.record_conflict("sequence")
                    if attempt >= self._max_attempts:
                        self._meters.record_allocation("exhausted")
                        raise sequence_collision(
                            f"scope={scope_key} date={date_bucket} attempts={attempt}", cause=exc
                        ) from exc
                    if self._logger is not None:
                        self._logger.warning(
                            "sequence_retry",
                            extra={"scope": scope_key, "date_bucket": date_bucket, "attempt": attempt},
                        )
                    continue
            self._meters.record_allocation("success")
            return int(value)

    def peek(self, scope_key: str, date_bucket: str) -> int:
        """Return the last value handed out for the pair, or 0 when none was."""

        with self._session_factory() as session:
            value = session.execute(
                select(RegistrationCounterModel.last_seq).where(
                    RegistrationCounterModel.scope_key == scope_key,
                    RegistrationCounterModel.date_bucket == date_bucket,
                )
            ).scalar_one_or_none()
        return int(value or 0)

    def high_water(self, date_bucket: str) -> int:
        """Return the largest value handed out by any scope for ``date_bucket``."""

        with self._session_factory() as session:
            value = session.execute(
                select(func.max(RegistrationCounterModel.last_seq)).where(
                    RegistrationCounterModel.date_bucket == date_bucket
                )
            ).scalar_one_or_none()
        return int(value or 0)

    def advance_to(self, scope_key: str, date_bucket: str, floor: int) -> None:
        """Raise the counter to at least ``floor`` in one statement; never lowers it."""

        self._ensure_key(scope_key, date_bucket)
        column = RegistrationCounterModel.last_seq
        with session_scope(self._session_factory) as session:
            session.execute(
                update(RegistrationCounterModel)
                .where(
                    RegistrationCounterModel.scope_key == scope_key,
                    RegistrationCounterModel.date_bucket == date_bucket,
                )
                .values(last_seq=case((column < floor, floor), else_=column), updated_at=utc_now())
                .execution_options(synchronize_session=False)
            )

    def snapshot(self) -> Mapping[Tuple[str, str], int]:
        with self._session_factory() as session:
            stmt = select(
                RegistrationCounterModel.scope_key,
                RegistrationCounterModel.date_bucket,
                RegistrationCounterModel.last_seq,
            )
            return {(row.scope_key, row.date_bucket): int(row.last_seq) for row in session.execute(stmt)}

    # Internal helpers ----------------------------------------------------
    @staticmethod
    def _ensure_key(scope_key: str, date_bucket: str) -> None:
        if not isinstance(scope_key, str) or not SCOPE_KEY_PATTERN.fullmatch(scope_key):
            raise validation_failed(f"invalid scope key {scope_key!r}")
        if not isinstance(date_bucket, str) or not DATE_BUCKET_PATTERN.fullmatch(date_bucket):
            raise validation_failed(f"invalid date bucket {date_bucket!r}")

    @staticmethod
    def _increment_statement(session: Session, scope_key: str, date_bucket: str) -> Any:
        insert = _upsert_for(session.get_bind().dialect.name)
        table = RegistrationCounterModel.__table__
        now = utc_now()
        stmt = insert(table).values(scope_key=scope_key, date_bucket=date_bucket, last_seq=1, updated_at=now)
        return stmt.on_conflict_do_update(
            index_elements=[table.c.scope_key, table.c.date_bucket],
            set_={"last_seq": table.c.last_seq + 1, "updated_at": now},
        ).returning(table.c.last_seq)


__all__ = ["SqlAlchemySequenceAllocator"]
