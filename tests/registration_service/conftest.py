# -*- coding: utf-8 -*-
from __future__ import annotations

import datetime as dt
from collections.abc import Iterator
from typing import Any
from zoneinfo import ZoneInfo

import pytest
from prometheus_client import CollectorRegistry
from sqlalchemy.orm import Session, sessionmaker

from expo_registry.core.clock import FixedClock
from expo_registry.infrastructure.persistence.models import (
    Base,
    ExhibitionModel,
    GlobalVisitorModel,
    RegistrationModel,
)
from expo_registry.infrastructure.persistence.session import make_engine, make_session_factory
from expo_registry.registration_service.coordinator import RegistrationWriteCoordinator
from expo_registry.registration_service.faults import FaultInjector
from expo_registry.registration_service.identity import SqlAlchemyVisitorIdentityStore
from expo_registry.registration_service.logging_utils import StructuredLogger, build_logger, make_hash_fn
from expo_registry.registration_service.metrics import RegistrationMeters
from expo_registry.registration_service.reconciler import IntegrityReconciler
from expo_registry.registration_service.sequence import SqlAlchemySequenceAllocator

IST = ZoneInfo("Asia/Kolkata")
REGISTRATION_DAY = dt.datetime(2025, 1, 15, 10, 30, tzinfo=IST)


@pytest.fixture()
def engine(tmp_path) -> Iterator:
    db_path = tmp_path / "test.sqlite"
    engine = make_engine(f"sqlite+pysqlite:///{db_path}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return make_session_factory(engine)


@pytest.fixture()
def session(session_factory: sessionmaker) -> Iterator[Session]:
    with session_factory() as sess:
        yield sess


@pytest.fixture()
def fault_injector() -> FaultInjector:
    return FaultInjector()


@pytest.fixture()
def meters() -> RegistrationMeters:
    return RegistrationMeters(CollectorRegistry())


@pytest.fixture()
def logger() -> StructuredLogger:
    return build_logger("test-registration-service")


@pytest.fixture()
def hash_fn():
    return make_hash_fn("test-salt")


@pytest.fixture()
def clock() -> FixedClock:
    return FixedClock(REGISTRATION_DAY)


@pytest.fixture()
def allocator(session_factory, meters, logger, fault_injector) -> SqlAlchemySequenceAllocator:
    return SqlAlchemySequenceAllocator(
        session_factory, meters=meters, logger=logger, fault_injector=fault_injector
    )


@pytest.fixture()
def identity(session_factory, meters, logger, hash_fn, fault_injector) -> SqlAlchemyVisitorIdentityStore:
    return SqlAlchemyVisitorIdentityStore(
        session_factory,
        meters=meters,
        logger=logger,
        hash_fn=hash_fn,
        fault_injector=fault_injector,
    )


@pytest.fixture()
def coordinator(
    session_factory, identity, allocator, meters, logger, hash_fn, clock, fault_injector
) -> RegistrationWriteCoordinator:
    return RegistrationWriteCoordinator(
        session_factory=session_factory,
        identity=identity,
        allocator=allocator,
        meters=meters,
        logger=logger,
        hash_fn=hash_fn,
        clock=clock,
        fault_injector=fault_injector,
    )


@pytest.fixture()
def reconciler(session_factory, identity, meters, logger) -> IntegrityReconciler:
    return IntegrityReconciler(session_factory, identity, meters=meters, logger=logger)


def metric_value(counter, **labels) -> float:
    sample = counter.labels(**labels) if labels else counter
    return sample._value.get()  # type: ignore[attr-defined]


def seed_exhibition(
    session: Session, exhibition_id: str, *, name: str = "Tech Expo", tagline: str | None = "TECHEXPO"
) -> ExhibitionModel:
    exhibition = ExhibitionModel(id=exhibition_id, name=name, tagline=tagline, current_registrations_count=0)
    session.add(exhibition)
    session.commit()
    return exhibition


def seed_visitor(
    session: Session,
    *,
    phone: str | None = None,
    created_at: dt.datetime | None = None,
    **fields: Any,
) -> GlobalVisitorModel:
    visitor = GlobalVisitorModel(
        phone=phone,
        attributes=fields.pop("attributes", {}),
        registered_exhibitions=[],
        total_registrations=0,
        created_at=created_at or dt.datetime(2024, 12, 1, tzinfo=dt.UTC),
        **fields,
    )
    session.add(visitor)
    session.commit()
    return visitor


def seed_registration(
    session: Session,
    *,
    visitor_id: str,
    exhibition_id: str,
    number: str,
    status: str = "registered",
    category: str = "visitor",
    custom_field_data: dict | None = None,
    registration_date: dt.datetime | None = None,
) -> RegistrationModel:
    registration = RegistrationModel(
        registration_number=number,
        visitor_id=visitor_id,
        exhibition_id=exhibition_id,
        registration_date=registration_date or REGISTRATION_DAY,
        registration_category=category,
        selected_interests=[],
        custom_field_data=custom_field_data or {},
        status=status,
    )
    session.add(registration)
    session.commit()
    return registration
