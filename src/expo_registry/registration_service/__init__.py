# -*- coding: utf-8 -*-
"""Public entry-points for the registration integrity service."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.engine import Engine

from expo_registry.core.clock import build_system_clock
from expo_registry.infrastructure.persistence.session import make_engine, make_session_factory

from .config import ServiceConfig, load_from_env
from .coordinator import RegistrationWriteCoordinator
from .identity import SqlAlchemyVisitorIdentityStore
from .logging_utils import build_logger, make_hash_fn
from .metrics import DEFAULT_METERS
from .reconciler import IntegrityReconciler
from .sequence import SqlAlchemySequenceAllocator
from .types import RegistrationPayload, RegistrationResult


@dataclass(frozen=True, slots=True)
class _Runtime:
    config: ServiceConfig
    engine: Engine
    coordinator: RegistrationWriteCoordinator
    reconciler: IntegrityReconciler


@lru_cache(maxsize=1)
def _bootstrap() -> _Runtime:
    config = load_from_env()
    engine = make_engine(config.db_url)
    session_factory = make_session_factory(engine)
    logger = build_logger()
    hash_fn = make_hash_fn(config.pii_hash_salt)
    identity = SqlAlchemyVisitorIdentityStore(
        session_factory,
        meters=DEFAULT_METERS,
        logger=logger,
        hash_fn=hash_fn,
        max_attempts=config.max_attempts,
    )
    allocator = SqlAlchemySequenceAllocator(
        session_factory,
        meters=DEFAULT_METERS,
        logger=logger,
        max_attempts=config.max_attempts,
    )
    coordinator = RegistrationWriteCoordinator(
        session_factory=session_factory,
        identity=identity,
        allocator=allocator,
        meters=DEFAULT_METERS,
        logger=logger,
        hash_fn=hash_fn,
        clock=build_system_clock(config.timezone),
        embed_scope=config.embed_scope,
        sequence_width=config.sequence_width,
        max_attempts=config.max_attempts,
    )
    reconciler = IntegrityReconciler(
        session_factory, identity, meters=DEFAULT_METERS, logger=logger.bind(component="reconciler")
    )
    return _Runtime(config, engine, coordinator, reconciler)


def get_coordinator() -> RegistrationWriteCoordinator:
    return _bootstrap().coordinator


def get_reconciler() -> IntegrityReconciler:
    return _bootstrap().reconciler


def get_config() -> ServiceConfig:
    return _bootstrap().config


def get_engine() -> Engine:
    return _bootstrap().engine


def submit_registration(payload: RegistrationPayload) -> RegistrationResult:
    coordinator = get_coordinator()
    return coordinator.submit(payload)


def reset_runtime() -> None:
    """Drop the cached runtime so the next call re-reads the environment."""

    runtime = _bootstrap() if _bootstrap.cache_info().currsize else None
    _bootstrap.cache_clear()
    if runtime is not None:
        runtime.engine.dispose()


__all__ = [
    "get_config",
    "get_coordinator",
    "get_engine",
    "get_reconciler",
    "reset_runtime",
    "submit_registration",
]
