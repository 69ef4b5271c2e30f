# -*- coding: utf-8 -*-
"""Write path for a single registration submission."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from expo_registry.core.clock import Clock
from expo_registry.infrastructure.persistence.models import (
    REGISTRATION_SOURCES,
    ExhibitionModel,
    GlobalVisitorModel,
    RegistrationModel,
)
from expo_registry.infrastructure.persistence.session import session_scope

from .canonical_fields import split_custom_fields
from .errors import RegistrationServiceError, persist_conflict, validation_failed
from .faults import FaultInjector
from .identity import SqlAlchemyVisitorIdentityStore
from .types import (
    HashFunc,
    LoggerLike,
    MeterLike,
    PostCommitHook,
    RegistrationPayload,
    RegistrationResult,
    SequenceAllocator,
)
from .validation import (
    DEFAULT_SEQUENCE_WIDTH,
    date_bucket_for,
    derive_scope_key,
    ensure_valid_payload,
    format_registration_number,
    normalize,
    normalize_email,
    normalize_phone,
)


@dataclass(slots=True)
class RegistrationWriteCoordinator:
    """Orchestrates identity resolution, numbering and persistence of a registration.

    The registration row is the only write that must succeed. Aggregate counters
    and post-commit hooks run afterwards and can fail without affecting the
    returned result; the reconciler repairs whatever they leave behind.
    """

    session_factory: sessionmaker
    identity: SqlAlchemyVisitorIdentityStore
    allocator: SequenceAllocator
    meters: MeterLike
    logger: LoggerLike
    hash_fn: HashFunc
    clock: Clock
    embed_scope: bool = True
    sequence_width: int = DEFAULT_SEQUENCE_WIDTH
    max_attempts: int = 3
    hooks: Sequence[PostCommitHook] = ()
    fault_injector: FaultInjector = field(default_factory=FaultInjector)

    def submit(self, payload: RegistrationPayload) -> RegistrationResult:
        try:
            ensure_valid_payload(payload)
            if payload.registration_source not in REGISTRATION_SOURCES:
                raise validation_failed(f"unknown registration source {payload.registration_source!r}")
            exhibition_id, tagline = self._load_exhibition(normalize(payload.exhibition_id))
            scope_key = derive_scope_key(tagline, exhibition_id)
        except RegistrationServiceError as err:
            self.meters.record_validation_error(err.detail.code)
            self.meters.record_registration("rejected")
            self.logger.warning(
                "validation_failed",
                extra={"code": err.detail.code, "details": err.detail.details},
            )
            raise

        phone = normalize_phone(payload.contact.phone)
        hashed_phone = self.hash_fn(phone) if phone else None
        _, remaining = split_custom_fields(payload.custom_field_data)

        try:
            visitor_id = self.identity.resolve_or_create(
                payload.contact.phone, normalize_email(payload.contact.email), payload.custom_field_data
            )
            result, now = self._persist(payload, exhibition_id, scope_key, visitor_id, remaining)
        except RegistrationServiceError as err:
            self.meters.record_registration("failed")
            self.logger.error(
                "registration_failed",
                extra={
                    "code": err.detail.code,
                    "details": err.detail.details,
                    "exhibition_id": exhibition_id,
                    "phone": hashed_phone,
                },
            )
            raise

        self.meters.record_registration("success")
        self.logger.info(
            "registration_created",
            extra={
                "registration_number": result.registration_number,
                "visitor_id": visitor_id,
                "exhibition_id": exhibition_id,
                "attempts": result.attempts,
                "phone": hashed_phone,
            },
        )
        self._update_aggregates(result, now)
        self._run_hooks(result)
        return result

    # Internal helpers ----------------------------------------------------
    def _load_exhibition(self, exhibition_id: str) -> Tuple[str, Optional[str]]:
        with self.session_factory() as session:
            row = session.execute(
                select(ExhibitionModel.id, ExhibitionModel.tagline).where(ExhibitionModel.id == exhibition_id)
            ).one_or_none()
        if row is None:
            raise validation_failed(f"exhibition {exhibition_id} does not exist")
        return row.id, row.tagline

    def _persist(
        self,
        payload: RegistrationPayload,
        exhibition_id: str,
        scope_key: str,
        visitor_id: str,
        custom_field_data: dict,
    ) -> Tuple[RegistrationResult, dt.datetime]:
        last_error: Optional[IntegrityError] = None
        for attempt in range(1, self.max_attempts + 1):
            now = self.clock.now()
            date_bucket = date_bucket_for(now, self.clock.timezone)
            sequence = self.allocator.allocate(scope_key, date_bucket)
            number = format_registration_number(
                date_bucket,
                sequence,
                width=self.sequence_width,
                scope_key=scope_key if self.embed_scope else None,
            )
            registration = RegistrationModel(
                registration_number=number,
                visitor_id=visitor_id,
                exhibition_id=exhibition_id,
                registration_date=now,
                registration_category=normalize(payload.category),
                selected_interests=list(payload.selected_interests),
                custom_field_data=dict(custom_field_data),
                status="registered",
                registration_source=payload.registration_source,
                referral_source="exhibitor" if payload.exhibitor_id else "direct",
                exhibitor_id=payload.exhibitor_id,
            )
            with self.session_factory() as session:
                session.add(registration)
                try:
                    self.fault_injector.raise_if("duplicate_registration_number")
                    session.flush()
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    last_error = exc
                    conflict_type = self._classify_conflict(exc)
                    self.meters.record_conflict(conflict_type)
                    self.logger.warning(
                        "registration_persist_conflict",
                        extra={"registration_number": number, "type": conflict_type, "attempt": attempt},
                    )
                    if not self.embed_scope and conflict_type == "registration_number":
                        # Legacy numbers share one namespace per day across scopes; skip
                        # past every sequence any scope has issued for this day.
                        self.allocator.advance_to(scope_key, date_bucket, self.allocator.high_water(date_bucket))
                    continue
            result = RegistrationResult(
                registration_id=registration.id,
                registration_number=number,
                visitor_id=visitor_id,
                exhibition_id=exhibition_id,
                attempts=attempt,
            )
            return result, now
        raise persist_conflict(
            f"exhibition={exhibition_id} attempts={self.max_attempts}", cause=last_error
        )

    def _update_aggregates(self, result: RegistrationResult, registered_at: dt.datetime) -> None:
        try:
            with session_scope(self.session_factory) as session:
                self.fault_injector.raise_if("aggregate_failure")
                session.execute(
                    update(ExhibitionModel)
                    .where(ExhibitionModel.id == result.exhibition_id)
                    .values(current_registrations_count=ExhibitionModel.current_registrations_count + 1)
                )
                visitor = session.execute(
                    select(GlobalVisitorModel).where(GlobalVisitorModel.id == result.visitor_id).with_for_update()
                ).scalar_one_or_none()
                if visitor is not None:
                    last_seen = GlobalVisitorModel.last_registration_date
                    visitor.total_registrations = GlobalVisitorModel.total_registrations + 1
                    visitor.last_registration_date = case(
                        (or_(last_seen.is_(None), last_seen < registered_at), registered_at),
                        else_=last_seen,
                    )
                    exhibitions = sorted(set(visitor.registered_exhibitions or []) | {result.exhibition_id})
                    if exhibitions != list(visitor.registered_exhibitions or []):
                        visitor.registered_exhibitions = exhibitions
        except SQLAlchemyError as exc:
            self.meters.record_hook_failure("aggregates")
            self.logger.error(
                "aggregate_update_failed",
                extra={"registration_number": result.registration_number, "error": str(exc)},
            )

    def _run_hooks(self, result: RegistrationResult) -> None:
        for hook in self.hooks:
            name = getattr(hook, "__name__", type(hook).__name__)
            try:
                hook(result)
            except Exception as exc:  # noqa: BLE001 - hooks never fail a stored registration
                self.meters.record_hook_failure(name)
                self.logger.error(
                    "post_commit_hook_failed",
                    extra={"hook": name, "registration_number": result.registration_number, "error": repr(exc)},
                )

    @staticmethod
    def _classify_conflict(exc: IntegrityError) -> str:
        message = str(exc.orig or exc)
        if "registration_number" in message:
            return "registration_number"
        return "unknown"


__all__ = ["RegistrationWriteCoordinator"]
