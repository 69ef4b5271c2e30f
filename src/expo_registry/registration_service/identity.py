# -*- coding: utf-8 -*-
"""SQLAlchemy-backed visitor identity resolution, merging and field repair."""
from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from expo_registry.infrastructure.persistence.models import GlobalVisitorModel, RegistrationModel
from expo_registry.infrastructure.persistence.session import session_scope

from .canonical_fields import CANONICAL_ATTRIBUTES, IDENTITY_ATTRIBUTES, canonical_name_for, split_custom_fields
from .errors import (
    identity_race_conflict,
    merge_ambiguous,
    persist_conflict,
    referential_integrity_violation,
    registration_not_found,
    validation_failed,
    visitor_not_found,
)
from .faults import FaultInjector
from .logging_utils import make_hash_fn
from .metrics import DEFAULT_METERS
from .types import (
    CustomFieldOutcome,
    FieldMap,
    FieldValue,
    HashFunc,
    LoggerLike,
    MeterLike,
    VisitorAggregates,
    VisitorCandidate,
)
from .validation import is_empty, normalize, normalize_email, normalize_phone


def _as_text(value: FieldValue) -> Optional[str]:
    if is_empty(value):
        return None
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    text = normalize(value)
    return text or None


def fill_visitor(
    visitor: GlobalVisitorModel,
    canonical: Mapping[str, FieldValue],
    dynamic: Optional[FieldMap] = None,
) -> List[str]:
    """Copy values onto ``visitor`` only where the target is currently empty.

    ``canonical`` is keyed by canonical attribute name. The phone identity key is
    never written here. Returns the names of the fields that were filled.
    """

    filled: List[str] = []
    for name in CANONICAL_ATTRIBUTES:
        if name in IDENTITY_ATTRIBUTES or name not in canonical:
            continue
        value = canonical[name]
        text = normalize_email(value) if name == "email" else _as_text(value)
        if text is None or not is_empty(getattr(visitor, name)):
            continue
        setattr(visitor, name, text)
        filled.append(name)

    if dynamic:
        current = dict(visitor.attributes or {})
        added = [key for key, value in dynamic.items() if not is_empty(value) and is_empty(current.get(key))]
        if added:
            current.update((key, dynamic[key]) for key in added)
            # JSON columns only notice reassignment, not in-place mutation.
            visitor.attributes = current
            filled.extend(added)
    return filled


def _visitor_as_canonical(visitor: GlobalVisitorModel) -> Dict[str, FieldValue]:
    return {name: getattr(visitor, name) for name in CANONICAL_ATTRIBUTES if name not in IDENTITY_ATTRIBUTES}


def aggregate_registration_rows(visitor_id: str, rows: Sequence[Any]) -> VisitorAggregates:
    """Fold ``(exhibition_id, registration_date)`` rows into a visitor's aggregates."""

    dates = [row.registration_date for row in rows if row.registration_date is not None]
    return VisitorAggregates(
        visitor_id=visitor_id,
        total_registrations=len(rows),
        last_registration_date=max(dates) if dates else None,
        registered_exhibitions=tuple(sorted({row.exhibition_id for row in rows})),
    )


def compute_visitor_aggregates(session: Session, visitor_id: str) -> VisitorAggregates:
    """Derive a visitor's aggregates from ``registrations`` alone."""

    rows = session.execute(
        select(RegistrationModel.exhibition_id, RegistrationModel.registration_date).where(
            RegistrationModel.visitor_id == visitor_id
        )
    ).all()
    return aggregate_registration_rows(visitor_id, rows)


def apply_visitor_aggregates(visitor: GlobalVisitorModel, aggregates: VisitorAggregates) -> bool:
    """Write ``aggregates`` onto ``visitor``; return whether anything changed."""

    exhibitions = list(aggregates.registered_exhibitions)
    changed = (
        visitor.total_registrations != aggregates.total_registrations
        or visitor.last_registration_date != aggregates.last_registration_date
        or list(visitor.registered_exhibitions or []) != exhibitions
    )
    if changed:
        visitor.total_registrations = aggregates.total_registrations
        visitor.last_registration_date = aggregates.last_registration_date
        visitor.registered_exhibitions = exhibitions
    return changed


def choose_survivor(candidates: Sequence[VisitorCandidate]) -> VisitorCandidate:
    """Pick the visitor row to keep among rows sharing a phone.

    More referencing registrations wins; ties go to the earliest ``created_at``.
    Two leaders tied on both criteria need an operator decision.
    """

    if not candidates:
        raise validation_failed("no candidates to choose from")
    ranked = sorted(candidates, key=lambda item: (-item.registration_count, item.created_at, item.visitor_id))
    if len(ranked) > 1:
        first, second = ranked[0], ranked[1]
        if first.registration_count == second.registration_count and first.created_at == second.created_at:
            raise merge_ambiguous(
                f"visitors {first.visitor_id} and {second.visitor_id} tie on registrations and created_at"
            )
    return ranked[0]


class SqlAlchemyVisitorIdentityStore:
    """Resolves contact details to exactly one canonical visitor row.

    Deduplication relies on the sparse UNIQUE constraint on ``phone``: concurrent
    creators for the same phone race on the insert, and the loser discards its
    row and adopts the winner's instead.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        meters: MeterLike = DEFAULT_METERS,
        logger: Optional[LoggerLike] = None,
        hash_fn: Optional[HashFunc] = None,
        fault_injector: Optional[FaultInjector] = None,
        max_attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._meters = meters
        self._logger = logger
        self._hash = hash_fn or make_hash_fn("")
        self._faults = fault_injector or FaultInjector()
        self._max_attempts = max(1, max_attempts)

    # Public API -----------------------------------------------------------
    def resolve_or_create(
        self,
        phone: Optional[str],
        email: Optional[str],
        attributes: Optional[FieldMap] = None,
    ) -> str:
        canonical, dynamic = split_custom_fields(attributes or {})
        normalized_email = normalize_email(email)
        if normalized_email is not None:
            canonical["email"] = normalized_email
        normalized_phone = normalize_phone(phone)

        if normalized_phone is None:
            with self._session_factory() as session:
                visitor = self._new_visitor(None)
                fill_visitor(visitor, canonical, dynamic)
                session.add(visitor)
                session.commit()
            self._meters.record_identity("anonymous")
            self._log("info", "visitor_created", visitor_id=visitor.id, phone=None)
            return visitor.id

        last_error: Optional[IntegrityError] = None
        for attempt in range(1, self._max_attempts + 1):
            with self._session_factory() as session:
                existing = self._find_by_phone(session, normalized_phone)
                if existing is not None:
                    filled = fill_visitor(existing, canonical, dynamic)
                    session.commit()
                    outcome = "matched" if last_error is None else "race_recovered"
                    self._meters.record_identity(outcome)
                    self._log(
                        "info",
                        f"visitor_{outcome}",
                        visitor_id=existing.id,
                        phone=self._hash(normalized_phone),
                        filled=filled,
                    )
                    return existing.id

                visitor = self._new_visitor(normalized_phone)
                fill_visitor(visitor, canonical, dynamic)
                session.add(visitor)
                try:
                    self._faults.raise_if("duplicate_phone")
                    session.flush()
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    if self._classify_conflict(exc) != "phone":
                        raise persist_conflict("visitor insert failed", cause=exc) from exc
                    last_error = exc
                    self._meters.record_conflict("phone")
                    self._log(
                        "warning",
                        "identity_race",
                        phone=self._hash(normalized_phone),
                        attempt=attempt,
                    )
                    continue
            self._meters.record_identity("created")
            self._log("info", "visitor_created", visitor_id=visitor.id, phone=self._hash(normalized_phone))
            return visitor.id

        self._meters.record_identity("race_exhausted")
        raise identity_race_conflict(
            f"phone={self._hash(normalized_phone)} attempts={self._max_attempts}", cause=last_error
        )

    def merge_duplicate(self, keep_id: str, merge_id: str) -> VisitorAggregates:
        """Fold ``merge_id`` into ``keep_id`` in a single transaction."""

        if keep_id == merge_id:
            raise validation_failed("cannot merge a visitor into itself")
        with session_scope(self._session_factory) as session:
            keep = session.get(GlobalVisitorModel, keep_id)
            if keep is None:
                raise visitor_not_found(f"keep visitor {keep_id} does not exist")
            merge = session.get(GlobalVisitorModel, merge_id)
            if merge is None:
                raise visitor_not_found(f"merge visitor {merge_id} does not exist")

            filled = fill_visitor(keep, _visitor_as_canonical(merge), merge.attributes or {})
            moved = session.execute(
                update(RegistrationModel)
                .where(RegistrationModel.visitor_id == merge_id)
                .values(visitor_id=keep_id)
                .execution_options(synchronize_session=False)
            ).rowcount
            session.delete(merge)
            session.flush()
            aggregates = compute_visitor_aggregates(session, keep_id)
            apply_visitor_aggregates(keep, aggregates)

        self._log(
            "info",
            "visitor_merged",
            keep_id=keep_id,
            merge_id=merge_id,
            moved_registrations=moved,
            filled=filled,
        )
        return aggregates

    def candidates_for(self, visitor_ids: Iterable[str]) -> List[VisitorCandidate]:
        ids = list(visitor_ids)
        if not ids:
            return []
        with self._session_factory() as session:
            stmt = (
                select(
                    GlobalVisitorModel.id,
                    GlobalVisitorModel.created_at,
                    func.count(RegistrationModel.id).label("registration_count"),
                )
                .outerjoin(RegistrationModel, RegistrationModel.visitor_id == GlobalVisitorModel.id)
                .where(GlobalVisitorModel.id.in_(ids))
                .group_by(GlobalVisitorModel.id, GlobalVisitorModel.created_at)
                .order_by(GlobalVisitorModel.id)
            )
            return [
                VisitorCandidate(
                    visitor_id=row.id,
                    registration_count=int(row.registration_count),
                    created_at=row.created_at,
                )
                for row in session.execute(stmt)
            ]

    def reconcile_custom_fields(self, registration_id: str) -> CustomFieldOutcome:
        """Move canonical keys out of a registration's custom data onto its visitor."""

        with session_scope(self._session_factory) as session:
            registration = session.get(RegistrationModel, registration_id)
            if registration is None:
                raise registration_not_found(f"registration {registration_id} does not exist")
            visitor = session.get(GlobalVisitorModel, registration.visitor_id)
            if visitor is None:
                raise referential_integrity_violation(
                    f"registration {registration_id} references missing visitor {registration.visitor_id}"
                )

            data = dict(registration.custom_field_data or {})
            remaining: Dict[str, FieldValue] = {}
            removed: List[str] = []
            copied: List[str] = []
            for key, value in data.items():
                name = canonical_name_for(key)
                if name is None:
                    remaining[key] = value
                    continue
                removed.append(key)
                if name in IDENTITY_ATTRIBUTES:
                    continue
                copied.extend(fill_visitor(visitor, {name: value}))
            if removed:
                registration.custom_field_data = remaining

        outcome = CustomFieldOutcome(registration_id, tuple(removed), tuple(copied))
        if outcome.changed:
            self._log(
                "info",
                "custom_fields_reconciled",
                registration_id=registration_id,
                removed=list(outcome.removed_keys),
                copied=list(outcome.copied_fields),
            )
        return outcome

    def recompute_aggregates(self, visitor_id: str) -> VisitorAggregates:
        with session_scope(self._session_factory) as session:
            visitor = session.get(GlobalVisitorModel, visitor_id)
            if visitor is None:
                raise visitor_not_found(f"visitor {visitor_id} does not exist")
            aggregates = compute_visitor_aggregates(session, visitor_id)
            apply_visitor_aggregates(visitor, aggregates)
        return aggregates

    # Internal helpers ----------------------------------------------------
    @staticmethod
    def _new_visitor(phone: Optional[str]) -> GlobalVisitorModel:
        return GlobalVisitorModel(
            phone=phone,
            attributes={},
            registered_exhibitions=[],
            total_registrations=0,
        )

    @staticmethod
    def _find_by_phone(session: Session, phone: str) -> Optional[GlobalVisitorModel]:
        return session.execute(
            select(GlobalVisitorModel).where(GlobalVisitorModel.phone == phone)
        ).scalar_one_or_none()

    @staticmethod
    def _classify_conflict(exc: IntegrityError) -> str:
        message = str(exc.orig or exc)
        if "phone" in message:
            return "phone"
        return "unknown"

    def _log(self, level: str, msg: str, **extra: object) -> None:
        if self._logger is not None:
            getattr(self._logger, level)(msg, extra=extra)


__all__ = [
    "SqlAlchemyVisitorIdentityStore",
    "aggregate_registration_rows",
    "apply_visitor_aggregates",
    "choose_survivor",
    "compute_visitor_aggregates",
    "fill_visitor",
]
