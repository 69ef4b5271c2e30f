# -*- coding: utf-8 -*-
"""Offline detection and repair of drift in persisted registration state.

Every operation derives its answer from the current rows, so running one twice
is harmless. Operations that delete or merge rows default to a dry run and only
mutate when called with ``apply=True``; each applied mutation is logged and
counted under its operation label.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.orm import Session, sessionmaker

from expo_registry.infrastructure.persistence.models import ExhibitionModel, GlobalVisitorModel, RegistrationModel
from expo_registry.infrastructure.persistence.session import session_scope

from .canonical_fields import is_canonical_field
from .errors import RegistrationServiceError, referential_integrity_violation, validation_failed
from .identity import (
    SqlAlchemyVisitorIdentityStore,
    aggregate_registration_rows,
    apply_visitor_aggregates,
    compute_visitor_aggregates,
    choose_survivor,
)
from .metrics import DEFAULT_METERS
from .types import ErrorDetail, LoggerLike, MeterLike, VisitorAggregates
from .validation import normalize, normalize_phone

CANCELLED_STATUS = "cancelled"


@dataclass(frozen=True, slots=True)
class ReconcileReport:
    operation: str
    applied: bool
    affected: Tuple[str, ...] = ()
    errors: Tuple[ErrorDetail, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "applied": self.applied,
            "affected": list(self.affected),
            "errors": [{"code": err.code, "details": err.details} for err in self.errors],
        }


@dataclass(frozen=True, slots=True)
class DuplicateRegistrationGroup:
    """Registrations sharing a ``(visitor_id, exhibition_id)`` pair.

    ``registrations`` holds ``(registration_id, registration_number, category)``
    triples ordered by creation time.
    """

    visitor_id: str
    exhibition_id: str
    registrations: Tuple[Tuple[str, str, str], ...]

    @property
    def registration_ids(self) -> Tuple[str, ...]:
        return tuple(item[0] for item in self.registrations)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "visitorId": self.visitor_id,
            "exhibitionId": self.exhibition_id,
            "registrations": [
                {"id": reg_id, "registrationNumber": number, "category": category}
                for reg_id, number, category in self.registrations
            ],
        }


@dataclass(frozen=True, slots=True)
class DuplicateNumberGroup:
    registration_number: str
    registration_ids: Tuple[str, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {"registrationNumber": self.registration_number, "registrationIds": list(self.registration_ids)}


@dataclass(frozen=True, slots=True)
class ExhibitionCount:
    exhibition_id: str
    current_registrations_count: int

    def as_dict(self) -> Dict[str, Any]:
        return {"exhibitionId": self.exhibition_id, "currentRegistrationsCount": self.current_registrations_count}


@dataclass(frozen=True, slots=True)
class FullPassReport:
    applied: bool
    orphan_registrations: ReconcileReport
    custom_fields: ReconcileReport
    duplicate_visitors: ReconcileReport
    duplicate_registrations: Tuple[DuplicateRegistrationGroup, ...]
    orphan_visitors: ReconcileReport
    visitor_aggregates: Tuple[VisitorAggregates, ...]
    exhibition_counts: Tuple[ExhibitionCount, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "orphanRegistrations": self.orphan_registrations.as_dict(),
            "customFields": self.custom_fields.as_dict(),
            "duplicateVisitors": self.duplicate_visitors.as_dict(),
            "duplicateRegistrations": [group.as_dict() for group in self.duplicate_registrations],
            "orphanVisitors": self.orphan_visitors.as_dict(),
            "visitorAggregates": [item.as_dict() for item in self.visitor_aggregates],
            "exhibitionCounts": [item.as_dict() for item in self.exhibition_counts],
        }


def _visitor_missing():
    return ~exists().where(GlobalVisitorModel.id == RegistrationModel.visitor_id)


def _has_no_registrations():
    return ~exists().where(RegistrationModel.visitor_id == GlobalVisitorModel.id)


class IntegrityReconciler:
    """Detects and repairs orphans, duplicates and stale aggregates."""

    def __init__(
        self,
        session_factory: sessionmaker,
        identity: SqlAlchemyVisitorIdentityStore,
        *,
        meters: MeterLike = DEFAULT_METERS,
        logger: Optional[LoggerLike] = None,
    ) -> None:
        self._session_factory = session_factory
        self._identity = identity
        self._meters = meters
        self._logger = logger

    # Orphans -------------------------------------------------------------
    def find_orphan_registrations(self, apply: bool = False) -> ReconcileReport:
        operation = "orphan_registrations"
        with self._session_factory() as session:
            rows = session.execute(
                select(RegistrationModel.id, RegistrationModel.visitor_id)
                .where(_visitor_missing())
                .order_by(RegistrationModel.id)
            ).all()
        ids = tuple(row.id for row in rows)
        errors = tuple(
            referential_integrity_violation(f"registration {row.id} references missing visitor {row.visitor_id}").detail
            for row in rows
        )
        if apply and ids:
            with session_scope(self._session_factory) as session:
                session.execute(
                    delete(RegistrationModel)
                    .where(RegistrationModel.id.in_(ids), _visitor_missing())
                    .execution_options(synchronize_session=False)
                )
            self._record(operation, ids)
        return ReconcileReport(operation, apply, ids, errors)

    def find_orphan_visitors(self, apply: bool = False) -> ReconcileReport:
        operation = "orphan_visitors"
        with self._session_factory() as session:
            ids = tuple(
                session.execute(
                    select(GlobalVisitorModel.id).where(_has_no_registrations()).order_by(GlobalVisitorModel.id)
                ).scalars()
            )
        if apply and ids:
            with session_scope(self._session_factory) as session:
                session.execute(
                    delete(GlobalVisitorModel)
                    .where(GlobalVisitorModel.id.in_(ids), _has_no_registrations())
                    .execution_options(synchronize_session=False)
                )
            self._record(operation, ids)
        return ReconcileReport(operation, apply, ids)

    # Duplicates ----------------------------------------------------------
    def find_duplicate_visitors_by_phone(self, apply: bool = False) -> ReconcileReport:
        """Merge visitor rows whose phones normalize to the same digits."""

        operation = "duplicate_visitors"
        groups: Dict[str, List[Tuple[str, str]]] = defaultdict(list)
        with self._session_factory() as session:
            rows = session.execute(
                select(GlobalVisitorModel.id, GlobalVisitorModel.phone)
                .where(GlobalVisitorModel.phone.is_not(None))
                .order_by(GlobalVisitorModel.id)
            ).all()
        for row in rows:
            phone = normalize_phone(row.phone)
            if phone is not None:
                groups[phone].append((row.id, row.phone))

        merged: List[str] = []
        errors: List[ErrorDetail] = []
        for phone in sorted(groups):
            members = groups[phone]
            if len(members) == 1:
                visitor_id, stored = members[0]
                if apply and stored != phone:
                    self._normalize_phone(visitor_id, phone)
                continue
            try:
                survivor = choose_survivor(self._identity.candidates_for(member for member, _ in members))
            except RegistrationServiceError as err:
                errors.append(err.detail)
                continue
            losers = sorted(member for member, _ in members if member != survivor.visitor_id)
            if not apply:
                merged.extend(losers)
                continue
            complete = True
            for loser in losers:
                try:
                    self._identity.merge_duplicate(survivor.visitor_id, loser)
                except RegistrationServiceError as err:
                    errors.append(err.detail)
                    complete = False
                    continue
                merged.append(loser)
                self._log_mutation(operation, loser, keep_id=survivor.visitor_id)
            # An unmerged loser may still hold the normalized phone.
            if complete:
                self._normalize_phone(survivor.visitor_id, phone)
        if apply:
            self._meters.record_reconciler_mutation(operation, len(merged))
        return ReconcileReport(operation, apply, tuple(merged), tuple(errors))

    def find_duplicate_registrations(self) -> Tuple[DuplicateRegistrationGroup, ...]:
        """Report registrations sharing a visitor and exhibition. Never mutates."""

        with self._session_factory() as session:
            pairs = (
                select(RegistrationModel.visitor_id, RegistrationModel.exhibition_id)
                .group_by(RegistrationModel.visitor_id, RegistrationModel.exhibition_id)
                .having(func.count(RegistrationModel.id) > 1)
                .subquery()
            )
            rows = session.execute(
                select(
                    RegistrationModel.id,
                    RegistrationModel.visitor_id,
                    RegistrationModel.exhibition_id,
                    RegistrationModel.registration_number,
                    RegistrationModel.registration_category,
                )
                .join(
                    pairs,
                    (pairs.c.visitor_id == RegistrationModel.visitor_id)
                    & (pairs.c.exhibition_id == RegistrationModel.exhibition_id),
                )
                .order_by(
                    RegistrationModel.visitor_id,
                    RegistrationModel.exhibition_id,
                    RegistrationModel.created_at,
                    RegistrationModel.id,
                )
            ).all()
        grouped: Dict[Tuple[str, str], List[Tuple[str, str, str]]] = defaultdict(list)
        for row in rows:
            grouped[(row.visitor_id, row.exhibition_id)].append(
                (row.id, row.registration_number, row.registration_category)
            )
        return tuple(
            DuplicateRegistrationGroup(visitor_id, exhibition_id, tuple(items))
            for (visitor_id, exhibition_id), items in sorted(grouped.items())
        )

    def delete_confirmed_duplicate_registrations(
        self, registration_ids: Sequence[str], operator: str
    ) -> ReconcileReport:
        """Delete operator-confirmed duplicates, keeping one registration per group."""

        operation = "confirmed_duplicate_registrations"
        operator = normalize(operator)
        if not operator:
            raise validation_failed("an operator name is required to delete registrations")
        requested = sorted(set(registration_ids))
        if not requested:
            return ReconcileReport(operation, True)

        owner: Dict[str, DuplicateRegistrationGroup] = {}
        for group in self.find_duplicate_registrations():
            for reg_id in group.registration_ids:
                owner[reg_id] = group
        unknown = [reg_id for reg_id in requested if reg_id not in owner]
        if unknown:
            raise validation_failed(f"not part of a detected duplicate group: {', '.join(unknown)}")
        for group in set(owner.values()):
            if set(group.registration_ids) <= set(requested):
                raise validation_failed(
                    f"refusing to delete every registration of visitor {group.visitor_id} "
                    f"for exhibition {group.exhibition_id}"
                )

        visitors = sorted({owner[reg_id].visitor_id for reg_id in requested})
        exhibitions = sorted({owner[reg_id].exhibition_id for reg_id in requested})
        with session_scope(self._session_factory) as session:
            session.execute(
                delete(RegistrationModel)
                .where(RegistrationModel.id.in_(requested))
                .execution_options(synchronize_session=False)
            )
            for visitor_id in visitors:
                visitor = session.get(GlobalVisitorModel, visitor_id)
                if visitor is not None:
                    apply_visitor_aggregates(visitor, compute_visitor_aggregates(session, visitor_id))
            counts = self._counts_for(session)
            for exhibition_id in exhibitions:
                self._store_exhibition_count(session, exhibition_id, counts.get(exhibition_id, 0))
        self._record(operation, tuple(requested), operator=operator)
        return ReconcileReport(operation, True, tuple(requested))

    def find_duplicate_registration_numbers(self) -> Tuple[DuplicateNumberGroup, ...]:
        """Audit registration number uniqueness on stores lacking the constraint."""

        with self._session_factory() as session:
            numbers = (
                select(RegistrationModel.registration_number)
                .group_by(RegistrationModel.registration_number)
                .having(func.count(RegistrationModel.id) > 1)
                .subquery()
            )
            rows = session.execute(
                select(RegistrationModel.registration_number, RegistrationModel.id)
                .where(RegistrationModel.registration_number.in_(select(numbers.c.registration_number)))
                .order_by(RegistrationModel.registration_number, RegistrationModel.id)
            ).all()
        grouped: Dict[str, List[str]] = defaultdict(list)
        for row in rows:
            grouped[row.registration_number].append(row.id)
        return tuple(DuplicateNumberGroup(number, tuple(ids)) for number, ids in sorted(grouped.items()))

    # Custom fields -------------------------------------------------------
    def reconcile_all_custom_fields(self, apply: bool = False) -> ReconcileReport:
        operation = "custom_fields"
        with self._session_factory() as session:
            rows = session.execute(
                select(RegistrationModel.id, RegistrationModel.custom_field_data).order_by(RegistrationModel.id)
            ).all()
        pending = [row.id for row in rows if any(is_canonical_field(key) for key in (row.custom_field_data or {}))]
        if not apply:
            return ReconcileReport(operation, False, tuple(pending))

        changed: List[str] = []
        errors: List[ErrorDetail] = []
        for registration_id in pending:
            try:
                outcome = self._identity.reconcile_custom_fields(registration_id)
            except RegistrationServiceError as err:
                errors.append(err.detail)
                continue
            if outcome.changed:
                changed.append(registration_id)
        self._meters.record_reconciler_mutation(operation, len(changed))
        return ReconcileReport(operation, True, tuple(changed), tuple(errors))

    # Aggregates ----------------------------------------------------------
    def recompute_visitor_aggregates(self, apply: bool = True) -> Tuple[VisitorAggregates, ...]:
        """Rebuild every visitor's aggregates from ``registrations`` alone."""

        operation = "visitor_aggregates"
        updated: List[str] = []
        with session_scope(self._session_factory) as session:
            visitors = session.execute(select(GlobalVisitorModel).order_by(GlobalVisitorModel.id)).scalars().all()
            aggregates = self._aggregates_for(session, [visitor.id for visitor in visitors])
            for visitor in visitors:
                if apply and apply_visitor_aggregates(visitor, aggregates[visitor.id]):
                    updated.append(visitor.id)
        if updated:
            self._record(operation, tuple(updated))
        return tuple(aggregates[visitor.id] for visitor in visitors)

    def recompute_exhibition_counts(self, apply: bool = True) -> Tuple[ExhibitionCount, ...]:
        """Rebuild exhibition counters from non-cancelled registrations."""

        operation = "exhibition_counts"
        updated: List[str] = []
        with session_scope(self._session_factory) as session:
            counts = self._counts_for(session)
            exhibitions = session.execute(
                select(ExhibitionModel.id, ExhibitionModel.current_registrations_count).order_by(ExhibitionModel.id)
            ).all()
            report = tuple(ExhibitionCount(row.id, counts.get(row.id, 0)) for row in exhibitions)
            for row, expected in zip(exhibitions, report):
                if apply and row.current_registrations_count != expected.current_registrations_count:
                    self._store_exhibition_count(session, row.id, expected.current_registrations_count)
                    updated.append(row.id)
        if updated:
            self._record(operation, tuple(updated))
        return report

    def run_full_pass(self, apply: bool = False) -> FullPassReport:
        """Run every check in dependency order: rows first, then aggregates."""

        orphan_registrations = self.find_orphan_registrations(apply)
        custom_fields = self.reconcile_all_custom_fields(apply)
        duplicate_visitors = self.find_duplicate_visitors_by_phone(apply)
        duplicate_registrations = self.find_duplicate_registrations()
        orphan_visitors = self.find_orphan_visitors(apply)
        visitor_aggregates = self.recompute_visitor_aggregates(apply)
        exhibition_counts = self.recompute_exhibition_counts(apply)
        report = FullPassReport(
            applied=apply,
            orphan_registrations=orphan_registrations,
            custom_fields=custom_fields,
            duplicate_visitors=duplicate_visitors,
            duplicate_registrations=duplicate_registrations,
            orphan_visitors=orphan_visitors,
            visitor_aggregates=visitor_aggregates,
            exhibition_counts=exhibition_counts,
        )
        if self._logger is not None:
            self._logger.info(
                "reconcile_pass_finished",
                extra={
                    "applied": apply,
                    "orphan_registrations": len(orphan_registrations.affected),
                    "custom_fields": len(custom_fields.affected),
                    "duplicate_visitors": len(duplicate_visitors.affected),
                    "duplicate_registration_groups": len(duplicate_registrations),
                    "orphan_visitors": len(orphan_visitors.affected),
                },
            )
        return report

    # Internal helpers ----------------------------------------------------
    @staticmethod
    def _aggregates_for(session: Session, visitor_ids: Iterable[str]) -> Dict[str, VisitorAggregates]:
        ids = list(visitor_ids)
        rows = session.execute(
            select(RegistrationModel.visitor_id, RegistrationModel.exhibition_id, RegistrationModel.registration_date)
        ).all()
        by_visitor: Dict[str, List[Any]] = defaultdict(list)
        for row in rows:
            by_visitor[row.visitor_id].append(row)
        return {visitor_id: aggregate_registration_rows(visitor_id, by_visitor.get(visitor_id, [])) for visitor_id in ids}

    @staticmethod
    def _counts_for(session: Session) -> Dict[str, int]:
        rows = session.execute(
            select(RegistrationModel.exhibition_id, func.count(RegistrationModel.id))
            .where(RegistrationModel.status != CANCELLED_STATUS)
            .group_by(RegistrationModel.exhibition_id)
        ).all()
        return {exhibition_id: int(count) for exhibition_id, count in rows}

    @staticmethod
    def _store_exhibition_count(session: Session, exhibition_id: str, count: int) -> None:
        session.execute(
            update(ExhibitionModel)
            .where(ExhibitionModel.id == exhibition_id)
            .values(current_registrations_count=count)
            .execution_options(synchronize_session=False)
        )

    def _normalize_phone(self, visitor_id: str, phone: str) -> None:
        with session_scope(self._session_factory) as session:
            changed = session.execute(
                update(GlobalVisitorModel)
                .where(GlobalVisitorModel.id == visitor_id, GlobalVisitorModel.phone != phone)
                .values(phone=phone)
                .execution_options(synchronize_session=False)
            ).rowcount
        if changed:
            self._record("phone_normalized", (visitor_id,))

    def _record(self, operation: str, ids: Tuple[str, ...], **extra: Any) -> None:
        self._meters.record_reconciler_mutation(operation, len(ids))
        for item in ids:
            self._log_mutation(operation, item, **extra)

    def _log_mutation(self, operation: str, target: str, **extra: Any) -> None:
        if self._logger is not None:
            self._logger.info("reconciler_mutation", extra={"operation": operation, "target": target, **extra})


__all__ = [
    "DuplicateNumberGroup",
    "DuplicateRegistrationGroup",
    "ExhibitionCount",
    "FullPassReport",
    "IntegrityReconciler",
    "ReconcileReport",
]
