# -*- coding: utf-8 -*-
from __future__ import annotations

import datetime as dt
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from expo_registry.infrastructure.persistence.models import GlobalVisitorModel, RegistrationModel
from expo_registry.registration_service.errors import RegistrationServiceError
from expo_registry.registration_service.identity import SqlAlchemyVisitorIdentityStore, choose_survivor
from expo_registry.registration_service.types import VisitorCandidate

from .conftest import metric_value, seed_exhibition, seed_registration, seed_visitor


def _visitor(session_factory, visitor_id: str) -> GlobalVisitorModel | None:
    with session_factory() as session:
        return session.get(GlobalVisitorModel, visitor_id)


def _visitor_count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count(GlobalVisitorModel.id))).scalar_one()


def test_same_phone_in_different_formats_resolves_to_one_visitor(
    identity: SqlAlchemyVisitorIdentityStore, session_factory, meters
) -> None:
    first = identity.resolve_or_create("+91 98765 43210", "Asha@Example.com", {"Full Name": "Asha Rao"})
    second = identity.resolve_or_create("9876543210", None, {})
    assert first == second
    visitor = _visitor(session_factory, first)
    assert visitor.phone == "9876543210"
    assert visitor.email == "asha@example.com"
    assert visitor.name == "Asha Rao"
    assert metric_value(meters._identity, result="created") == 1
    assert metric_value(meters._identity, result="matched") == 1


def test_fill_is_non_destructive(identity: SqlAlchemyVisitorIdentityStore, session_factory) -> None:
    visitor_id = identity.resolve_or_create(
        "9876543210", "first@example.com", {"Full Name": "Asha Rao", "Badge Colour": "blue"}
    )
    identity.resolve_or_create(
        "9876543210",
        "second@example.com",
        {"Full Name": "Someone Else", "Organization": "Acme", "Badge Colour": "red", "Hall": "B"},
    )
    visitor = _visitor(session_factory, visitor_id)
    assert visitor.name == "Asha Rao"
    assert visitor.email == "first@example.com"
    assert visitor.company == "Acme"
    assert visitor.attributes == {"Badge Colour": "blue", "Hall": "B"}


def test_phone_alias_in_attributes_never_rewrites_phone(
    identity: SqlAlchemyVisitorIdentityStore, session_factory
) -> None:
    visitor_id = identity.resolve_or_create("9876543210", None, {"Mobile": "1111111111"})
    assert _visitor(session_factory, visitor_id).phone == "9876543210"
    assert _visitor(session_factory, visitor_id).attributes == {}


def test_empty_phone_always_creates_new_row(identity: SqlAlchemyVisitorIdentityStore, session_factory, meters) -> None:
    first = identity.resolve_or_create(None, "asha@example.com", {})
    second = identity.resolve_or_create("  ", "asha@example.com", {})
    assert first != second
    assert _visitor(session_factory, first).phone is None
    assert _visitor_count(session_factory) == 2
    assert metric_value(meters._identity, result="anonymous") == 2


def test_concurrent_resolution_creates_single_visitor(
    identity: SqlAlchemyVisitorIdentityStore, session_factory
) -> None:
    workers = 6
    barrier = threading.Barrier(workers)

    def resolve(_: int) -> str:
        barrier.wait()
        return identity.resolve_or_create("+91 98765 43210", None, {})

    with ThreadPoolExecutor(max_workers=workers) as pool:
        ids = set(pool.map(resolve, range(workers)))
    assert len(ids) == 1
    assert _visitor_count(session_factory) == 1


def test_lost_insert_race_adopts_winner(
    identity: SqlAlchemyVisitorIdentityStore, session_factory, meters, monkeypatch
) -> None:
    original = identity._find_by_phone
    state = {"calls": 0, "winner": None}

    def racing_lookup(session, phone):
        state["calls"] += 1
        if state["calls"] == 1:
            with session_factory() as other:
                winner = GlobalVisitorModel(phone=phone, attributes={}, registered_exhibitions=[])
                other.add(winner)
                other.commit()
                state["winner"] = winner.id
            return None
        return original(session, phone)

    monkeypatch.setattr(identity, "_find_by_phone", racing_lookup)

    visitor_id = identity.resolve_or_create("9876543210", None, {"Full Name": "Asha Rao"})
    assert visitor_id == state["winner"]
    assert _visitor(session_factory, visitor_id).name == "Asha Rao"
    assert _visitor_count(session_factory) == 1
    assert metric_value(meters._conflicts, type="phone") == 1
    assert metric_value(meters._identity, result="race_recovered") == 1


def test_injected_phone_conflict_is_retried(identity, fault_injector, session_factory, meters) -> None:
    fault_injector.duplicate_phone = 1
    visitor_id = identity.resolve_or_create("9876543210", None, {})
    assert _visitor(session_factory, visitor_id) is not None
    assert metric_value(meters._conflicts, type="phone") == 1


def test_exhausted_phone_conflicts_raise_identity_race(identity, fault_injector, session_factory) -> None:
    fault_injector.duplicate_phone = 3
    with pytest.raises(RegistrationServiceError) as exc:
        identity.resolve_or_create("9876543210", None, {})
    assert exc.value.detail.code == "E_IDENTITY_RACE"
    assert _visitor_count(session_factory) == 0


def test_merge_duplicate_moves_registrations(identity, session, session_factory) -> None:
    seed_exhibition(session, "exh-a")
    keep = seed_visitor(session, phone="9876543210", name="Asha Rao")
    merge = seed_visitor(session, phone="+91 98765 43210", company="Acme", attributes={"Hall": "B"})
    seed_registration(session, visitor_id=keep.id, exhibition_id="exh-a", number="REG-TECHEXPO-20250115-0001")
    seed_registration(session, visitor_id=merge.id, exhibition_id="exh-b", number="REG-AUTOSHOW-20250115-0001")

    aggregates = identity.merge_duplicate(keep.id, merge.id)

    assert aggregates.total_registrations == 2
    assert aggregates.registered_exhibitions == ("exh-a", "exh-b")
    survivor = _visitor(session_factory, keep.id)
    assert survivor.phone == "9876543210"
    assert survivor.company == "Acme"
    assert survivor.name == "Asha Rao"
    assert survivor.attributes == {"Hall": "B"}
    assert survivor.total_registrations == 2
    assert _visitor(session_factory, merge.id) is None
    with session_factory() as check:
        owners = set(check.execute(select(RegistrationModel.visitor_id)).scalars())
    assert owners == {keep.id}


def test_repeated_merge_fails_and_leaves_survivor_unchanged(identity, session, session_factory) -> None:
    keep = seed_visitor(session, phone="9876543210")
    merge = seed_visitor(session, phone="+919876543210", city="Pune")
    seed_registration(session, visitor_id=merge.id, exhibition_id="exh-a", number="REG-TECHEXPO-20250115-0001")
    identity.merge_duplicate(keep.id, merge.id)
    before = _visitor(session_factory, keep.id)

    with pytest.raises(RegistrationServiceError) as exc:
        identity.merge_duplicate(keep.id, merge.id)

    assert exc.value.detail.code == "E_VISITOR_NOT_FOUND"
    after = _visitor(session_factory, keep.id)
    assert (after.city, after.total_registrations, after.registered_exhibitions, after.updated_at) == (
        before.city,
        before.total_registrations,
        before.registered_exhibitions,
        before.updated_at,
    )


def test_merge_into_itself_is_rejected(identity, session) -> None:
    visitor = seed_visitor(session, phone="9876543210")
    with pytest.raises(RegistrationServiceError) as exc:
        identity.merge_duplicate(visitor.id, visitor.id)
    assert exc.value.detail.code == "E_VALIDATION_FAILED"


def test_choose_survivor_prefers_more_registrations_then_earliest() -> None:
    early = dt.datetime(2024, 1, 1)
    late = dt.datetime(2024, 6, 1)
    busy = VisitorCandidate("b", registration_count=3, created_at=late)
    quiet = VisitorCandidate("a", registration_count=1, created_at=early)
    assert choose_survivor([quiet, busy]).visitor_id == "b"

    older = VisitorCandidate("x", registration_count=2, created_at=early)
    newer = VisitorCandidate("y", registration_count=2, created_at=late)
    assert choose_survivor([newer, older]).visitor_id == "x"


def test_choose_survivor_full_tie_is_ambiguous() -> None:
    moment = dt.datetime(2024, 1, 1)
    with pytest.raises(RegistrationServiceError) as exc:
        choose_survivor([VisitorCandidate("a", 2, moment), VisitorCandidate("b", 2, moment)])
    assert exc.value.detail.code == "E_MERGE_AMBIGUOUS"


def test_candidates_for_counts_registrations(identity, session) -> None:
    first = seed_visitor(session, phone="9876543210")
    second = seed_visitor(session, phone="+91 98765 43210")
    seed_registration(session, visitor_id=first.id, exhibition_id="exh-a", number="REG-TECHEXPO-20250115-0001")
    counts = {c.visitor_id: c.registration_count for c in identity.candidates_for([first.id, second.id])}
    assert counts == {first.id: 1, second.id: 0}


def test_reconcile_custom_fields_copies_only_into_empty_fields(identity, session, session_factory) -> None:
    visitor = seed_visitor(session, phone="9876543210", name="Existing Name")
    registration = seed_registration(
        session,
        visitor_id=visitor.id,
        exhibition_id="exh-a",
        number="REG-TECHEXPO-20250115-0001",
        custom_field_data={
            "Full Name": "Other Name",
            "Company": "",
            "Organization": "Acme",
            "Mobile": "1111111111",
            "T-Shirt Size": "M",
        },
    )

    outcome = identity.reconcile_custom_fields(registration.id)

    assert outcome.changed
    assert set(outcome.removed_keys) == {"Full Name", "Company", "Organization", "Mobile"}
    assert outcome.copied_fields == ("company",)
    updated = _visitor(session_factory, visitor.id)
    assert updated.name == "Existing Name"
    assert updated.company == "Acme"
    assert updated.phone == "9876543210"
    with session_factory() as check:
        stored = check.get(RegistrationModel, registration.id)
        assert stored.custom_field_data == {"T-Shirt Size": "M"}

    again = identity.reconcile_custom_fields(registration.id)
    assert not again.changed
    assert again.copied_fields == ()


def test_reconcile_custom_fields_unknown_registration(identity) -> None:
    with pytest.raises(RegistrationServiceError) as exc:
        identity.reconcile_custom_fields("missing")
    assert exc.value.detail.code == "E_REGISTRATION_NOT_FOUND"


def test_reconcile_custom_fields_missing_visitor(identity, session) -> None:
    registration = seed_registration(
        session,
        visitor_id="ghost",
        exhibition_id="exh-a",
        number="REG-TECHEXPO-20250115-0001",
        custom_field_data={"City": "Pune"},
    )
    with pytest.raises(RegistrationServiceError) as exc:
        identity.reconcile_custom_fields(registration.id)
    assert exc.value.detail.code == "E_REFERENTIAL_INTEGRITY"


def test_recompute_aggregates_from_registrations(identity, session, session_factory) -> None:
    visitor = seed_visitor(session, phone="9876543210")
    seed_registration(session, visitor_id=visitor.id, exhibition_id="exh-b", number="REG-A-20250115-0001")
    seed_registration(session, visitor_id=visitor.id, exhibition_id="exh-a", number="REG-B-20250115-0001")
    seed_registration(
        session, visitor_id=visitor.id, exhibition_id="exh-a", number="REG-B-20250115-0002", status="cancelled"
    )

    aggregates = identity.recompute_aggregates(visitor.id)

    assert aggregates.total_registrations == 3
    assert aggregates.registered_exhibitions == ("exh-a", "exh-b")
    stored = _visitor(session_factory, visitor.id)
    assert stored.total_registrations == 3
    assert stored.registered_exhibitions == ["exh-a", "exh-b"]
    assert stored.last_registration_date is not None


def test_recompute_aggregates_unknown_visitor(identity) -> None:
    with pytest.raises(RegistrationServiceError) as exc:
        identity.recompute_aggregates("missing")
    assert exc.value.detail.code == "E_VISITOR_NOT_FOUND"


def test_identity_logs_hash_phone(identity, caplog) -> None:
    caplog.set_level("INFO")
    identity.resolve_or_create("9876543210", None, {})
    messages = " ".join(record.getMessage() for record in caplog.records)
    assert "visitor_created" in messages
    assert "9876543210" not in messages
