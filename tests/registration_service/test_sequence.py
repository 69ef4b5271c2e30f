# -*- coding: utf-8 -*-
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from expo_registry.registration_service.errors import RegistrationServiceError
from expo_registry.registration_service.sequence import SqlAlchemySequenceAllocator
from expo_registry.registration_service.validation import format_registration_number

from .conftest import metric_value


def test_first_allocation_starts_at_one(allocator: SqlAlchemySequenceAllocator, meters) -> None:
    assert allocator.peek("TECHEXPO", "20250115") == 0
    assert allocator.allocate("TECHEXPO", "20250115") == 1
    assert allocator.allocate("TECHEXPO", "20250115") == 2
    assert allocator.peek("TECHEXPO", "20250115") == 2
    assert metric_value(meters._allocations, result="success") == 2


def test_scopes_and_days_are_isolated(allocator: SqlAlchemySequenceAllocator) -> None:
    assert allocator.allocate("TECHEXPO", "20250115") == 1
    assert allocator.allocate("AUTOSHOW", "20250115") == 1
    assert allocator.allocate("TECHEXPO", "20250116") == 1
    assert allocator.allocate("TECHEXPO", "20250115") == 2
    assert allocator.snapshot() == {
        ("TECHEXPO", "20250115"): 2,
        ("AUTOSHOW", "20250115"): 1,
        ("TECHEXPO", "20250116"): 1,
    }


def test_legacy_numbers_for_one_scope_and_day(allocator: SqlAlchemySequenceAllocator) -> None:
    numbers = [
        format_registration_number("20250115", allocator.allocate("TECHEXPO", "20250115"))
        for _ in range(2)
    ]
    assert numbers == ["REG-20250115-0001", "REG-20250115-0002"]


def test_concurrent_allocations_are_unique_and_gapless(allocator: SqlAlchemySequenceAllocator) -> None:
    total = 40
    with ThreadPoolExecutor(max_workers=8) as pool:
        values = list(pool.map(lambda _: allocator.allocate("TECHEXPO", "20250115"), range(total)))
    assert sorted(values) == list(range(1, total + 1))
    assert allocator.peek("TECHEXPO", "20250115") == total


def test_injected_race_is_retried(allocator: SqlAlchemySequenceAllocator, fault_injector, meters) -> None:
    fault_injector.sequence_race = 1
    assert allocator.allocate("TECHEXPO", "20250115") == 1
    assert metric_value(meters._conflicts, type="sequence") == 1


def test_exhausted_retries_raise_sequence_collision(
    allocator: SqlAlchemySequenceAllocator, fault_injector, meters
) -> None:
    fault_injector.sequence_race = 3
    with pytest.raises(RegistrationServiceError) as exc:
        allocator.allocate("TECHEXPO", "20250115")
    assert exc.value.detail.code == "E_SEQUENCE_COLLISION"
    assert metric_value(meters._allocations, result="exhausted") == 1
    assert allocator.peek("TECHEXPO", "20250115") == 0


@pytest.mark.parametrize(
    ("scope_key", "date_bucket"),
    [("tech expo", "20250115"), ("", "20250115"), ("TECHEXPO", "2025-01-15")],
)
def test_invalid_keys_are_rejected(allocator: SqlAlchemySequenceAllocator, scope_key, date_bucket) -> None:
    with pytest.raises(RegistrationServiceError) as exc:
        allocator.allocate(scope_key, date_bucket)
    assert exc.value.detail.code == "E_VALIDATION_FAILED"


def test_unsupported_dialect_is_refused_at_construction(engine, session_factory, monkeypatch) -> None:
    monkeypatch.setattr(engine.dialect, "name", "mysql")
    with pytest.raises(ValueError, match="mysql"):
        SqlAlchemySequenceAllocator(session_factory)


def test_dialect_is_rechecked_when_building_the_upsert(allocator, engine, session_factory, monkeypatch) -> None:
    monkeypatch.setattr(engine.dialect, "name", "mysql")
    with session_factory() as session:
        with pytest.raises(ValueError, match="atomic upsert"):
            allocator._increment_statement(session, "TECHEXPO", "20250115")


def test_advance_to_only_moves_forward(allocator: SqlAlchemySequenceAllocator) -> None:
    allocator.allocate("TECHEXPO", "20250115")
    allocator.allocate("AUTOSHOW", "20250115")
    allocator.allocate("AUTOSHOW", "20250115")
    allocator.allocate("AUTOSHOW", "20250116")
    assert allocator.high_water("20250115") == 2
    assert allocator.high_water("20250117") == 0

    allocator.advance_to("TECHEXPO", "20250115", 2)
    assert allocator.allocate("TECHEXPO", "20250115") == 3
    allocator.advance_to("TECHEXPO", "20250115", 1)
    assert allocator.peek("TECHEXPO", "20250115") == 3
