# -*- coding: utf-8 -*-
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError


@dataclass(slots=True)
class FaultInjector:
    """Deterministic fault injection toggles used only in tests.

    Each field counts how many more times the named storage fault fires before
    the real statement is allowed through.
    """

    sequence_race: int = 0
    duplicate_phone: int = 0
    duplicate_registration_number: int = 0
    aggregate_failure: int = 0

    def raise_if(self, name: str) -> None:
        remaining = getattr(self, name, 0)
        if remaining > 0:
            setattr(self, name, remaining - 1)
            raise IntegrityError(f"fault:{name}", params={}, orig=RuntimeError(name))


__all__ = ["FaultInjector"]
