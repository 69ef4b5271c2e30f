# -*- coding: utf-8 -*-
"""Error hierarchy with human-facing messages and machine-readable codes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .types import ErrorDetail

E_VALIDATION_FAILED = "E_VALIDATION_FAILED"
E_SEQUENCE_COLLISION = "E_SEQUENCE_COLLISION"
E_IDENTITY_RACE = "E_IDENTITY_RACE"
E_PERSIST_CONFLICT = "E_PERSIST_CONFLICT"
E_REFERENTIAL_INTEGRITY = "E_REFERENTIAL_INTEGRITY"
E_MERGE_AMBIGUOUS = "E_MERGE_AMBIGUOUS"
E_VISITOR_NOT_FOUND = "E_VISITOR_NOT_FOUND"
E_REGISTRATION_NOT_FOUND = "E_REGISTRATION_NOT_FOUND"

RETRYABLE_CODES = frozenset({E_SEQUENCE_COLLISION, E_IDENTITY_RACE, E_PERSIST_CONFLICT})


@dataclass(eq=False)
class RegistrationServiceError(Exception):
    """Base class for domain errors exposed to callers.

    Not frozen: re-raising through a generator-based context manager such as
    ``session_scope`` assigns ``__traceback__`` on the instance.
    """

    detail: ErrorDetail
    cause: Optional[Exception] = None

    def __str__(self) -> str:  # pragma: no cover - human readable path
        return f"{self.detail.code}: {self.detail.message} ({self.detail.details})"

    @property
    def code(self) -> str:
        return self.detail.code


def validation_failed(message: str) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_VALIDATION_FAILED, "Registration payload was rejected.", message),
    )


def sequence_collision(message: str, *, cause: Optional[Exception] = None) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_SEQUENCE_COLLISION, "Could not allocate a registration sequence.", message),
        cause,
    )


def identity_race_conflict(message: str, *, cause: Optional[Exception] = None) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_IDENTITY_RACE, "Visitor identity could not be resolved.", message),
        cause,
    )


def persist_conflict(message: str, *, cause: Optional[Exception] = None) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_PERSIST_CONFLICT, "Registration could not be stored; please retry.", message),
        cause,
    )


def referential_integrity_violation(message: str) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_REFERENTIAL_INTEGRITY, "Registration references a missing visitor.", message),
    )


def merge_ambiguous(message: str) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_MERGE_AMBIGUOUS, "Duplicate visitors need an operator decision.", message),
    )


def visitor_not_found(message: str) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_VISITOR_NOT_FOUND, "Visitor does not exist.", message),
    )


def registration_not_found(message: str) -> RegistrationServiceError:
    return RegistrationServiceError(
        ErrorDetail(E_REGISTRATION_NOT_FOUND, "Registration does not exist.", message),
    )


__all__ = [
    "E_IDENTITY_RACE",
    "E_MERGE_AMBIGUOUS",
    "E_PERSIST_CONFLICT",
    "E_REFERENTIAL_INTEGRITY",
    "E_REGISTRATION_NOT_FOUND",
    "E_SEQUENCE_COLLISION",
    "E_VALIDATION_FAILED",
    "E_VISITOR_NOT_FOUND",
    "RETRYABLE_CODES",
    "RegistrationServiceError",
    "identity_race_conflict",
    "merge_ambiguous",
    "persist_conflict",
    "referential_integrity_violation",
    "registration_not_found",
    "sequence_collision",
    "validation_failed",
    "visitor_not_found",
]
