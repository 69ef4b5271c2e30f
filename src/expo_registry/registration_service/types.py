# -*- coding: utf-8 -*-
"""Type definitions for the registration integrity service."""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence, Tuple, Union

FieldValue = Union[str, int, float, bool, None, Mapping[str, "FieldValue"], Sequence["FieldValue"]]
"""Variant value stored in open attribute maps (custom fields, visitor dynamic fields)."""

FieldMap = Mapping[str, FieldValue]


@dataclass(frozen=True, slots=True)
class ErrorDetail:
    """Structured error payload returned to callers.

    Attributes
    ----------
    code:
        Machine-readable error code.
    message:
        Human-facing summary suitable for the intake layer.
    details:
        Additional diagnostic details for operators.
    """

    code: str
    message: str
    details: str


@dataclass(frozen=True, slots=True)
class ContactInfo:
    phone: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True, slots=True)
class RegistrationPayload:
    """Validated submission handed over by the intake layer."""

    exhibition_id: str
    contact: ContactInfo
    category: str
    custom_field_data: FieldMap = field(default_factory=dict)
    selected_interests: Sequence[str] = ()
    exhibitor_id: Optional[str] = None
    registration_source: str = "online"


@dataclass(frozen=True, slots=True)
class RegistrationResult:
    registration_id: str
    registration_number: str
    visitor_id: str
    exhibition_id: str
    attempts: int = 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "registrationId": self.registration_id,
            "registrationNumber": self.registration_number,
            "visitorId": self.visitor_id,
            "exhibitionId": self.exhibition_id,
        }


@dataclass(frozen=True, slots=True)
class CustomFieldOutcome:
    """Result of reconciling one registration's custom field data."""

    registration_id: str
    removed_keys: Tuple[str, ...] = ()
    copied_fields: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.removed_keys)


@dataclass(frozen=True, slots=True)
class VisitorCandidate:
    """One of several visitor rows sharing a phone, as seen by the tie-break."""

    visitor_id: str
    registration_count: int
    created_at: dt.datetime


@dataclass(frozen=True, slots=True)
class VisitorAggregates:
    visitor_id: str
    total_registrations: int
    last_registration_date: Optional[dt.datetime]
    registered_exhibitions: Tuple[str, ...]

    def as_dict(self) -> dict[str, Any]:
        return {
            "visitorId": self.visitor_id,
            "totalRegistrations": self.total_registrations,
            "lastRegistrationDate": (
                self.last_registration_date.isoformat() if self.last_registration_date is not None else None
            ),
            "registeredExhibitions": list(self.registered_exhibitions),
        }


class LoggerLike(Protocol):
    """Protocol representing the structured logger adapter used by the service."""

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


class MeterLike(Protocol):
    """Protocol capturing the observability hooks consumed by the service."""

    def record_registration(self, result: str) -> None: ...

    def record_allocation(self, result: str) -> None: ...

    def record_conflict(self, conflict_type: str) -> None: ...

    def record_identity(self, result: str) -> None: ...

    def record_validation_error(self, code: str) -> None: ...

    def record_hook_failure(self, hook: str) -> None: ...

    def record_reconciler_mutation(self, operation: str, count: int = 1) -> None: ...

    def exporter_health(self, value: float) -> None: ...


class HashFunc(Protocol):
    """PII hashing hook injected for structured logging."""

    def __call__(self, value: str) -> str: ...


class SequenceAllocator(Protocol):
    def allocate(self, scope_key: str, date_bucket: str) -> int: ...

    def high_water(self, date_bucket: str) -> int: ...

    def advance_to(self, scope_key: str, date_bucket: str, floor: int) -> None: ...


class PostCommitHook(Protocol):
    """Fire-and-forget collaborator (badge rendering, notification dispatch)."""

    def __call__(self, result: RegistrationResult) -> None: ...


__all__ = [
    "ContactInfo",
    "CustomFieldOutcome",
    "ErrorDetail",
    "FieldMap",
    "FieldValue",
    "HashFunc",
    "LoggerLike",
    "MeterLike",
    "PostCommitHook",
    "RegistrationPayload",
    "RegistrationResult",
    "SequenceAllocator",
    "VisitorAggregates",
    "VisitorCandidate",
]
