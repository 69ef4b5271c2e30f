# -*- coding: utf-8 -*-
"""Input normalization and registration-number formatting."""
from __future__ import annotations

import datetime as dt
import re
import unicodedata
from typing import Any, Mapping, Optional

from .errors import validation_failed
from .types import RegistrationPayload

REGISTRATION_PREFIX = "REG"
DATE_BUCKET_PATTERN = re.compile(r"^\d{8}$")
SCOPE_KEY_PATTERN = re.compile(r"^[A-Z0-9]{1,64}$")
REGISTRATION_NUMBER_PATTERN = re.compile(r"^REG-(?:(?P<scope>[A-Z0-9]{1,64})-)?(?P<date>\d{8})-(?P<seq>\d+)$")
DEFAULT_SEQUENCE_WIDTH = 4
NUMBER_FORMATS = ("scoped", "legacy")
COUNTRY_CODE = "91"
LOCAL_PHONE_DIGITS = 10
ZERO_WIDTH_TABLE = str.maketrans("", "", "\u200b\u200c\u200d\u200e\u200f\ufeff")
_NON_DIGITS = re.compile(r"\D")
_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize(text: Any) -> str:
    if text is None:
        return ""
    normalized = unicodedata.normalize("NFKC", str(text)).translate(ZERO_WIDTH_TABLE)
    return normalized.strip()


def normalize_phone(phone: Any) -> Optional[str]:
    """Return the canonical phone digits, or ``None`` when nothing usable remains.

    Separators are dropped and a leading ``91`` country code is removed when more
    than ten digits are present. Other lengths are kept as-is so that foreign
    numbers still deduplicate against themselves.
    """

    digits = _NON_DIGITS.sub("", normalize(phone))
    if digits.startswith(COUNTRY_CODE) and len(digits) > LOCAL_PHONE_DIGITS:
        digits = digits[len(COUNTRY_CODE):]
    return digits or None


def normalize_email(email: Any) -> Optional[str]:
    value = normalize(email).lower()
    return value or None


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Mapping, list, tuple)):
        return len(value) == 0
    return False


def is_field_value(value: Any) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, Mapping):
        return all(isinstance(key, str) and is_field_value(item) for key, item in value.items())
    if isinstance(value, (list, tuple)):
        return all(is_field_value(item) for item in value)
    return False


def derive_scope_key(tagline: Optional[str], exhibition_id: str) -> str:
    """Sanitize an exhibition tagline into the counter scope discriminator."""

    for candidate in (tagline, exhibition_id):
        key = _NON_ALNUM.sub("", normalize(candidate).upper())[:64]
        if key:
            return key
    raise validation_failed("exhibition has no usable scope discriminator")


def date_bucket_for(moment: dt.datetime, timezone: Optional[dt.tzinfo] = None) -> str:
    local = moment.astimezone(timezone) if timezone is not None and moment.tzinfo is not None else moment
    return local.strftime("%Y%m%d")


def format_registration_number(
    date_bucket: str,
    sequence: int,
    *,
    width: int = DEFAULT_SEQUENCE_WIDTH,
    scope_key: Optional[str] = None,
) -> str:
    if not DATE_BUCKET_PATTERN.fullmatch(date_bucket):
        raise ValueError(f"date bucket must be YYYYMMDD, got {date_bucket!r}")
    if sequence < 1:
        raise ValueError("sequence must be positive")
    serial = str(sequence).zfill(width)
    if scope_key is None:
        return f"{REGISTRATION_PREFIX}-{date_bucket}-{serial}"
    if not SCOPE_KEY_PATTERN.fullmatch(scope_key):
        raise ValueError(f"invalid scope key {scope_key!r}")
    return f"{REGISTRATION_PREFIX}-{scope_key}-{date_bucket}-{serial}"


def ensure_valid_payload(payload: RegistrationPayload) -> None:
    """Reject payloads the coordinator cannot process. Never retried."""

    if not normalize(payload.exhibition_id):
        raise validation_failed("exhibition_id is required")
    if not normalize(payload.category):
        raise validation_failed("registration category is required")
    if normalize_phone(payload.contact.phone) is None and normalize_email(payload.contact.email) is None:
        raise validation_failed("either phone or email is required")
    if not isinstance(payload.custom_field_data, Mapping):
        raise validation_failed("custom_field_data must be a mapping")
    for key, value in payload.custom_field_data.items():
        if not isinstance(key, str) or not key.strip():
            raise validation_failed("custom field keys must be non-empty strings")
        if not is_field_value(value):
            raise validation_failed(f"unsupported value type for custom field {key!r}")
    if isinstance(payload.selected_interests, str) or not all(
        isinstance(item, str) for item in payload.selected_interests
    ):
        raise validation_failed("selected_interests must be a sequence of strings")


__all__ = [
    "DEFAULT_SEQUENCE_WIDTH",
    "NUMBER_FORMATS",
    "REGISTRATION_NUMBER_PATTERN",
    "date_bucket_for",
    "derive_scope_key",
    "ensure_valid_payload",
    "format_registration_number",
    "is_empty",
    "is_field_value",
    "normalize",
    "normalize_email",
    "normalize_phone",
]
