# -*- coding: utf-8 -*-
"""Pure canonical-field-name checks for admin-configured custom fields.

Dynamic registration forms let admins add arbitrary fields, and some of them
inevitably collect data that already has a home on the visitor record ("Full
Name", "Organization", "PIN Code", ...). These helpers decide, without touching
storage, whether a custom field key names a canonical visitor attribute.
"""
from __future__ import annotations

import re
from typing import Dict, Mapping, Optional, Tuple

from .types import FieldMap, FieldValue
from .validation import is_empty

_WHITESPACE = re.compile(r"\s")

CANONICAL_FIELD_ALIASES: Mapping[str, Tuple[str, ...]] = {
    "name": ("name", "full_name", "fullname", "full-name"),
    "email": ("email", "e_mail", "e-mail"),
    "phone": ("phone", "mobile", "contact", "phone_number"),
    "company": ("company", "organization"),
    "designation": ("designation", "position", "title"),
    "city": ("city",),
    "state": ("state",),
    "pincode": ("pincode", "pin_code", "postal", "zip"),
    "address": ("address", "full_address", "street"),
}

CANONICAL_ATTRIBUTES: Tuple[str, ...] = tuple(CANONICAL_FIELD_ALIASES)

# Identity key: stripped from custom data but never copied onto a visitor.
IDENTITY_ATTRIBUTES = frozenset({"phone"})

_ALIAS_INDEX: Dict[str, str] = {
    alias: canonical for canonical, aliases in CANONICAL_FIELD_ALIASES.items() for alias in aliases
}

CANONICAL_FIELD_NAMES = frozenset(_ALIAS_INDEX)


def normalize_field_key(key: str) -> str:
    """Lowercase and replace every whitespace character with ``_``."""

    return _WHITESPACE.sub("_", key.lower())


def canonical_name_for(key: str) -> Optional[str]:
    return _ALIAS_INDEX.get(normalize_field_key(key))


def is_canonical_field(key: str) -> bool:
    return normalize_field_key(key) in CANONICAL_FIELD_NAMES


def split_custom_fields(data: FieldMap) -> Tuple[Dict[str, FieldValue], Dict[str, FieldValue]]:
    """Partition ``data`` into canonical visitor values and remaining custom fields.

    Returns ``(canonical, remaining)``. ``canonical`` is keyed by canonical
    attribute name; when several aliases of the same attribute are present the
    first non-empty one in insertion order wins. ``remaining`` preserves the
    original keys and order.
    """

    canonical: Dict[str, FieldValue] = {}
    remaining: Dict[str, FieldValue] = {}
    for key, value in data.items():
        name = canonical_name_for(key)
        if name is None:
            remaining[key] = value
            continue
        if name not in canonical and not is_empty(value):
            canonical[name] = value
    return canonical, remaining


__all__ = [
    "CANONICAL_ATTRIBUTES",
    "CANONICAL_FIELD_ALIASES",
    "CANONICAL_FIELD_NAMES",
    "IDENTITY_ATTRIBUTES",
    "canonical_name_for",
    "is_canonical_field",
    "normalize_field_key",
    "split_custom_fields",
]
