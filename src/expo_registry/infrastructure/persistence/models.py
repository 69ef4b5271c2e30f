# -*- coding: utf-8 -*-
from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

from expo_registry.core.clock import utc_now


Base = declarative_base()

REGISTRATION_STATUSES = ("pending", "registered", "confirmed", "checked_in", "cancelled", "waitlisted")
REGISTRATION_SOURCES = ("online", "onsite", "admin")
REFERRAL_SOURCES = ("direct", "exhibitor")


def _new_id() -> str:
    return str(uuid4())


class ExhibitionModel(Base):
    """Minimal mirror of the externally owned exhibition row."""

    __tablename__ = "exhibitions"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    tagline = Column(String(255), nullable=True)
    current_registrations_count = Column(Integer, nullable=False, default=0)


class RegistrationCounterModel(Base):
    __tablename__ = "registration_counters"

    scope_key = Column(String(64), primary_key=True)
    date_bucket = Column(String(8), primary_key=True)
    last_seq = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)


class GlobalVisitorModel(Base):
    __tablename__ = "global_visitors"

    id = Column(String(36), primary_key=True, default=_new_id)
    # NULL phones are exempt from UNIQUE, which gives sparse uniqueness.
    phone = Column(String(32), nullable=True, unique=True)
    email = Column(String(320), nullable=True)
    name = Column(String(255), nullable=True)
    company = Column(String(255), nullable=True)
    designation = Column(String(255), nullable=True)
    city = Column(String(128), nullable=True)
    state = Column(String(128), nullable=True)
    pincode = Column(String(16), nullable=True)
    address = Column(Text, nullable=True)
    attributes = Column(JSON, nullable=False, default=dict)
    total_registrations = Column(Integer, nullable=False, default=0)
    last_registration_date = Column(DateTime(timezone=True), nullable=True)
    registered_exhibitions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_global_visitors_email", "email"),
        Index("ix_global_visitors_created_at", "created_at"),
    )


class RegistrationModel(Base):
    __tablename__ = "registrations"

    id = Column(String(36), primary_key=True, default=_new_id)
    registration_number = Column(String(96), nullable=False, unique=True)
    # Deliberately not a foreign key: orphans are detected by the reconciler.
    visitor_id = Column(String(36), nullable=False)
    exhibition_id = Column(String(64), nullable=False)
    registration_date = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    registration_category = Column(String(128), nullable=False)
    selected_interests = Column(JSON, nullable=False, default=list)
    custom_field_data = Column(JSON, nullable=False, default=dict)
    status = Column(
        Enum(*REGISTRATION_STATUSES, name="registration_status", native_enum=False),
        nullable=False,
        default="registered",
    )
    registration_source = Column(
        Enum(*REGISTRATION_SOURCES, name="registration_source", native_enum=False),
        nullable=False,
        default="online",
    )
    referral_source = Column(
        Enum(*REFERRAL_SOURCES, name="referral_source", native_enum=False),
        nullable=False,
        default="direct",
    )
    exhibitor_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_registrations_exhibition_status", "exhibition_id", "status"),
        Index("ix_registrations_visitor_exhibition", "visitor_id", "exhibition_id"),
    )


__all__ = [
    "Base",
    "ExhibitionModel",
    "GlobalVisitorModel",
    "REFERRAL_SOURCES",
    "REGISTRATION_SOURCES",
    "REGISTRATION_STATUSES",
    "RegistrationCounterModel",
    "RegistrationModel",
]
