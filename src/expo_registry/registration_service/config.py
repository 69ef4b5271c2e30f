# -*- coding: utf-8 -*-
"""Configuration loader for the registration service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, cast
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_METRICS_PORT = 9108
DEFAULT_TIMEZONE = "Asia/Kolkata"
SUPPORTED_ENVS = {"dev", "stage", "prod"}
SUPPORTED_NUMBER_FORMATS = {"scoped", "legacy"}


@dataclass(frozen=True, slots=True)
class ServiceConfig:
    """Typed configuration block for the registration service."""

    db_url: str
    pii_hash_salt: str
    metrics_port: int
    env: Literal["dev", "stage", "prod"]
    timezone: str = DEFAULT_TIMEZONE
    number_format: Literal["scoped", "legacy"] = "scoped"
    sequence_width: int = 4
    max_attempts: int = 3

    @property
    def embed_scope(self) -> bool:
        return self.number_format == "scoped"


def _bounded_int(name: str, raw: str, low: int, high: int) -> int:
    try:
        value = int(raw)
        if not (low <= value <= high):
            raise ValueError
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer between {low} and {high}") from exc
    return value


def load_from_env() -> ServiceConfig:
    """Read configuration from environment variables with validation."""

    db_url = os.getenv("DB_URL", "sqlite+pysqlite:///:memory:")
    pii_hash_salt = os.getenv("PII_HASH_SALT", "development-salt")
    metrics_port = _bounded_int("METRICS_PORT", os.getenv("METRICS_PORT", str(DEFAULT_METRICS_PORT)), 1, 65535)
    env = os.getenv("ENV", "dev")
    timezone = os.getenv("REG_TIMEZONE", DEFAULT_TIMEZONE)
    number_format = os.getenv("REG_NUMBER_FORMAT", "scoped").strip().lower()
    sequence_width = _bounded_int("REG_SEQUENCE_WIDTH", os.getenv("REG_SEQUENCE_WIDTH", "4"), 1, 12)
    max_attempts = _bounded_int("REG_MAX_ATTEMPTS", os.getenv("REG_MAX_ATTEMPTS", "3"), 1, 10)

    if env not in SUPPORTED_ENVS:
        raise ValueError(f"ENV must be one of {sorted(SUPPORTED_ENVS)}")
    if number_format not in SUPPORTED_NUMBER_FORMATS:
        raise ValueError(f"REG_NUMBER_FORMAT must be one of {sorted(SUPPORTED_NUMBER_FORMATS)}")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"REG_TIMEZONE {timezone!r} is not a known IANA zone") from exc

    return ServiceConfig(
        db_url=db_url,
        pii_hash_salt=pii_hash_salt,
        metrics_port=metrics_port,
        env=cast(Literal["dev", "stage", "prod"], env),
        timezone=timezone,
        number_format=cast(Literal["scoped", "legacy"], number_format),
        sequence_width=sequence_width,
        max_attempts=max_attempts,
    )
