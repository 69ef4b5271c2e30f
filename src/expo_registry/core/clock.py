from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    """Protocol describing deterministic clock access."""

    @property
    def timezone(self) -> dt.tzinfo:
        ...

    def now(self) -> dt.datetime:
        ...


@dataclass(frozen=True)
class FixedClock:
    instant: dt.datetime

    @property
    def timezone(self) -> dt.tzinfo:
        return self.instant.tzinfo or dt.UTC

    def now(self) -> dt.datetime:
        return self.instant


@dataclass
class SystemClock:
    zone: ZoneInfo

    @property
    def timezone(self) -> dt.tzinfo:
        return self.zone

    def now(self) -> dt.datetime:
        return dt.datetime.now(tz=self.zone)


def build_system_clock(timezone: str) -> SystemClock:
    return SystemClock(zone=ZoneInfo(timezone))


def utc_now() -> dt.datetime:
    """Return the current timezone-aware UTC timestamp."""

    return dt.datetime.now(dt.UTC)


__all__ = ["Clock", "FixedClock", "SystemClock", "build_system_clock", "utc_now"]
