"""Time sources. All instants are integer milliseconds since the epoch (UTC)."""

from __future__ import annotations

import datetime as dt
import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Wall-clock time."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


class FrozenClock:
    """A manually advanced clock for deterministic scheduling."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = start_ms

    def now_ms(self) -> int:
        return self._now

    def advance(self, *, ms: int = 0, seconds: float = 0, minutes: float = 0) -> int:
        self._now += ms + int(seconds * 1000) + int(minutes * 60_000)
        return self._now

    def set(self, now_ms: int) -> None:
        self._now = now_ms


def to_datetime(ms: int) -> dt.datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return dt.datetime.fromtimestamp(ms / 1000, tz=dt.UTC)


def to_iso(ms: int | None) -> str | None:
    return to_datetime(ms).isoformat() if ms is not None else None
