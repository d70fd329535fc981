"""Window selection.

Every window is half-open, ``[start, end)``, and derived from an injected
clock so that a fixed reference time reproduces the same result.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import pandas as pd


def to_utc(ts) -> pd.Timestamp:
    """Coerce a datetime-like value to a tz-aware UTC ``pd.Timestamp``.

    Naive values are taken to already be UTC.
    """
    t = pd.Timestamp(ts)
    if pd.isna(t):
        raise ValueError(f"not a valid timestamp: {ts!r}")
    if t.tzinfo is None:
        return t.tz_localize("UTC")
    return t.tz_convert("UTC")


@dataclass(frozen=True)
class Window:
    start: pd.Timestamp
    end: pd.Timestamp

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def shift(self, delta: timedelta) -> "Window":
        return Window(self.start + delta, self.end + delta)

    def previous(self) -> "Window":
        """The equally long window that ends where this one starts."""
        return self.shift(-self.duration)


def window(now, duration: timedelta) -> Window:
    if duration < timedelta(0):
        raise ValueError(f"duration must be non-negative (got {duration})")
    end = to_utc(now)
    return Window(start=end - duration, end=end)


class SystemClock:
    def now(self) -> pd.Timestamp:
        return pd.Timestamp.now(tz="UTC")


class FixedClock:
    """Clock pinned to one instant; ``advance`` moves it explicitly."""

    def __init__(self, at: datetime):
        self._at = to_utc(at)

    def now(self) -> pd.Timestamp:
        return self._at

    def advance(self, delta: timedelta) -> None:
        self._at = self._at + delta
