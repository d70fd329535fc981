"""Event store.

The store holds the two append-only streams (orders and rider pings) as
pandas frames and answers the grouped/counted reads the KPI queries need.

Concurrency model
- Readers work on a session: a snapshot of the frames taken when the session
  opens. Appends build a new frame and swap the reference, so a reader never
  sees a half-written batch and is never blocked by a writer.
- Sessions are drawn from a bounded pool. Independent queries each get their
  own session; when the pool is exhausted past the acquisition timeout the
  caller gets ``StoreUnavailable``.
- Every read, and the wait for a pooled session, checks a ``CancelToken``
  and aborts with ``QueryCancelled``.

Retention is not handled here; the frames grow until the process exits.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from typing import Dict, Iterable, Iterator, Optional, Tuple

import pandas as pd

from .config import StoreSettings
from .errors import QueryCancelled, StoreUnavailable
from .models import ORDER_COLUMNS, PING_COLUMNS
from .windows import Window

# longest single wait on the session pool between cancellation checks
ACQUIRE_SLICE_SEC = 0.05


class CancelToken:
    """Cooperative cancellation signal shared between a caller and a query."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryCancelled("query cancelled by caller")


def _empty_orders() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "order_id": pd.Series(dtype=object),
            "zone_id": pd.Series(dtype=object),
            "created_at": pd.Series(dtype="datetime64[ns, UTC]"),
        }
    )


def _empty_pings() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "id": pd.Series(dtype=object),
            "event_id": pd.Series(dtype=object),
            "rider_id": pd.Series(dtype=object),
            "lat": pd.Series(dtype=float),
            "lon": pd.Series(dtype=float),
            "rider_phone": pd.Series(dtype=object),
            "station_id": pd.Series(dtype=object),
            "zone_id": pd.Series(dtype=object),
            "timestamp": pd.Series(dtype="datetime64[ns, UTC]"),
        }
    )


def _as_row(event) -> dict:
    if is_dataclass(event) and not isinstance(event, type):
        return asdict(event)
    return dict(event)


def _to_frame(batch: Iterable, columns, ts_col: str) -> pd.DataFrame:
    rows = [_as_row(e) for e in batch]
    if not rows:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame(rows)
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"events missing fields: {missing}. Available: {list(df.columns)}")
    df = df[columns].copy()
    df[ts_col] = pd.to_datetime(df[ts_col], utc=True)
    for c in columns:
        if c in ("lat", "lon"):
            df[c] = df[c].astype(float)
        elif c != ts_col:
            df[c] = df[c].astype(str)
    return df


class StoreSession:
    """Read-only view over one snapshot of the event frames."""

    def __init__(self, orders: pd.DataFrame, pings: pd.DataFrame, cancel: Optional[CancelToken] = None):
        self._orders = orders
        self._pings = pings
        self._cancel = cancel
        self.closed = False

    def _check(self) -> None:
        if self.closed:
            raise StoreUnavailable("store session already released")
        if self._cancel is not None:
            self._cancel.raise_if_cancelled()

    def _orders_in(self, w: Window) -> pd.DataFrame:
        ts = self._orders["created_at"]
        return self._orders[(ts >= w.start) & (ts < w.end)]

    def _pings_in(self, w: Window) -> pd.DataFrame:
        ts = self._pings["timestamp"]
        return self._pings[(ts >= w.start) & (ts < w.end)]

    def count_orders_by_zone(self, w: Window) -> Dict[str, int]:
        self._check()
        counts = self._orders_in(w).groupby("zone_id").size()
        return {str(z): int(n) for z, n in counts.items()}

    def distinct_riders_by_zone(self, w: Window) -> Dict[str, int]:
        self._check()
        counts = self._pings_in(w).groupby("zone_id")["rider_id"].nunique()
        return {str(z): int(n) for z, n in counts.items()}

    def count_orders_by_zone_minute(self, w: Window) -> Dict[Tuple[str, pd.Timestamp], int]:
        self._check()
        df = self._orders_in(w)
        if df.empty:
            return {}
        counts = df.assign(minute=df["created_at"].dt.floor("min")).groupby(["zone_id", "minute"]).size()
        return {(str(z), pd.Timestamp(m)): int(n) for (z, m), n in counts.items()}

    def distinct_riders_by_zone_minute(self, w: Window) -> Dict[Tuple[str, pd.Timestamp], int]:
        self._check()
        df = self._pings_in(w)
        if df.empty:
            return {}
        counts = (
            df.assign(minute=df["timestamp"].dt.floor("min"))
            .groupby(["zone_id", "minute"])["rider_id"]
            .nunique()
        )
        return {(str(z), pd.Timestamp(m)): int(n) for (z, m), n in counts.items()}

    def scan_orders(self, w: Window) -> pd.DataFrame:
        self._check()
        df = self._orders_in(w).sort_values(["created_at", "order_id"], kind="mergesort")
        return df.reset_index(drop=True)

    def scan_pings(self, w: Window, rider_id: Optional[str] = None) -> pd.DataFrame:
        """Pings in ``w`` ordered by timestamp (ties by ping id)."""
        self._check()
        df = self._pings_in(w)
        if rider_id is not None:
            df = df[df["rider_id"] == rider_id]
        df = df.sort_values(["timestamp", "id"], kind="mergesort")
        return df.reset_index(drop=True)


class EventStore(ABC):
    @abstractmethod
    def append_orders(self, batch: Iterable) -> int:
        ...

    @abstractmethod
    def append_pings(self, batch: Iterable) -> int:
        ...

    @abstractmethod
    def session(self, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None):
        """Context manager yielding a ``StoreSession``."""


class InMemoryEventStore(EventStore):
    def __init__(self, pool_size: int = 8, acquire_timeout_sec: float = 5.0):
        if pool_size <= 0:
            raise ValueError(f"pool_size must be > 0 (got {pool_size})")
        self._orders = _empty_orders()
        self._pings = _empty_pings()
        self._write_lock = threading.Lock()
        self._pool = threading.BoundedSemaphore(pool_size)
        self.acquire_timeout_sec = float(acquire_timeout_sec)
        self._closed = False

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "InMemoryEventStore":
        return cls(pool_size=settings.pool_size, acquire_timeout_sec=settings.acquire_timeout_sec)

    @property
    def order_count(self) -> int:
        return len(self._orders)

    @property
    def ping_count(self) -> int:
        return len(self._pings)

    def close(self) -> None:
        """Stop serving sessions; later queries fail with ``StoreUnavailable``."""
        self._closed = True

    def _append(self, attr: str, df: pd.DataFrame) -> int:
        if df.empty:
            return 0
        if self._closed:
            raise StoreUnavailable("event store is closed")
        with self._write_lock:
            cur = getattr(self, attr)
            new = df if cur.empty else pd.concat([cur, df], ignore_index=True)
            setattr(self, attr, new)
        return len(df)

    def append_orders(self, batch: Iterable) -> int:
        return self._append("_orders", _to_frame(batch, ORDER_COLUMNS, "created_at"))

    def append_pings(self, batch: Iterable) -> int:
        return self._append("_pings", _to_frame(batch, PING_COLUMNS, "timestamp"))

    @contextmanager
    def session(
        self, timeout: Optional[float] = None, cancel: Optional[CancelToken] = None
    ) -> Iterator[StoreSession]:
        if cancel is not None:
            cancel.raise_if_cancelled()
        if self._closed:
            raise StoreUnavailable("event store is closed")
        wait = self.acquire_timeout_sec if timeout is None else float(timeout)
        deadline = time.monotonic() + wait
        while not self._pool.acquire(timeout=min(ACQUIRE_SLICE_SEC, max(deadline - time.monotonic(), 0.0))):
            if cancel is not None:
                cancel.raise_if_cancelled()
            if time.monotonic() >= deadline:
                raise StoreUnavailable(f"no store session available within {wait:.1f}s")
        sess = StoreSession(self._orders, self._pings, cancel)
        try:
            yield sess
        finally:
            sess.closed = True
            self._pool.release()
