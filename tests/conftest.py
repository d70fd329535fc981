from __future__ import annotations

from datetime import datetime, timedelta, timezone
from itertools import count

import pandas as pd
import pytest

from zonekpi.models import OrderEvent, PING_COLUMNS, RiderPing
from zonekpi.store import InMemoryEventStore
from zonekpi.windows import FixedClock

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def store():
    return InMemoryEventStore(pool_size=4, acquire_timeout_sec=0.5)


@pytest.fixture
def make_order():
    seq = count(1)

    def _make(zone_id: str, ago: timedelta = timedelta(minutes=1)) -> OrderEvent:
        return OrderEvent(order_id=f"o{next(seq):05d}", zone_id=zone_id, created_at=NOW - ago)

    return _make


@pytest.fixture
def make_ping():
    seq = count(1)

    def _make(
        rider_id: str,
        zone_id: str = "Z1",
        lat: float = 12.9,
        lon: float = 77.6,
        at: datetime = NOW - timedelta(minutes=1),
        ping_id: str | None = None,
    ) -> RiderPing:
        n = next(seq)
        return RiderPing(
            id=ping_id or f"p{n:05d}",
            event_id=f"e{n:05d}",
            rider_id=rider_id,
            lat=lat,
            lon=lon,
            rider_phone="233200000000",
            station_id="ST-A",
            zone_id=zone_id,
            timestamp=at,
        )

    return _make


@pytest.fixture
def pings_frame():
    """Build a pings DataFrame shaped like ``StoreSession.scan_pings`` output."""

    def _frame(pings) -> pd.DataFrame:
        df = pd.DataFrame([p.__dict__ for p in pings], columns=PING_COLUMNS)
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        return df

    return _frame
