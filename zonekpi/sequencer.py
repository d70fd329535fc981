"""Per-rider sequential analysis.

Pings are ordered by timestamp (ties by ping id) and walked with an explicit
cursor per rider that carries the previous ping forward. Each step sees
exactly one (previous, current) pair, which is all distance and speed need.
"""

from __future__ import annotations

import math
from typing import Dict, Iterator, List, Optional

import pandas as pd

from .geo import planar_distance_m
from .models import RiderRoutePoint, TrajectorySegment
from .store import CancelToken

# rows between cancellation checks while folding
CANCEL_CHECK_EVERY = 1024


def elapsed_seconds(prev_ts, cur_ts) -> int:
    """Whole seconds from ``prev_ts`` to ``cur_ts`` (floored)."""
    return math.floor((cur_ts - prev_ts).total_seconds())


def _ordered(pings: pd.DataFrame, by_rider: bool) -> pd.DataFrame:
    keys = ["rider_id", "timestamp", "id"] if by_rider else ["timestamp", "id"]
    return pings.sort_values(keys, kind="mergesort")


def fold_segments(pings: pd.DataFrame, cancel: Optional[CancelToken] = None) -> Iterator[TrajectorySegment]:
    """Yield one segment per consecutive ping pair of each rider.

    A rider's first ping has no predecessor and yields nothing, so a rider
    with a single ping contributes no segment at all.
    """
    prev_by_rider: Dict[str, tuple] = {}
    for i, row in enumerate(_ordered(pings, by_rider=True).itertuples(index=False)):
        if cancel is not None and i % CANCEL_CHECK_EVERY == 0:
            cancel.raise_if_cancelled()
        prev = prev_by_rider.get(row.rider_id)
        if prev is not None:
            yield TrajectorySegment(
                rider_id=str(row.rider_id),
                ping_id=str(row.id),
                distance_m=planar_distance_m(prev.lat, prev.lon, row.lat, row.lon),
                elapsed_seconds=elapsed_seconds(prev.timestamp, row.timestamp),
            )
        prev_by_rider[row.rider_id] = row


def latest_per_rider(pings: pd.DataFrame, cancel: Optional[CancelToken] = None) -> List[tuple]:
    """The newest ping of each rider, sorted by rider id.

    Identical timestamps resolve to the highest ping id.
    """
    latest: Dict[str, tuple] = {}
    for i, row in enumerate(pings.itertuples(index=False)):
        if cancel is not None and i % CANCEL_CHECK_EVERY == 0:
            cancel.raise_if_cancelled()
        cur = latest.get(row.rider_id)
        if cur is None or (row.timestamp, str(row.id)) > (cur.timestamp, str(cur.id)):
            latest[row.rider_id] = row
    return [latest[r] for r in sorted(latest)]


def annotate_route(pings: pd.DataFrame, cancel: Optional[CancelToken] = None) -> List[RiderRoutePoint]:
    """Chronological route with distance and speed against the previous point.

    The first point is its own predecessor, so it always reports 0 and 0.
    """
    points: List[RiderRoutePoint] = []
    prev = None
    for i, row in enumerate(_ordered(pings, by_rider=False).itertuples(index=False)):
        if cancel is not None and i % CANCEL_CHECK_EVERY == 0:
            cancel.raise_if_cancelled()
        if prev is None:
            prev = row
        dist = planar_distance_m(prev.lat, prev.lon, row.lat, row.lon)
        secs = elapsed_seconds(prev.timestamp, row.timestamp)
        points.append(
            RiderRoutePoint(
                rider_id=str(row.rider_id),
                lat=float(row.lat),
                lon=float(row.lon),
                zone_id=str(row.zone_id),
                timestamp=row.timestamp,
                speed_mps=round(dist / max(secs, 1), 2),
                distance_from_prev=round(dist, 2),
            )
        )
        prev = row
    return points
