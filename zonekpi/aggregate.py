"""Zone aggregation and the union-join.

Orders and pings share no foreign key; ``zone_id`` (optionally with a minute
bucket) is the only join key between them. Tables are merged over the union
of their keys with an absent side read as 0, so no zone is dropped for
appearing on one side only and no key repeats.

Union order is ascending key order. Every union-based view sorts with a
stable sort, so ties keep this order.
"""

from __future__ import annotations

from typing import Dict, Hashable, List, Mapping, Tuple

from .models import ZoneCounts
from .store import StoreSession
from .windows import Window


def ratio(num: float, den: float) -> float:
    """``num / den`` with the denominator floored at 1."""
    return num / max(den, 1)


def pressure(orders: int, riders: int) -> float:
    return round(ratio(orders, riders), 2)


def union_keys(*tables: Mapping) -> List[Hashable]:
    keys = set()
    for t in tables:
        keys.update(t.keys())
    return sorted(keys)


def union_join(*tables: Mapping[Hashable, int]) -> List[Tuple[Hashable, Tuple[int, ...]]]:
    """Symmetric merge of key -> count tables.

    Returns ``(key, (count_0, count_1, ...))`` for every key present in any
    table, in union order.
    """
    return [(k, tuple(int(t.get(k, 0)) for t in tables)) for k in union_keys(*tables)]


def zone_table(orders_by_zone: Mapping[str, int], riders_by_zone: Mapping[str, int]) -> List[ZoneCounts]:
    return [
        ZoneCounts(zone_id=z, orders=o, riders=r)
        for z, (o, r) in union_join(orders_by_zone, riders_by_zone)
    ]


def zone_window_table(session: StoreSession, w: Window) -> List[ZoneCounts]:
    """Orders and distinct riders per zone within ``w``."""
    orders = session.count_orders_by_zone(w)
    riders = session.distinct_riders_by_zone(w)
    return zone_table(orders, riders)


def bucket_gaps(
    orders_by_bucket: Mapping[Tuple[str, object], int],
    riders_by_bucket: Mapping[Tuple[str, object], int],
) -> Dict[Tuple[str, object], int]:
    """``orders - riders`` per (zone, minute) over the union of buckets."""
    return {k: o - r for k, (o, r) in union_join(orders_by_bucket, riders_by_bucket)}


def peak_by_zone(gaps: Mapping[Tuple[str, object], int]) -> Dict[str, int]:
    peaks: Dict[str, int] = {}
    for (zone_id, _minute), gap in gaps.items():
        cur = peaks.get(zone_id)
        if cur is None or gap > cur:
            peaks[zone_id] = gap
    return peaks
