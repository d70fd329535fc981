"""KPI computation.

Every calculator here is a pure function of aggregator / sequencer output
plus settings. None of them touch the store or the clock, so a fixed input
always yields the same records in the same order.

Numeric policy
- ratio denominators are floored at 1 (zero riders never yields inf/NaN)
- distances are rounded to 2 decimals, percentages and scores to 1,
  pressure / risk ratios to 2
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Tuple

import pandas as pd

from .aggregate import bucket_gaps, peak_by_zone, pressure, ratio, union_join
from .geo import bbox_movement_m
from .models import (
    FulfillmentRisk,
    IdleRider,
    OrdersTrendPoint,
    PeakGap,
    Reposition,
    RiderPosition,
    RiderRoutePoint,
    RiderUtilization,
    SupplyGap,
    SurgePrediction,
    TopZone,
    TrajectorySegment,
    ZoneCounts,
)
from .sequencer import annotate_route, elapsed_seconds, latest_per_rider


def supply_gap(table: Iterable[ZoneCounts]) -> List[SupplyGap]:
    rows = [
        SupplyGap(
            zone_id=z.zone_id,
            orders=z.orders,
            riders=z.riders,
            gap=z.gap,
            pressure=pressure(z.orders, z.riders),
        )
        for z in table
    ]
    return sorted(rows, key=lambda r: -r.gap)


def top_zones(table: Iterable[ZoneCounts], limit: int) -> List[TopZone]:
    rows = [
        TopZone(zone_id=z.zone_id, orders=z.orders, riders=z.riders, pressure=pressure(z.orders, z.riders))
        for z in table
    ]
    return sorted(rows, key=lambda r: -r.pressure)[: max(int(limit), 0)]


def fulfillment_risk(table: Iterable[ZoneCounts]) -> List[FulfillmentRisk]:
    # same ratio as pressure, reported as fulfillment risk
    rows = [
        FulfillmentRisk(zone_id=z.zone_id, orders=z.orders, riders=z.riders, risk=pressure(z.orders, z.riders))
        for z in table
    ]
    return sorted(rows, key=lambda r: -r.risk)


def reposition(table: Iterable[ZoneCounts], gap_threshold: int) -> List[Reposition]:
    rows = [Reposition(zone_id=z.zone_id, needed_riders=z.gap) for z in table if z.gap > gap_threshold]
    return sorted(rows, key=lambda r: -r.needed_riders)


def idle_riders(pings: pd.DataFrame, dwell_threshold_sec: int, movement_threshold_m: float) -> List[IdleRider]:
    """Riders that stayed in one zone long enough while barely moving.

    Pings are grouped by (rider, zone). Dwell is the whole-second span of the
    group, movement the bounding-box diagonal at the group's mean latitude.
    The movement comparison is strict and applied to the rounded value.
    """
    if pings.empty:
        return []

    out: List[IdleRider] = []
    for (rider_id, zone_id), g in pings.groupby(["rider_id", "zone_id"], sort=True):
        ts = g["timestamp"]
        dwell = elapsed_seconds(ts.min(), ts.max())
        movement = round(bbox_movement_m(g["lat"].to_numpy(), g["lon"].to_numpy()), 2)
        if dwell >= dwell_threshold_sec and movement < movement_threshold_m:
            out.append(
                IdleRider(
                    rider_id=str(rider_id),
                    zone_id=str(zone_id),
                    dwell_seconds=int(dwell),
                    movement_meters=float(movement),
                )
            )
    return sorted(out, key=lambda r: -r.dwell_seconds)


def rider_utilization(segments: Iterable[TrajectorySegment], active_speed_mps: float) -> List[RiderUtilization]:
    """Share of a rider's considered pings moving faster than ``active_speed_mps``.

    Only pings with a predecessor are considered. A rider with a single ping
    has no segment and does not appear.
    """
    considered: Dict[str, int] = defaultdict(int)
    active: Dict[str, int] = defaultdict(int)
    for seg in segments:
        considered[seg.rider_id] += 1
        if seg.speed_mps > active_speed_mps:
            active[seg.rider_id] += 1

    rows = [
        RiderUtilization(rider_id=rid, utilization=round(ratio(active[rid] * 100.0, n), 1))
        for rid, n in sorted(considered.items())
        if n > 0
    ]
    return sorted(rows, key=lambda r: -r.utilization)


def orders_trend(orders_by_bucket: Mapping[Tuple[str, pd.Timestamp], int]) -> List[OrdersTrendPoint]:
    rows = [OrdersTrendPoint(zone_id=z, minute=m, orders=int(n)) for (z, m), n in orders_by_bucket.items()]
    return sorted(rows, key=lambda r: (r.minute, r.zone_id))


def peak_gap(
    orders_by_bucket: Mapping[Tuple[str, pd.Timestamp], int],
    riders_by_bucket: Mapping[Tuple[str, pd.Timestamp], int],
) -> List[PeakGap]:
    peaks = peak_by_zone(bucket_gaps(orders_by_bucket, riders_by_bucket))
    rows = [PeakGap(zone_id=z, peak_gap=int(p)) for z, p in sorted(peaks.items())]
    return sorted(rows, key=lambda r: -r.peak_gap)


def demand_acceleration(now: int, prev: int) -> float:
    """Fractional change of order volume versus the previous window."""
    if prev > 0:
        return (now - prev) / prev
    return 1.0 if now > 0 else 0.0


def surge_prediction(
    orders_now: Mapping[str, int],
    orders_prev: Mapping[str, int],
    riders_now: Mapping[str, int],
) -> List[SurgePrediction]:
    rows: List[SurgePrediction] = []
    for zone_id, (now, prev, riders) in union_join(orders_now, orders_prev, riders_now):
        accel = demand_acceleration(now, prev)
        raw_pressure = ratio(now, riders)
        rows.append(
            SurgePrediction(
                zone_id=zone_id,
                orders_now=now,
                orders_prev=prev,
                riders=riders,
                demand_acceleration=round(accel * 100, 1),
                pressure=round(raw_pressure, 2),
                surge_score=round(abs(accel) * raw_pressure * 10, 1),
                riders_needed=max(now - riders, 0),
            )
        )
    return sorted(rows, key=lambda r: -r.surge_score)


def rider_positions(pings: pd.DataFrame, cancel=None) -> List[RiderPosition]:
    return [
        RiderPosition(rider_id=str(p.rider_id), lat=float(p.lat), lon=float(p.lon), zone_id=str(p.zone_id))
        for p in latest_per_rider(pings, cancel)
    ]


def rider_list(pings: pd.DataFrame) -> List[str]:
    if pings.empty:
        return []
    return sorted(str(r) for r in pings["rider_id"].unique())


def rider_route(pings: pd.DataFrame, cancel=None) -> List[RiderRoutePoint]:
    return annotate_route(pings, cancel)
