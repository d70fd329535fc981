"""Event and result records.

Raw events are immutable once ingested. Result records are freshly derived
views; nothing here is ever updated in place.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict

ORDER_COLUMNS = ["order_id", "zone_id", "created_at"]

PING_COLUMNS = [
    "id",
    "event_id",
    "rider_id",
    "lat",
    "lon",
    "rider_phone",
    "station_id",
    "zone_id",
    "timestamp",
]


@dataclass(frozen=True)
class OrderEvent:
    order_id: str
    zone_id: str
    created_at: datetime


@dataclass(frozen=True)
class RiderPing:
    id: str
    event_id: str
    rider_id: str
    lat: float
    lon: float
    rider_phone: str
    station_id: str
    zone_id: str
    timestamp: datetime


class _Record:
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)  # type: ignore[call-overload]


@dataclass(frozen=True)
class ZoneCounts(_Record):
    """One row of a union-joined zone table."""

    zone_id: str
    orders: int
    riders: int

    @property
    def gap(self) -> int:
        return self.orders - self.riders


@dataclass(frozen=True)
class TrajectorySegment(_Record):
    """A consecutive ping pair for one rider."""

    rider_id: str
    ping_id: str
    distance_m: float
    elapsed_seconds: int

    @property
    def speed_mps(self) -> float:
        return self.distance_m / max(self.elapsed_seconds, 1)


@dataclass(frozen=True)
class SupplyGap(_Record):
    zone_id: str
    orders: int
    riders: int
    gap: int
    pressure: float


@dataclass(frozen=True)
class TopZone(_Record):
    zone_id: str
    orders: int
    riders: int
    pressure: float


@dataclass(frozen=True)
class IdleRider(_Record):
    rider_id: str
    zone_id: str
    dwell_seconds: int
    movement_meters: float


@dataclass(frozen=True)
class RiderUtilization(_Record):
    rider_id: str
    utilization: float


@dataclass(frozen=True)
class OrdersTrendPoint(_Record):
    zone_id: str
    minute: datetime
    orders: int


@dataclass(frozen=True)
class PeakGap(_Record):
    zone_id: str
    peak_gap: int


@dataclass(frozen=True)
class FulfillmentRisk(_Record):
    zone_id: str
    orders: int
    riders: int
    risk: float


@dataclass(frozen=True)
class Reposition(_Record):
    zone_id: str
    needed_riders: int


@dataclass(frozen=True)
class RiderPosition(_Record):
    rider_id: str
    lat: float
    lon: float
    zone_id: str


@dataclass(frozen=True)
class SurgePrediction(_Record):
    zone_id: str
    orders_now: int
    orders_prev: int
    riders: int
    demand_acceleration: float
    pressure: float
    surge_score: float
    riders_needed: int


@dataclass(frozen=True)
class RiderRoutePoint(_Record):
    rider_id: str
    lat: float
    lon: float
    zone_id: str
    timestamp: datetime
    speed_mps: float
    distance_from_prev: float
