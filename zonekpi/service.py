"""Query façade.

``KpiService`` is the boundary an API layer calls: one method per KPI, each
stateless and read-only. Every call

1) takes the reference time from the injected clock once,
2) derives its half-open windows from it,
3) opens its own store session (never shared between calls),
4) hands the store output to the pure calculators in ``metrics``.

Failures surface as ``StoreUnavailable`` (untouched, no internal retry),
``InvalidParameter`` (rejected before the store is touched) or
``QueryCancelled``. A cancelled query returns nothing, not a partial list.
Anything else escaping a query is logged with its traceback and re-raised.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable, List, Optional, TypeVar

from .aggregate import zone_window_table
from .config import KpiSettings
from .errors import InvalidParameter, QueryCancelled, StoreUnavailable
from .logging_utils import log_safe
from . import metrics
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
)
from .sequencer import fold_segments
from .store import CancelToken, EventStore, StoreSession
from .windows import SystemClock, Window, to_utc, window

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KpiService:
    def __init__(self, store: EventStore, settings: Optional[KpiSettings] = None, clock=None):
        self.store = store
        self.settings = settings or KpiSettings()
        self.clock = clock or SystemClock()

    @classmethod
    def from_cfg(cls, cfg: dict, store: EventStore, clock=None) -> "KpiService":
        return cls(store, KpiSettings.from_cfg(cfg), clock)

    # ---- windows ----
    def _realtime(self) -> timedelta:
        return timedelta(minutes=self.settings.realtime_window_minutes)

    def _historical(self) -> timedelta:
        return timedelta(hours=self.settings.historical_window_hours)

    def _run(
        self,
        name: str,
        cancel: Optional[CancelToken],
        query: Callable[[StoreSession, CancelToken], List[T]],
        detail: str = "",
    ) -> List[T]:
        token = cancel if cancel is not None else CancelToken()
        logger.debug("Fetching %s KPI%s", name, detail)
        try:
            token.raise_if_cancelled()
            with self.store.session(cancel=token) as session:
                result = query(session, token)
            # all-or-nothing: a late cancel still discards the result
            token.raise_if_cancelled()
        except QueryCancelled:
            logger.info("%s query cancelled%s", name, detail)
            raise
        except StoreUnavailable as e:
            logger.error("%s query failed%s: %s", name, detail, e)
            raise
        except Exception:
            logger.exception("%s query crashed%s", name, detail)
            raise
        return result

    # ---- zone views (realtime window) ----
    def supply_gap(self, cancel: Optional[CancelToken] = None) -> List[SupplyGap]:
        w = window(self.clock.now(), self._realtime())
        return self._run("supply gap", cancel, lambda s, _t: metrics.supply_gap(zone_window_table(s, w)))

    def top_zones(self, cancel: Optional[CancelToken] = None) -> List[TopZone]:
        w = window(self.clock.now(), self._realtime())
        limit = self.settings.top_zones_limit
        return self._run("top zones by pressure", cancel, lambda s, _t: metrics.top_zones(zone_window_table(s, w), limit))

    def fulfillment_risk(self, cancel: Optional[CancelToken] = None) -> List[FulfillmentRisk]:
        w = window(self.clock.now(), self._realtime())
        return self._run("fulfillment risk", cancel, lambda s, _t: metrics.fulfillment_risk(zone_window_table(s, w)))

    def reposition(self, cancel: Optional[CancelToken] = None) -> List[Reposition]:
        w = window(self.clock.now(), self._realtime())
        thr = self.settings.reposition_gap_threshold
        return self._run("reposition recommendations", cancel, lambda s, _t: metrics.reposition(zone_window_table(s, w), thr))

    def surge_prediction(self, cancel: Optional[CancelToken] = None) -> List[SurgePrediction]:
        cur = window(self.clock.now(), self._realtime())
        prev = cur.previous()

        def query(s: StoreSession, _t: CancelToken) -> List[SurgePrediction]:
            return metrics.surge_prediction(
                s.count_orders_by_zone(cur),
                s.count_orders_by_zone(prev),
                s.distinct_riders_by_zone(cur),
            )

        return self._run("surge prediction", cancel, query)

    # ---- rider views ----
    def idle_riders(self, cancel: Optional[CancelToken] = None) -> List[IdleRider]:
        w = window(self.clock.now(), 2 * self._realtime())
        st = self.settings
        return self._run(
            "idle riders",
            cancel,
            lambda s, _t: metrics.idle_riders(
                s.scan_pings(w), st.idle_dwell_threshold_seconds, st.idle_movement_threshold_meters
            ),
        )

    def rider_utilization(self, cancel: Optional[CancelToken] = None) -> List[RiderUtilization]:
        w = window(self.clock.now(), timedelta(minutes=self.settings.utilization_window_minutes))
        speed = self.settings.utilization_active_speed_mps
        return self._run(
            "rider utilization",
            cancel,
            lambda s, t: metrics.rider_utilization(fold_segments(s.scan_pings(w), t), speed),
        )

    def rider_positions(self, cancel: Optional[CancelToken] = None) -> List[RiderPosition]:
        w = window(self.clock.now(), self._realtime())
        return self._run("rider positions", cancel, lambda s, t: metrics.rider_positions(s.scan_pings(w), t))

    def rider_list(self, cancel: Optional[CancelToken] = None) -> List[str]:
        w = window(self.clock.now(), self._historical())
        return self._run("rider list", cancel, lambda s, _t: metrics.rider_list(s.scan_pings(w)))

    def rider_route(
        self,
        rider_id: str,
        from_ts=None,
        to_ts=None,
        cancel: Optional[CancelToken] = None,
    ) -> List[RiderRoutePoint]:
        if rider_id is None or not isinstance(rider_id, str) or not rider_id.strip():
            raise InvalidParameter("rider_id must be a non-empty string")
        now = self.clock.now()
        try:
            start = to_utc(from_ts) if from_ts is not None else now - self._historical()
            end = to_utc(to_ts) if to_ts is not None else now
        except (TypeError, ValueError) as e:
            raise InvalidParameter(f"invalid route time bound: {e}") from e
        if start >= end:
            raise InvalidParameter(f"route range is empty: from {start} is not before to {end}")
        w = Window(start=start, end=end)
        return self._run(
            "rider route",
            cancel,
            lambda s, t: metrics.rider_route(s.scan_pings(w, rider_id=rider_id), t),
            detail=f" for rider {log_safe(rider_id)}",
        )

    # ---- time series ----
    def orders_trend(self, cancel: Optional[CancelToken] = None) -> List[OrdersTrendPoint]:
        w = window(self.clock.now(), timedelta(minutes=self.settings.trend_window_minutes))
        return self._run("orders trend", cancel, lambda s, _t: metrics.orders_trend(s.count_orders_by_zone_minute(w)))

    def peak_gap(self, cancel: Optional[CancelToken] = None) -> List[PeakGap]:
        w = window(self.clock.now(), self._historical())
        return self._run(
            "peak gap",
            cancel,
            lambda s, _t: metrics.peak_gap(s.count_orders_by_zone_minute(w), s.distinct_riders_by_zone_minute(w)),
        )


KPI_OPERATIONS = [
    "supply_gap",
    "top_zones",
    "idle_riders",
    "rider_utilization",
    "orders_trend",
    "peak_gap",
    "fulfillment_risk",
    "reposition",
    "rider_positions",
    "surge_prediction",
    "rider_list",
]
