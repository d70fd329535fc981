"""Synthetic event producers.

Two independent periodic tasks feed an event store:

- ``OrderProducer``: order-created events, with a configurable chance of
  landing in a "spike" zone to create demand hot spots.
- ``PingProducer``: GPS pings from a fleet of simulated riders that drift a
  little on every ping.

Each producer owns its state outright (simulated riders are records private
to one ``PingProducer``) and draws from its own seeded ``numpy`` generator, so
a given seed replays the same event sequence.

Events are buffered and flushed when the buffer reaches ``batch_size`` or
``flush_interval_ms`` has passed since the last flush. A failed flush keeps
the batch and retries once ``flush_interval_ms`` has passed again
(at-least-once; a retried batch may land twice). While the sink stays down
the buffer is capped at ``MAX_BUFFERED_BATCHES`` batches; the oldest events
are dropped past that.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from .config import ConfigError
from .errors import StoreUnavailable
from .models import OrderEvent, RiderPing
from .windows import SystemClock, to_utc

logger = logging.getLogger(__name__)

DEFAULT_ZONES = ["Z01", "Z02", "Z03", "Z04", "Z05", "Z06", "Z07", "Z08"]

# (lat, lon) per default zone
DEFAULT_ZONE_CENTERS = [
    (5.6037, -0.1870),
    (5.6148, -0.2057),
    (5.5913, -0.2200),
    (5.6500, -0.1660),
    (5.5560, -0.1969),
    (5.6360, -0.2320),
    (5.5800, -0.1530),
    (5.6700, -0.2050),
]

DEFAULT_STATIONS = ["ST-A", "ST-B", "ST-C"]


def _str_list(v, name: str) -> List[str]:
    if not isinstance(v, list) or not v:
        raise ConfigError(f"{name} must be a non-empty list (got {v!r})")
    return [str(x) for x in v]


@dataclass(frozen=True)
class OrderProducerSettings:
    enabled: bool = True
    min_interval_ms: int = 50
    max_interval_ms: int = 400
    spike_probability: float = 0.3
    spike_zones: Tuple[str, ...] = ("Z01", "Z02")
    all_zones: Tuple[str, ...] = tuple(DEFAULT_ZONES)
    batch_size: int = 200
    flush_interval_ms: int = 2000
    seed: int = 42

    @staticmethod
    def from_cfg(cfg: dict) -> "OrderProducerSettings":
        pcfg = (cfg.get("producers") or {}).get("orders") or {}
        if not isinstance(pcfg, dict):
            raise ConfigError("'producers.orders' must be a mapping")
        d = OrderProducerSettings()
        try:
            s = OrderProducerSettings(
                enabled=bool(pcfg.get("enabled", d.enabled)),
                min_interval_ms=int(pcfg.get("min_interval_ms", d.min_interval_ms)),
                max_interval_ms=int(pcfg.get("max_interval_ms", d.max_interval_ms)),
                spike_probability=float(pcfg.get("spike_probability", d.spike_probability)),
                spike_zones=tuple(str(z) for z in (pcfg.get("spike_zones") or [])) if "spike_zones" in pcfg else d.spike_zones,
                all_zones=tuple(_str_list(pcfg["all_zones"], "producers.orders.all_zones"))
                if "all_zones" in pcfg
                else d.all_zones,
                batch_size=int(pcfg.get("batch_size", d.batch_size)),
                flush_interval_ms=int(pcfg.get("flush_interval_ms", d.flush_interval_ms)),
                seed=int(pcfg.get("seed", d.seed)),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid producers.orders value: {e}") from e

        if not (0 < s.min_interval_ms <= s.max_interval_ms):
            raise ConfigError(
                f"producers.orders needs 0 < min_interval_ms <= max_interval_ms "
                f"(got {s.min_interval_ms}, {s.max_interval_ms})"
            )
        if not (0.0 <= s.spike_probability <= 1.0):
            raise ConfigError(f"spike_probability must be in [0,1] (got {s.spike_probability})")
        if s.batch_size <= 0 or s.flush_interval_ms <= 0:
            raise ConfigError("producers.orders batch_size and flush_interval_ms must be > 0")
        return s


@dataclass(frozen=True)
class PingProducerSettings:
    enabled: bool = True
    rider_count: int = 40
    target_rate: float = 20.0  # pings per second, whole fleet
    batch_size: int = 500
    flush_interval_ms: int = 2000
    zones: Tuple[str, ...] = tuple(DEFAULT_ZONES)
    zone_centers: Tuple[Tuple[float, float], ...] = tuple(DEFAULT_ZONE_CENTERS)
    stations: Tuple[str, ...] = tuple(DEFAULT_STATIONS)
    seed: int = 7

    @staticmethod
    def from_cfg(cfg: dict) -> "PingProducerSettings":
        pcfg = (cfg.get("producers") or {}).get("pings") or {}
        if not isinstance(pcfg, dict):
            raise ConfigError("'producers.pings' must be a mapping")
        d = PingProducerSettings()
        try:
            zones = tuple(_str_list(pcfg["zones"], "producers.pings.zones")) if "zones" in pcfg else d.zones
            centers = (
                tuple((float(c[0]), float(c[1])) for c in pcfg["zone_centers"])
                if "zone_centers" in pcfg
                else d.zone_centers
            )
            s = PingProducerSettings(
                enabled=bool(pcfg.get("enabled", d.enabled)),
                rider_count=int(pcfg.get("rider_count", d.rider_count)),
                target_rate=float(pcfg.get("target_rate", d.target_rate)),
                batch_size=int(pcfg.get("batch_size", d.batch_size)),
                flush_interval_ms=int(pcfg.get("flush_interval_ms", d.flush_interval_ms)),
                zones=zones,
                zone_centers=centers,
                stations=tuple(_str_list(pcfg["stations"], "producers.pings.stations"))
                if "stations" in pcfg
                else d.stations,
                seed=int(pcfg.get("seed", d.seed)),
            )
        except (TypeError, ValueError, IndexError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid producers.pings value: {e}") from e

        if len(s.zones) != len(s.zone_centers):
            raise ConfigError(
                f"producers.pings.zone_centers must match zones ({len(s.zone_centers)} != {len(s.zones)})"
            )
        if s.rider_count <= 0 or s.target_rate <= 0:
            raise ConfigError("producers.pings rider_count and target_rate must be > 0")
        if s.batch_size <= 0 or s.flush_interval_ms <= 0:
            raise ConfigError("producers.pings batch_size and flush_interval_ms must be > 0")
        return s


@dataclass
class SimulatedRider:
    """Mutable position of one simulated rider, owned by a single producer."""

    rider_id: str
    rider_phone: str
    station_id: str
    zone_id: str
    lat: float
    lon: float


def _uuid(rng: np.random.Generator) -> str:
    return str(uuid.UUID(bytes=rng.bytes(16), version=4))


class _BatchingProducer(ABC):
    kind = "events"

    # buffered events kept during a sink outage, in batches; older ones are dropped
    MAX_BUFFERED_BATCHES = 10

    def __init__(self, sink, batch_size: int, flush_interval_ms: int, seed: int):
        self.sink = sink
        self.batch_size = int(batch_size)
        self.flush_interval = timedelta(milliseconds=int(flush_interval_ms))
        self.max_buffer = self.batch_size * self.MAX_BUFFERED_BATCHES
        self.rng = np.random.default_rng(seed)
        self.buffer: list = []
        self.sent = 0
        self.flushed = 0
        self.dropped = 0
        self.failed_flushes = 0
        self._last_flush: Optional[pd.Timestamp] = None
        self._sink_down = False
        self._outage_dropped = 0

    @abstractmethod
    def _write(self, batch: list) -> None:
        ...

    @abstractmethod
    def make_event(self, now: pd.Timestamp):
        ...

    @abstractmethod
    def next_delay_ms(self) -> float:
        ...

    def _interval_elapsed(self, now: pd.Timestamp) -> bool:
        return self._last_flush is not None and now - self._last_flush >= self.flush_interval

    def should_flush(self, now: pd.Timestamp) -> bool:
        if not self.buffer:
            return False
        if self._sink_down:
            # after a failed write only the next cycle retries
            return self._interval_elapsed(now)
        if len(self.buffer) >= self.batch_size:
            return True
        return self._interval_elapsed(now)

    def flush(self, now) -> bool:
        """Write the buffer to the sink; on failure keep it for the next cycle."""
        now = to_utc(now)
        if not self.buffer:
            self._last_flush = now
            return True
        batch = list(self.buffer)
        try:
            self._write(batch)
        except StoreUnavailable as e:
            self.failed_flushes += 1
            self._sink_down = True
            self._last_flush = now
            logger.error("Failed to flush %d %s, retrying next cycle: %s", len(batch), self.kind, e)
            return False
        del self.buffer[: len(batch)]
        self.flushed += len(batch)
        self._last_flush = now
        if self._sink_down:
            logger.info("Sink recovered for %s (%d dropped during the outage)", self.kind, self._outage_dropped)
        self._sink_down = False
        self._outage_dropped = 0
        logger.info("Flushed %d %s (total sent: %d)", len(batch), self.kind, self.sent)
        return True

    def _trim_buffer(self) -> None:
        over = len(self.buffer) - self.max_buffer
        if over <= 0:
            return
        if self._outage_dropped == 0:
            logger.warning("%s buffer is full at %d events, dropping the oldest", self.kind, self.max_buffer)
        del self.buffer[:over]
        self.dropped += over
        self._outage_dropped += over

    def tick(self, now):
        """Generate one event at ``now`` and flush if a trigger fired."""
        now = to_utc(now)
        if self._last_flush is None:
            self._last_flush = now
        event = self.make_event(now)
        self.buffer.append(event)
        self.sent += 1
        self._trim_buffer()
        if self.should_flush(now):
            self.flush(now)
        return event

    def simulate(self, start, end) -> int:
        """Drive the producer over ``[start, end)`` in simulated time."""
        t = to_utc(start)
        end = to_utc(end)
        n = 0
        while t < end:
            self.tick(t)
            n += 1
            t = t + timedelta(milliseconds=self.next_delay_ms())
        self.flush(end)
        return n

    def run(self, stop: threading.Event, clock=None) -> None:
        """Produce in real time until ``stop`` is set, then flush what is left."""
        clock = clock or SystemClock()
        logger.info("%s started", type(self).__name__)
        try:
            while not stop.is_set():
                self.tick(clock.now())
                stop.wait(self.next_delay_ms() / 1000.0)
        finally:
            self.flush(clock.now())
            logger.info("%s stopped (total sent: %d)", type(self).__name__, self.sent)


class OrderProducer(_BatchingProducer):
    kind = "orders"

    def __init__(self, sink, settings: Optional[OrderProducerSettings] = None):
        self.settings = settings or OrderProducerSettings()
        super().__init__(sink, self.settings.batch_size, self.settings.flush_interval_ms, self.settings.seed)

    def _write(self, batch: list) -> None:
        self.sink.append_orders(batch)

    def pick_zone(self) -> str:
        s = self.settings
        if s.spike_zones and self.rng.random() < s.spike_probability:
            return s.spike_zones[int(self.rng.integers(0, len(s.spike_zones)))]
        return s.all_zones[int(self.rng.integers(0, len(s.all_zones)))]

    def make_event(self, now: pd.Timestamp) -> OrderEvent:
        return OrderEvent(order_id=_uuid(self.rng), zone_id=self.pick_zone(), created_at=now.to_pydatetime())

    def next_delay_ms(self) -> float:
        return float(self.rng.integers(self.settings.min_interval_ms, self.settings.max_interval_ms + 1))


class PingProducer(_BatchingProducer):
    kind = "pings"

    # per-ping drift, in degrees
    JITTER_DEG = 0.0002

    def __init__(self, sink, settings: Optional[PingProducerSettings] = None):
        self.settings = settings or PingProducerSettings()
        super().__init__(sink, self.settings.batch_size, self.settings.flush_interval_ms, self.settings.seed)
        self.riders: List[SimulatedRider] = self._create_riders()

    def _create_riders(self) -> List[SimulatedRider]:
        s = self.settings
        riders = []
        for i in range(s.rider_count):
            zi = int(self.rng.integers(0, len(s.zones)))
            c_lat, c_lon = s.zone_centers[zi]
            riders.append(
                SimulatedRider(
                    rider_id=f"R{i + 1:04d}",
                    rider_phone=f"233{int(self.rng.integers(200_000_000, 600_000_000))}",
                    station_id=s.stations[int(self.rng.integers(0, len(s.stations)))],
                    zone_id=s.zones[zi],
                    lat=c_lat + self.rng.uniform(-0.01, 0.01),
                    lon=c_lon + self.rng.uniform(-0.01, 0.01),
                )
            )
        return riders

    def _write(self, batch: list) -> None:
        self.sink.append_pings(batch)

    def make_event(self, now: pd.Timestamp) -> RiderPing:
        rider = self.riders[int(self.rng.integers(0, len(self.riders)))]
        rider.lat += self.rng.uniform(-self.JITTER_DEG, self.JITTER_DEG)
        rider.lon += self.rng.uniform(-self.JITTER_DEG, self.JITTER_DEG)
        return RiderPing(
            id=_uuid(self.rng),
            event_id=_uuid(self.rng),
            rider_id=rider.rider_id,
            lat=round(rider.lat, 6),
            lon=round(rider.lon, 6),
            rider_phone=rider.rider_phone,
            station_id=rider.station_id,
            zone_id=rider.zone_id,
            timestamp=now.to_pydatetime(),
        )

    def next_delay_ms(self) -> float:
        return 1000.0 / self.settings.target_rate


def build_producers(cfg: dict, sink) -> List[_BatchingProducer]:
    """Enabled producers for ``cfg``; each gets its own settings and RNG."""
    out: List[_BatchingProducer] = []
    o = OrderProducerSettings.from_cfg(cfg)
    if o.enabled:
        out.append(OrderProducer(sink, o))
    p = PingProducerSettings.from_cfg(cfg)
    if p.enabled:
        out.append(PingProducer(sink, p))
    return out
