import logging
import threading
import time
from datetime import timedelta

import pandas as pd
import pytest

from zonekpi.config import ConfigError
from zonekpi.errors import StoreUnavailable
from zonekpi.producers import (
    DEFAULT_ZONES,
    OrderProducer,
    OrderProducerSettings,
    PingProducer,
    PingProducerSettings,
    _BatchingProducer,
    build_producers,
)
from zonekpi.service import KpiService
from zonekpi.windows import FixedClock

T0 = pd.Timestamp("2026-03-02 11:00", tz="UTC")


class ListSink:
    """Collects batches; the first ``fail_times`` writes raise StoreUnavailable."""

    def __init__(self, fail_times: int = 0):
        self.orders = []
        self.pings = []
        self.fail_times = fail_times
        self.writes = 0

    def _take(self, target, batch):
        self.writes += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise StoreUnavailable("sink is down")
        target.extend(batch)
        return len(batch)

    def append_orders(self, batch):
        return self._take(self.orders, batch)

    def append_pings(self, batch):
        return self._take(self.pings, batch)


def test_same_seed_replays_same_events():
    a, b = ListSink(), ListSink()
    OrderProducer(a).simulate(T0, T0 + timedelta(seconds=20))
    OrderProducer(b).simulate(T0, T0 + timedelta(seconds=20))
    assert a.orders and a.orders == b.orders

    c = ListSink()
    OrderProducer(c, OrderProducerSettings(seed=1)).simulate(T0, T0 + timedelta(seconds=20))
    assert c.orders != a.orders


def test_flush_on_batch_size():
    sink = ListSink()
    p = OrderProducer(sink, OrderProducerSettings(batch_size=3, flush_interval_ms=600_000))
    p.tick(T0)
    p.tick(T0)
    assert sink.orders == []
    p.tick(T0)
    assert len(sink.orders) == 3
    assert p.buffer == []


def test_flush_on_interval():
    sink = ListSink()
    p = OrderProducer(sink, OrderProducerSettings(batch_size=100, flush_interval_ms=1000))
    p.tick(T0)
    p.tick(T0 + timedelta(milliseconds=999))
    assert sink.orders == []
    p.tick(T0 + timedelta(seconds=1))
    assert len(sink.orders) == 3


def test_failed_flush_keeps_batch_for_next_cycle():
    sink = ListSink(fail_times=1)
    p = OrderProducer(sink, OrderProducerSettings(batch_size=2, flush_interval_ms=1000))
    first = [p.tick(T0), p.tick(T0)]
    assert p.failed_flushes == 1
    assert p.buffer == first
    assert sink.orders == []

    # the size trigger does not retry before the next cycle
    second = p.tick(T0 + timedelta(milliseconds=500))
    assert sink.writes == 1
    assert p.buffer == first + [second]

    third = p.tick(T0 + timedelta(seconds=1))
    assert sink.orders == first + [second, third]
    assert p.flushed == 4
    assert p.buffer == []


def test_sustained_outage_retries_per_cycle_and_bounds_buffer(caplog):
    sink = ListSink(fail_times=10**9)
    p = OrderProducer(sink, OrderProducerSettings(batch_size=2, flush_interval_ms=1000))
    with caplog.at_level(logging.WARNING, logger="zonekpi.producers"):
        for i in range(1000):
            p.tick(T0 + timedelta(milliseconds=10 * i))

    # ten seconds of simulated time, one retry per second
    assert p.failed_flushes == 10
    assert sink.writes == 10
    assert len(p.buffer) == p.max_buffer == 2 * OrderProducer.MAX_BUFFERED_BATCHES
    assert p.sent == p.flushed + len(p.buffer) + p.dropped
    assert sum(r.levelno == logging.WARNING for r in caplog.records) == 1
    assert sum(r.levelno == logging.ERROR for r in caplog.records) == 10

    # once the sink is back the newest events still land
    pending = list(p.buffer)
    sink.fail_times = 0
    assert p.flush(T0 + timedelta(seconds=11))
    assert sink.orders == pending
    assert p.buffer == []


def test_base_producer_is_abstract():
    with pytest.raises(TypeError):
        _BatchingProducer(ListSink(), batch_size=1, flush_interval_ms=1, seed=0)


def test_spike_zones():
    sink = ListSink()
    s = OrderProducerSettings(spike_probability=1.0, spike_zones=("Z07",))
    OrderProducer(sink, s).simulate(T0, T0 + timedelta(seconds=10))
    assert {o.zone_id for o in sink.orders} == {"Z07"}

    sink = ListSink()
    OrderProducer(sink, OrderProducerSettings(spike_probability=0.0)).simulate(T0, T0 + timedelta(minutes=1))
    zones = {o.zone_id for o in sink.orders}
    assert zones <= set(DEFAULT_ZONES)
    assert len(zones) > 2


def test_ping_producer_rate_and_riders():
    sink = ListSink()
    p = PingProducer(sink, PingProducerSettings(rider_count=5, target_rate=10))
    n = p.simulate(T0, T0 + timedelta(seconds=30))
    assert n == 300
    assert len(sink.pings) == 300
    assert {e.rider_id for e in sink.pings} <= {"R0001", "R0002", "R0003", "R0004", "R0005"}
    assert all(T0 <= pd.Timestamp(e.timestamp) < T0 + timedelta(seconds=30) for e in sink.pings)
    assert len({e.id for e in sink.pings}) == 300


def test_riders_are_private_to_their_producer():
    a = PingProducer(ListSink(), PingProducerSettings(rider_count=3))
    b = PingProducer(ListSink(), PingProducerSettings(rider_count=3))
    assert [r.rider_id for r in a.riders] == [r.rider_id for r in b.riders]
    before = b.riders[0].lat
    for _ in range(20):
        a.tick(T0)
    assert b.riders[0].lat == before
    assert all(x is not y for x, y in zip(a.riders, b.riders))


def test_simulated_traffic_feeds_the_kpis(store):
    end = T0 + timedelta(minutes=6)
    for producer in build_producers({}, store):
        producer.simulate(T0, end)
    assert store.order_count > 0
    assert store.ping_count == 6 * 60 * 20

    service = KpiService(store, clock=FixedClock(end))
    gaps = service.supply_gap()
    assert gaps
    assert {g.zone_id for g in gaps} <= set(DEFAULT_ZONES)
    assert len(service.rider_list()) == 40


def test_build_producers_respects_enabled():
    producers = build_producers({"producers": {"orders": {"enabled": False}}}, ListSink())
    assert [type(p) for p in producers] == [PingProducer]


@pytest.mark.parametrize(
    "cfg",
    [
        {"producers": {"orders": {"min_interval_ms": 500, "max_interval_ms": 100}}},
        {"producers": {"orders": {"spike_probability": 1.5}}},
        {"producers": {"orders": {"batch_size": "lots"}}},
        {"producers": {"orders": {"all_zones": []}}},
    ],
)
def test_invalid_order_settings(cfg):
    with pytest.raises(ConfigError):
        OrderProducerSettings.from_cfg(cfg)


@pytest.mark.parametrize(
    "cfg",
    [
        {"producers": {"pings": {"zones": ["Z1", "Z2"], "zone_centers": [[0.0, 0.0]]}}},
        {"producers": {"pings": {"rider_count": 0}}},
        {"producers": {"pings": {"target_rate": -1}}},
        {"producers": {"pings": {"zone_centers": [[0.0]] * len(DEFAULT_ZONES)}}},
    ],
)
def test_invalid_ping_settings(cfg):
    with pytest.raises(ConfigError):
        PingProducerSettings.from_cfg(cfg)


def test_run_until_stopped():
    sink = ListSink()
    p = PingProducer(sink, PingProducerSettings(rider_count=2, target_rate=500, flush_interval_ms=10))
    stop = threading.Event()
    t = threading.Thread(target=p.run, args=(stop,), daemon=True)
    t.start()
    time.sleep(0.1)
    stop.set()
    t.join(timeout=5)

    assert not t.is_alive()
    assert p.sent > 0
    # the final flush drains whatever was buffered
    assert len(sink.pings) == p.sent
    assert p.buffer == []
