import pandas as pd

from zonekpi.aggregate import bucket_gaps, peak_by_zone, pressure, union_join, zone_table


def test_union_join_covers_both_sides_without_repeats():
    orders = {"Z1": 8, "Z3": 1}
    riders = {"Z1": 3, "Z2": 2}
    rows = union_join(orders, riders)

    keys = [k for k, _ in rows]
    assert keys == ["Z1", "Z2", "Z3"]
    assert len(set(keys)) == len(keys)
    assert set(keys) == set(orders) | set(riders)
    assert dict(rows) == {"Z1": (8, 3), "Z2": (0, 2), "Z3": (1, 0)}


def test_zone_table_is_symmetric():
    a = {"Z1": 4, "Z2": 1}
    b = {"Z2": 5, "Z9": 2}
    ab = {z.zone_id: (z.orders, z.riders) for z in zone_table(a, b)}
    ba = {z.zone_id: (z.riders, z.orders) for z in zone_table(b, a)}
    assert ab == ba


def test_gap_is_signed():
    table = {z.zone_id: z.gap for z in zone_table({"Z1": 8}, {"Z1": 3, "Z2": 2})}
    assert table == {"Z1": 5, "Z2": -2}


def test_pressure_floors_denominator():
    assert pressure(5, 0) == 5.0
    assert pressure(0, 0) == 0.0
    assert pressure(8, 3) == 2.67
    assert pressure(1, 3) == 0.33


def test_empty_tables():
    assert union_join({}, {}) == []
    assert zone_table({}, {}) == []


def test_bucket_gaps_and_peaks():
    m0 = pd.Timestamp("2026-03-02 11:00", tz="UTC")
    m1 = pd.Timestamp("2026-03-02 11:01", tz="UTC")
    orders = {("Z1", m0): 5, ("Z1", m1): 2, ("Z2", m0): 1}
    riders = {("Z1", m0): 1, ("Z2", m1): 4, ("Z3", m0): 2}

    gaps = bucket_gaps(orders, riders)
    assert gaps == {("Z1", m0): 4, ("Z1", m1): 2, ("Z2", m0): 1, ("Z2", m1): -4, ("Z3", m0): -2}
    assert peak_by_zone(gaps) == {"Z1": 4, "Z2": 1, "Z3": -2}
