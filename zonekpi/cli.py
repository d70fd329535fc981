from __future__ import annotations

import argparse
import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import List

import pandas as pd

from .config import KpiSettings, StoreSettings, apply_overrides, load_yaml, merge_dicts, now_tag, save_yaml
from .logging_utils import setup_logger
from .producers import build_producers
from .service import KPI_OPERATIONS, KpiService
from .store import InMemoryEventStore
from .windows import FixedClock, SystemClock, Window, to_utc


def _records_frame(records: list) -> pd.DataFrame:
    if not records:
        return pd.DataFrame()
    if isinstance(records[0], str):
        return pd.DataFrame({"rider_id": records})
    return pd.DataFrame([r.to_dict() for r in records])


def _sim_window(cfg: dict, minutes_arg: int | None):
    sim = cfg.get("simulate", {}) if isinstance(cfg.get("simulate", {}), dict) else {}
    minutes = int(minutes_arg if minutes_arg is not None else sim.get("minutes", 30))
    if minutes <= 0:
        raise SystemExit(f"--minutes must be > 0 (got {minutes})")
    start = sim.get("start")
    start_ts = to_utc(start) if start else SystemClock().now().floor("min") - timedelta(minutes=minutes)
    return start_ts, start_ts + timedelta(minutes=minutes)


def run_report(cfg: dict, out_dir: str, minutes: int | None = None) -> dict:
    """Simulate event traffic into a fresh store and write every KPI view as CSV.

    Returns a ``{kpi_name: row_count}`` summary.
    """
    os.makedirs(out_dir, exist_ok=True)
    logger = logging.getLogger("zonekpi")

    # fail fast on bad settings before any simulation work
    settings = KpiSettings.from_cfg(cfg)
    store = InMemoryEventStore.from_settings(StoreSettings.from_cfg(cfg))

    start, end = _sim_window(cfg, minutes)
    for producer in build_producers(cfg, store):
        n = producer.simulate(start, end)
        logger.info("%s generated %d events over %s -> %s", type(producer).__name__, n, start, end)

    # raw events of the simulated span
    with store.session() as s:
        span = Window(start=start, end=end)
        s.scan_orders(span).to_csv(os.path.join(out_dir, "orders.csv"), index=False, encoding="utf-8-sig")
        s.scan_pings(span).to_csv(os.path.join(out_dir, "pings.csv"), index=False, encoding="utf-8-sig")

    service = KpiService(store, settings, clock=FixedClock(end))

    summary = {}
    for name in KPI_OPERATIONS:
        records = getattr(service, name)()
        _records_frame(records).to_csv(os.path.join(out_dir, f"{name}.csv"), index=False, encoding="utf-8-sig")
        summary[name] = len(records)
        logger.info("%s: %d rows", name, len(records))

    riders = service.rider_list()
    route = service.rider_route(riders[0]) if riders else []
    _records_frame(route).to_csv(os.path.join(out_dir, "rider_route.csv"), index=False, encoding="utf-8-sig")
    summary["rider_route"] = len(route)

    pd.DataFrame([summary]).to_csv(os.path.join(out_dir, "summary.csv"), index=False, encoding="utf-8-sig")
    return summary


def main(argv: List[str] | None = None) -> None:
    p = argparse.ArgumentParser(prog="zonekpi-report", description="Simulate traffic and dump KPI views")
    p.add_argument("--base", action="append", default=None, help="base YAML (repeatable, merged in order)")
    p.add_argument("--override", action="append", default=[], help="extra YAML merged over the bases")
    p.add_argument("--set", action="append", default=[], dest="assignments", metavar="KEY=VALUE")
    p.add_argument("--minutes", type=int, default=None)
    p.add_argument("--out-tag", default=None)
    args = p.parse_args(argv)

    cfg: dict = {}
    for path in args.base or ["configs/base.yaml"]:
        cfg = merge_dicts(cfg, load_yaml(path))
    for path in args.override:
        cfg = merge_dicts(cfg, load_yaml(path))
    cfg = apply_overrides(cfg, args.assignments)

    run_root = cfg.get("paths", {}).get("run_root", "runs")
    out_dir = os.path.join(run_root, args.out_tag or f"report_{now_tag()}")
    os.makedirs(out_dir, exist_ok=True)

    log_cfg = cfg.get("logging", {}) if isinstance(cfg.get("logging", {}), dict) else {}
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    setup_logger("zonekpi", Path(out_dir) / str(log_cfg.get("log_file", "report.log")), level=level)

    save_yaml(cfg, os.path.join(out_dir, "config_resolved.yaml"))
    run_report(cfg, out_dir, minutes=args.minutes)
    print(f"[DONE] {os.path.join(out_dir, 'summary.csv')}")


if __name__ == "__main__":
    main()
