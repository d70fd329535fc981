import os
from pathlib import Path

import pandas as pd

from zonekpi.cli import main, run_report
from zonekpi.config import load_yaml
from zonekpi.service import KPI_OPERATIONS

BASE = Path(__file__).resolve().parents[1] / "configs" / "base.yaml"


def test_report_smoke(tmp_path):
    cfg = load_yaml(str(BASE))
    cfg["simulate"] = {"minutes": 6, "start": "2026-03-02T11:00:00Z"}

    out_dir = tmp_path / "run"
    summary = run_report(cfg, str(out_dir))

    for name in KPI_OPERATIONS + ["rider_route", "summary"]:
        assert os.path.exists(out_dir / f"{name}.csv"), name

    s = pd.read_csv(out_dir / "summary.csv")
    assert int(s.loc[0, "supply_gap"]) == summary["supply_gap"] > 0
    assert summary["rider_list"] == 40
    assert summary["rider_route"] > 0

    gap = pd.read_csv(out_dir / "supply_gap.csv")
    assert list(gap.columns) == ["zone_id", "orders", "riders", "gap", "pressure"]
    assert gap["gap"].is_monotonic_decreasing

    orders = pd.read_csv(out_dir / "orders.csv")
    pings = pd.read_csv(out_dir / "pings.csv")
    assert len(orders) > 0
    assert pd.to_datetime(orders["created_at"], utc=True).is_monotonic_increasing
    assert len(pings) == 6 * 60 * 20


def test_cli_main(tmp_path):
    main(
        [
            "--base",
            str(BASE),
            "--set",
            f"paths.run_root={tmp_path}",
            "--set",
            "simulate.start=2026-03-02T11:00:00Z",
            "--set",
            "producers.pings.rider_count=5",
            "--minutes",
            "3",
            "--out-tag",
            "cli",
        ]
    )
    out_dir = tmp_path / "cli"
    assert (out_dir / "summary.csv").exists()
    assert (out_dir / "config_resolved.yaml").exists()
    assert (out_dir / "report.log").exists()
