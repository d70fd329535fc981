"""Configuration utilities.

- Fail fast on missing files / invalid structure.
- Keep config mutation explicit and localized.
- Typed settings are parsed once from the merged dict and then treated as
  read-only by every query.
"""

from __future__ import annotations

import os
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

import yaml


class ConfigError(ValueError):
    """Raised when configuration is missing or invalid."""


def load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        obj = yaml.safe_load(f)
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError(f"YAML root must be a mapping (dict). Got: {type(obj).__name__} @ {path}")
    return obj


def save_yaml(obj: Dict[str, Any], path: str) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(obj, f, allow_unicode=True, sort_keys=False)


def now_tag() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)

    def rec(a: Dict[str, Any], b: Dict[str, Any]) -> None:
        for k, v in b.items():
            if isinstance(v, dict) and isinstance(a.get(k), dict):
                rec(a[k], v)
            else:
                a[k] = v

    rec(out, override)
    return out


def deep_set(cfg: Dict[str, Any], dotted_path: str, value: Any) -> None:
    keys = dotted_path.split(".")
    cur: Dict[str, Any] = cfg
    for k in keys[:-1]:
        nxt = cur.get(k)
        if nxt is None:
            nxt = {}
            cur[k] = nxt
        if not isinstance(nxt, dict):
            raise ConfigError(
                f"Cannot deep-set '{dotted_path}': '{k}' is not a dict (got {type(nxt).__name__})"
            )
        cur = nxt
    cur[keys[-1]] = value


def coerce_scalar(v: Any) -> Any:
    """Turn a command-line string into the most meaningful scalar type.

    - "none"/"null" -> None
    - "true"/"false" -> bool
    - "1", "1.2" -> int/float
    - anything else stays a str
    """
    if v is None:
        return None
    if isinstance(v, (int, float, bool)):
        return v
    if isinstance(v, str):
        s = v.strip()
        lo = s.lower()
        if lo in ("none", "null", "~"):
            return None
        if lo in ("true", "false"):
            return lo == "true"
        try:
            if "." in s or "e" in lo:
                return float(s)
            return int(s)
        except ValueError:
            return s
    return v


def apply_overrides(cfg: Dict[str, Any], assignments: list) -> Dict[str, Any]:
    """Apply ``dotted.path=value`` assignments to a copy of ``cfg``."""
    out = deepcopy(cfg)
    for item in assignments:
        if "=" not in item:
            raise ConfigError(f"Override must look like 'section.key=value' (got {item!r})")
        path, raw = item.split("=", 1)
        path = path.strip()
        if not path:
            raise ConfigError(f"Override has an empty key path: {item!r}")
        deep_set(out, path, coerce_scalar(raw))
    return out


def _section(cfg: dict, name: str) -> dict:
    sec = cfg.get(name, {})
    if sec is None:
        return {}
    if not isinstance(sec, dict):
        raise ConfigError(f"'{name}' section must be a mapping (got {type(sec).__name__})")
    return sec


@dataclass(frozen=True)
class KpiSettings:
    """Tunable windows and thresholds behind the KPI queries."""

    realtime_window_minutes: int = 5
    trend_window_minutes: int = 60
    historical_window_hours: int = 24
    idle_dwell_threshold_seconds: int = 300
    idle_movement_threshold_meters: float = 50.0
    utilization_window_minutes: int = 30
    utilization_active_speed_mps: float = 3.0
    reposition_gap_threshold: int = 2
    top_zones_limit: int = 10

    def __post_init__(self):
        for name in (
            "realtime_window_minutes",
            "trend_window_minutes",
            "historical_window_hours",
            "utilization_window_minutes",
            "top_zones_limit",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"kpi.{name} must be > 0 (got {getattr(self, name)})")
        for name in (
            "idle_dwell_threshold_seconds",
            "idle_movement_threshold_meters",
            "utilization_active_speed_mps",
        ):
            if getattr(self, name) < 0:
                raise ConfigError(f"kpi.{name} must be >= 0 (got {getattr(self, name)})")

    @staticmethod
    def from_cfg(cfg: dict) -> "KpiSettings":
        k = _section(cfg, "kpi")
        d = KpiSettings.__dataclass_fields__
        try:
            return KpiSettings(
                realtime_window_minutes=int(k.get("realtime_window_minutes", d["realtime_window_minutes"].default)),
                trend_window_minutes=int(k.get("trend_window_minutes", d["trend_window_minutes"].default)),
                historical_window_hours=int(k.get("historical_window_hours", d["historical_window_hours"].default)),
                idle_dwell_threshold_seconds=int(
                    k.get("idle_dwell_threshold_seconds", d["idle_dwell_threshold_seconds"].default)
                ),
                idle_movement_threshold_meters=float(
                    k.get("idle_movement_threshold_meters", d["idle_movement_threshold_meters"].default)
                ),
                utilization_window_minutes=int(
                    k.get("utilization_window_minutes", d["utilization_window_minutes"].default)
                ),
                utilization_active_speed_mps=float(
                    k.get("utilization_active_speed_mps", d["utilization_active_speed_mps"].default)
                ),
                reposition_gap_threshold=int(k.get("reposition_gap_threshold", d["reposition_gap_threshold"].default)),
                top_zones_limit=int(k.get("top_zones_limit", d["top_zones_limit"].default)),
            )
        except (TypeError, ValueError) as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid kpi config value: {e}") from e


@dataclass(frozen=True)
class StoreSettings:
    pool_size: int = 8
    acquire_timeout_sec: float = 5.0

    @staticmethod
    def from_cfg(cfg: dict) -> "StoreSettings":
        s = _section(cfg, "store")
        try:
            pool_size = int(s.get("pool_size", 8))
            timeout = float(s.get("acquire_timeout_sec", 5.0))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid store config value: {e}") from e
        if pool_size <= 0:
            raise ConfigError(f"store.pool_size must be > 0 (got {pool_size})")
        if timeout <= 0:
            raise ConfigError(f"store.acquire_timeout_sec must be > 0 (got {timeout})")
        return StoreSettings(pool_size=pool_size, acquire_timeout_sec=timeout)
