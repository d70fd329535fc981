"""Planar (equirectangular) distance.

One formula serves every distance in the package. It is a short-range
approximation: degrees are scaled by a constant metres-per-degree and the
longitude span is shrunk by the cosine of a reference latitude.
"""

from __future__ import annotations

import math

import numpy as np

METERS_PER_DEGREE = 111320.0


def planar_distance_m(lat1: float, lon1: float, lat2: float, lon2: float, ref_lat: float | None = None) -> float:
    """Distance in metres between two points.

    ``ref_lat`` defaults to ``lat2`` (the later point of a pair).
    """
    if ref_lat is None:
        ref_lat = lat2
    dlat = lat2 - lat1
    dlon = math.cos(math.radians(ref_lat)) * (lon2 - lon1)
    return METERS_PER_DEGREE * math.sqrt(dlat * dlat + dlon * dlon)


def bbox_movement_m(lats: np.ndarray, lons: np.ndarray) -> float:
    """Diagonal of the bounding box of a ping cloud, at its mean latitude."""
    lats = np.asarray(lats, dtype=float)
    lons = np.asarray(lons, dtype=float)
    if lats.size == 0:
        return 0.0
    lat_min, lat_max = float(lats.min()), float(lats.max())
    lon_min, lon_max = float(lons.min()), float(lons.max())
    return planar_distance_m(lat_min, lon_min, lat_max, lon_max, ref_lat=float(lats.mean()))
