from __future__ import annotations

import math
from typing import Tuple


_EARTH_R_M = 6371008.8  # mean Earth radius (m)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance on WGS84 sphere approximation."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2 * _EARTH_R_M * math.asin(math.sqrt(min(1.0, a)))


def in_range(v: float, lo: float, hi: float) -> bool:
    """Inclusive range membership."""
    return lo <= v <= hi


def bbox_center(min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> Tuple[float, float]:
    """(lat, lon) midpoint of an axis-aligned lat/lon box."""
    return (0.5 * (min_lat + max_lat), 0.5 * (min_lon + max_lon))
