from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from common.geo import haversine_m
from common.types import PredictionResult, Zone


def contains(zone: Zone, lat: float, lon: float) -> bool:
    """Inclusive bounding-box membership on both axes."""
    return zone.bounds.contains(lat, lon)


@dataclass(frozen=True)
class GateVerdict:
    accepted: bool
    reason: Optional[str]
    distance_to_center_m: float


class ZoneGate:
    """
    Decides whether a prediction may be shown for the selected zone.
    Fallback answers and coordinates outside the zone box are rejected;
    the caller is expected to ask for a new capture.
    """

    def __init__(self, accept_fallback: bool = False):
        self.accept_fallback = accept_fallback

    def check(self, zone: Zone, result: PredictionResult) -> GateVerdict:
        d = haversine_m(zone.center.lat, zone.center.lon, result.latitude, result.longitude)
        if not contains(zone, result.latitude, result.longitude):
            return GateVerdict(False, "outside_zone", d)
        if result.is_fallback and not self.accept_fallback:
            return GateVerdict(False, "fallback", d)
        return GateVerdict(True, None, d)
