"""WGS84 points and the distance measures used by the unlock engine.

Two distance measures are used:
  - planar degrees: Euclidean distance on raw lat/lon, used for centroid
    ranking in the pre-filter (distorted away from the equator)
  - haversine meters: used for the GPS jitter deadband
"""

from __future__ import annotations

import math
from dataclasses import dataclass

EARTH_RADIUS_M = 6_371_000.0


@dataclass(frozen=True, slots=True)
class GeoPoint:
    """WGS84 coordinate."""
    lat: float  # degrees, [-90, 90]
    lon: float  # degrees, [-180, 180]

    def is_valid(self) -> bool:
        return (
            math.isfinite(self.lat)
            and math.isfinite(self.lon)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lon <= 180.0
        )


def planar_distance(a: GeoPoint, b: GeoPoint) -> float:
    """Euclidean distance in degrees, treating lat/lon as Cartesian."""
    return math.hypot(a.lat - b.lat, a.lon - b.lon)


def haversine_m(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two GPS points in meters."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlon = math.radians(b.lon - a.lon)
    h = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def parse_point(text: str) -> GeoPoint:
    """Parse a ``"LAT,LON"`` string."""
    try:
        lat_s, lon_s = text.split(",")
        point = GeoPoint(lat=float(lat_s), lon=float(lon_s))
    except ValueError as e:
        raise ValueError(f"Expected LAT,LON, got {text!r}") from e
    if not point.is_valid():
        raise ValueError(f"Coordinate out of range: {text!r}")
    return point
