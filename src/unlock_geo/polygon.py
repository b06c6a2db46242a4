"""Point-in-polygon containment for district boundaries.

Polygons are ordered vertex lists, implicitly closed (the last vertex
connects back to the first). Latitude/longitude are treated as planar
Cartesian coordinates, which is fine at city scale.

Points exactly on an edge or vertex may resolve either way.
"""

from __future__ import annotations

from collections.abc import Sequence

from unlock_geo.points import GeoPoint


def contains(point: GeoPoint, polygon: Sequence[GeoPoint]) -> bool:
    """Even-odd ray casting test. Pure function."""
    n = len(polygon)
    if n < 3:
        return False

    inside = False
    lat, lon = point.lat, point.lon
    j = n - 1
    for i in range(n):
        a = polygon[i]
        b = polygon[j]
        # Edge crosses the point's meridian
        if (a.lon > lon) != (b.lon > lon):
            cross_lat = (b.lat - a.lat) * (lon - a.lon) / (b.lon - a.lon) + a.lat
            if lat < cross_lat:
                inside = not inside
        j = i
    return inside


def centroid(polygon: Sequence[GeoPoint]) -> GeoPoint:
    """Vertex mean, not the area centroid."""
    if not polygon:
        raise ValueError("centroid of an empty polygon")
    n = len(polygon)
    return GeoPoint(
        lat=sum(p.lat for p in polygon) / n,
        lon=sum(p.lon for p in polygon) / n,
    )


def bounding_box(polygon: Sequence[GeoPoint]) -> tuple[GeoPoint, GeoPoint]:
    """Return (south-west, north-east) corners."""
    if not polygon:
        raise ValueError("bounding box of an empty polygon")
    lats = [p.lat for p in polygon]
    lons = [p.lon for p in polygon]
    return GeoPoint(min(lats), min(lons)), GeoPoint(max(lats), max(lons))
