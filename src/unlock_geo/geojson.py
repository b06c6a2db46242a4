"""GeoJSON boundary normalization.

The backend sends district boundaries as GeoJSON geometries (Polygon or
MultiPolygon, sometimes with extra nesting). Positions are [lon, lat];
the engine works in (lat, lon). This module flattens any nesting into one
ordered vertex list:

  - holes are ignored: from an array of rings only the outer ring is kept
  - MultiPolygon outer rings are concatenated in source order
  - a ring's closing vertex (equal to its first) is dropped

Malformed input never raises. It yields an empty list, and the district
is treated as not yet geometrically usable.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from unlock_geo.points import GeoPoint

logger = logging.getLogger(__name__)

MIN_VERTICES = 3


class _Malformed(Exception):
    pass


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_position(node: Any) -> bool:
    return (
        isinstance(node, (list, tuple))
        and len(node) >= 2
        and _is_number(node[0])
        and _is_number(node[1])
    )


def _is_ring(node: Any) -> bool:
    return (
        isinstance(node, (list, tuple))
        and len(node) > 0
        and all(_is_position(p) for p in node)
    )


def _to_point(position) -> GeoPoint:
    point = GeoPoint(lat=float(position[1]), lon=float(position[0]))
    if not point.is_valid():
        raise _Malformed(f"position out of range: {position!r}")
    return point


def _ring_points(ring) -> list[GeoPoint]:
    points = [_to_point(p) for p in ring]
    if len(points) > 1 and points[-1] == points[0]:
        points.pop()
    return points


def _walk(node: Any, out: list[GeoPoint]) -> None:
    if _is_position(node):
        out.append(_to_point(node))
    elif _is_ring(node):
        out.extend(_ring_points(node))
    elif isinstance(node, (list, tuple)):
        if node and all(_is_ring(r) for r in node):
            # Polygon: outer ring first, holes after
            out.extend(_ring_points(node[0]))
            return
        for item in node:
            _walk(item, out)
    else:
        raise _Malformed(f"unexpected coordinate element: {node!r}")


def normalize_coordinates(geometry: Any) -> list[GeoPoint]:
    """Convert a GeoJSON geometry into a flat (lat, lon) vertex list.

    Args:
        geometry: mapping with a ``coordinates`` member, or a JSON string
            encoding one

    Returns:
        Vertices in source order, or [] when the geometry is unusable.
    """
    if isinstance(geometry, str):
        try:
            geometry = json.loads(geometry)
        except json.JSONDecodeError:
            return []

    if not isinstance(geometry, dict):
        return []
    coords = geometry.get("coordinates")
    if not isinstance(coords, (list, tuple)):
        return []

    points: list[GeoPoint] = []
    try:
        _walk(coords, points)
    except _Malformed as e:
        logger.debug("Rejecting geometry: %s", e)
        return []

    if len(points) < MIN_VERTICES:
        return []
    return points
