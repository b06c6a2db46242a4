"""Centroid-distance pre-filter for district containment.

Running an exact point-in-polygon test against every district on every
fix gets slow as district counts grow. Districts are ranked by the planar
distance from the fix to their cached centroid, and only the top-K
nearest are exact-tested:

  - distance < near_certain_deg: treated as inside without an exact test
  - distance > cutoff_deg: not tested at all

Distances are in degrees, not meters. A point inside a large or oddly
shaped district whose centroid is beyond the cutoff is a known false
negative.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np

from unlock_geo.points import GeoPoint
from unlock_geo.polygon import centroid, contains

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Candidate:
    """A district ranked by distance from a query point."""
    district_id: str
    distance: float  # planar degrees to centroid


class ProximityFilter:
    """Ranks districts by centroid distance and finds the containing one.

    Usage:
        pf = ProximityFilter()
        pf.update("triana", polygon)
        district_id = pf.locate(point, {"triana": polygon})
    """

    def __init__(
        self,
        near_certain_deg: float = 0.01,
        cutoff_deg: float = 0.03,
        top_k: int = 10,
    ):
        if near_certain_deg > cutoff_deg:
            raise ValueError("near_certain_deg must not exceed cutoff_deg")
        self._near = near_certain_deg
        self._cutoff = cutoff_deg
        self._top_k = top_k
        self._geometry: dict[str, tuple[GeoPoint, ...]] = {}
        self._centroids: dict[str, GeoPoint] = {}
        # Dense arrays rebuilt lazily after any geometry change
        self._ids: list[str] = []
        self._coords: np.ndarray = np.empty((0, 2))
        self._dirty = False
        self.centroid_computations = 0

    @property
    def size(self) -> int:
        return len(self._centroids)

    def update(self, district_id: str, polygon: Sequence[GeoPoint]) -> None:
        """Register or refresh a district's geometry.

        The centroid is recomputed only if the vertex list changed.
        """
        key = tuple(polygon)
        if self._geometry.get(district_id) == key:
            return
        if len(key) < 3:
            self.remove(district_id)
            return
        self._geometry[district_id] = key
        self._centroids[district_id] = centroid(key)
        self.centroid_computations += 1
        self._dirty = True

    def remove(self, district_id: str) -> None:
        if self._geometry.pop(district_id, None) is not None:
            del self._centroids[district_id]
            self._dirty = True

    def clear(self) -> None:
        self._geometry.clear()
        self._centroids.clear()
        self._dirty = True

    def ids(self) -> list[str]:
        return list(self._centroids)

    def centroid_of(self, district_id: str) -> GeoPoint | None:
        return self._centroids.get(district_id)

    def _rebuild(self) -> None:
        self._ids = list(self._centroids)
        if self._ids:
            self._coords = np.array(
                [(c.lat, c.lon) for c in self._centroids.values()],
                dtype=np.float64,
            )
        else:
            self._coords = np.empty((0, 2))
        self._dirty = False

    def rank(self, point: GeoPoint, k: int | None = None) -> list[Candidate]:
        """Return the k nearest districts by centroid distance, ascending."""
        if self._dirty:
            self._rebuild()
        if not self._ids:
            return []

        k = self._top_k if k is None else k
        dists = np.hypot(self._coords[:, 0] - point.lat, self._coords[:, 1] - point.lon)
        # Stable sort keeps registration order for ties
        order = np.argsort(dists, kind="stable")[:k]
        return [Candidate(self._ids[i], float(dists[i])) for i in order]

    def locate(
        self,
        point: GeoPoint,
        polygons: Mapping[str, Sequence[GeoPoint]],
        exact: bool = False,
    ) -> str | None:
        """Find the district containing the point, if any.

        Only districts present in ``polygons`` are considered; that lets the
        caller exclude unusable districts without touching the cache.

        Args:
            point: query location
            polygons: district id -> vertex list
            exact: disable the near-certain shortcut (always run the
                exact containment test)
        """
        considered = 0
        for cand in self.rank(point, k=self.size):
            if considered >= self._top_k or cand.distance > self._cutoff:
                break
            polygon = polygons.get(cand.district_id)
            if polygon is None:
                continue
            considered += 1
            if not exact and cand.distance < self._near:
                logger.debug("Near-certain match %s (%.5f deg)",
                             cand.district_id, cand.distance)
                return cand.district_id
            if contains(point, polygon):
                return cand.district_id
        return None
