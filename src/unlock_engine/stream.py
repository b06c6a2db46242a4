"""Location stream processor: fixes in, unlock intents out.

State machine per map session:

    IDLE -> WATCHING -> (per fix) EVALUATING -> WATCHING
    any  -> STOPPED (terminal)

Each fix is filtered (out-of-order timestamps, GPS jitter deadband), then
run through the pre-filter and containment test against the registry's
usable districts. A locked containing district produces exactly one
UnlockIntent; the district is optimistically unlocked until the
synchronizer confirms or rejects it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from unlock_geo.points import GeoPoint, haversine_m
from unlock_geo.prefilter import ProximityFilter

from unlock_engine.intents import IntentLedger
from unlock_engine.models import LocationFix, UnlockIntent
from unlock_engine.registry import DistrictRegistry

logger = logging.getLogger(__name__)


class StreamState(Enum):
    IDLE = "idle"
    WATCHING = "watching"
    EVALUATING = "evaluating"
    STOPPED = "stopped"


@dataclass(slots=True)
class StreamStats:
    """Fix handling counters."""
    fixes_received: int = 0
    out_of_order: int = 0
    invalid: int = 0
    deadband: int = 0
    evaluated: int = 0
    inside: int = 0
    intents: int = 0
    missing_region: int = 0


class LocationStreamProcessor:
    """Turns a stream of location fixes into unlock intents.

    Usage:
        proc = LocationStreamProcessor(registry, ledger, ProximityFilter(), "u1", color)
        proc.start()
        intent = proc.evaluate(fix)
        if intent is not None:
            ...  # hand to the synchronizer
    """

    def __init__(
        self,
        registry: DistrictRegistry,
        ledger: IntentLedger,
        prefilter: ProximityFilter,
        user_id: str,
        color: str,
        deadband_m: float = 5.0,
    ):
        self._registry = registry
        self._ledger = ledger
        self._filter = prefilter
        self._user_id = user_id
        self.color = color
        self._deadband_m = deadband_m

        self._state = StreamState.IDLE
        self._last_t: float | None = None
        self._last_evaluated: GeoPoint | None = None
        self._current_district_id: str | None = None
        self._visited: set[str] = set()
        self._synced_version = -1
        self._polygons: dict[str, list[GeoPoint]] = {}
        self._stats = StreamStats()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def stats(self) -> StreamStats:
        return self._stats

    @property
    def current_district_id(self) -> str | None:
        """District containing the last evaluated fix, if any."""
        return self._current_district_id

    @property
    def visited(self) -> frozenset[str]:
        return frozenset(self._visited)

    def start(self) -> None:
        if self._state is StreamState.STOPPED:
            raise RuntimeError("processor is stopped")
        if self._state is StreamState.IDLE:
            self._state = StreamState.WATCHING
            logger.debug("Stream processor watching")

    def stop(self) -> None:
        if self._state is not StreamState.STOPPED:
            self._state = StreamState.STOPPED
            logger.debug("Stream processor stopped")

    def mark_visited(self, district_name: str) -> bool:
        """Record a district as celebrated. True only the first time."""
        if district_name in self._visited:
            return False
        self._visited.add(district_name)
        return True

    def reset_position(self) -> None:
        """Forget the last evaluated fix so the next one is always evaluated."""
        self._last_evaluated = None

    def _sync_geometry(self) -> None:
        version = self._registry.geometry_version
        if version == self._synced_version:
            return
        usable = self._registry.usable()
        self._polygons = {d.id: d.polygon for d in usable}
        for district_id in self._filter.ids():
            if district_id not in self._polygons:
                self._filter.remove(district_id)
        for d in usable:
            self._filter.update(d.id, d.polygon)
        self._synced_version = version

    def locate(self, point: GeoPoint, exact: bool = False) -> str | None:
        """District containing a point, without touching stream state."""
        self._sync_geometry()
        return self._filter.locate(point, self._polygons, exact=exact)

    def evaluate(self, fix: LocationFix) -> UnlockIntent | None:
        """Process one fix. Returns a new intent, or None if nothing to do."""
        if self._state is not StreamState.WATCHING:
            raise RuntimeError(f"cannot evaluate fix in state {self._state.value}")

        self._stats.fixes_received += 1
        if self._last_t is not None and fix.timestamp <= self._last_t:
            self._stats.out_of_order += 1
            logger.debug("Dropping out-of-order fix t=%.3f (last %.3f)",
                         fix.timestamp, self._last_t)
            return None

        point = fix.point
        if not point.is_valid():
            self._stats.invalid += 1
            logger.warning("Dropping invalid fix %.6f, %.6f", fix.latitude, fix.longitude)
            return None
        self._last_t = fix.timestamp

        if (
            self._last_evaluated is not None
            and haversine_m(self._last_evaluated, point) < self._deadband_m
        ):
            self._stats.deadband += 1
            return None

        self._state = StreamState.EVALUATING
        try:
            return self._evaluate_point(point, fix.timestamp)
        finally:
            if self._state is StreamState.EVALUATING:
                self._state = StreamState.WATCHING

    def _evaluate_point(self, point: GeoPoint, t: float) -> UnlockIntent | None:
        self._last_evaluated = point
        self._stats.evaluated += 1
        district_id = self.locate(point)
        self._current_district_id = district_id
        if district_id is None:
            logger.debug("Fix %.6f, %.6f is outside every district", point.lat, point.lon)
            return None

        self._stats.inside += 1
        district = self._registry.get(district_id)
        if district is None or district.is_unlocked:
            return None
        if self._ledger.pending(district_id) is not None:
            return None
        if district.region_id is None:
            self._stats.missing_region += 1
            logger.warning("District %s has no region yet, cannot unlock", district.name)
            return None

        intent = self.issue_unlock(district_id, district.region_id, t=t)
        logger.info("Entered locked district %s, unlock intent #%d",
                    district.name, intent.token)
        return intent

    def issue_unlock(
        self, district_id: str, region_id: str, t: float | None = None,
    ) -> UnlockIntent:
        """Issue an intent for a district and show it unlocked optimistically.

        Pending intents for other districts are superseded and their
        optimistic unlocks rolled back.
        """
        for stale in self._ledger.supersede_except(district_id):
            if stale.district_id in self._registry:
                self._registry.reject_unlock(stale.district_id)

        intent = self._ledger.issue(
            district_id=district_id,
            region_id=region_id,
            user_id=self._user_id,
            color=self.color,
            t=t,
        )
        self._registry.apply_optimistic_unlock(district_id, self._user_id, self.color)
        self._stats.intents += 1
        return intent
