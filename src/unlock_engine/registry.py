"""In-memory district registry for one map session.

The registry is the single client-side view of district identity,
geometry, lock state, region and color. It does no I/O and no geometry
computation. All mutation is synchronous and last-writer-wins, except that
a confirmation from the backend always overrides an optimistic guess.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from unlock_engine.config import LOCKED_COLOR
from unlock_engine.models import District, DistrictView

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _ConfirmedState:
    """Lock state to restore if an optimistic unlock is rejected."""
    is_unlocked: bool
    unlocked_by_user_id: str | None
    color: str

    @classmethod
    def of(cls, d: District) -> _ConfirmedState:
        return cls(d.is_unlocked, d.unlocked_by_user_id, d.color)


class DistrictRegistry:
    """Keyed store of districts with optimistic unlock bookkeeping.

    Usage:
        reg = DistrictRegistry()
        reg.load(districts)
        reg.apply_optimistic_unlock("triana", "u1", "#2196f399")
        reg.confirm_unlock("triana", "u1", "#2196f399")  # or reject_unlock
    """

    def __init__(self, locked_color: str = LOCKED_COLOR):
        self._locked_color = locked_color
        self._districts: dict[str, District] = {}
        self._pending: dict[str, _ConfirmedState] = {}
        self._geometry_version = 0

    @property
    def geometry_version(self) -> int:
        """Incremented whenever the set of polygons may have changed."""
        return self._geometry_version

    def __len__(self) -> int:
        return len(self._districts)

    def __contains__(self, district_id: str) -> bool:
        return district_id in self._districts

    def load(self, districts: Iterable[District]) -> None:
        """Replace all districts with a fresh backend fetch.

        Optimistic state survives for districts present in the new set,
        unless the new data already shows them unlocked.
        """
        old = self._districts
        new: dict[str, District] = {}
        pending: dict[str, _ConfirmedState] = {}

        for d in districts:
            if d.id in new:
                logger.warning("Duplicate district id %s in fetch, keeping last", d.id)
            if d.is_unlocked and d.unlocked_by_user_id is None:
                logger.debug("District %s unlocked without owner", d.id)
            new[d.id] = d

            if d.id in self._pending and d.id in old and not d.is_unlocked:
                optimistic = old[d.id]
                pending[d.id] = _ConfirmedState.of(d)
                d.is_unlocked = optimistic.is_unlocked
                d.unlocked_by_user_id = optimistic.unlocked_by_user_id
                d.color = optimistic.color

        dropped = set(self._pending) - set(pending)
        if dropped:
            logger.debug("Dropping optimistic state for %s", sorted(dropped))

        self._districts = new
        self._pending = pending
        self._geometry_version += 1
        logger.info("Registry loaded: %d districts (%d usable, %d pending)",
                    len(new), sum(1 for d in new.values() if d.usable), len(pending))

    def clear(self) -> None:
        self._districts = {}
        self._pending = {}
        self._geometry_version += 1

    def get(self, district_id: str) -> District | None:
        return self._districts.get(district_id)

    def _require(self, district_id: str) -> District:
        try:
            return self._districts[district_id]
        except KeyError:
            raise KeyError(f"Unknown district: {district_id}") from None

    def all(self) -> list[District]:
        return list(self._districts.values())

    def usable(self) -> list[District]:
        return [d for d in self._districts.values() if d.usable]

    def is_pending(self, district_id: str) -> bool:
        return district_id in self._pending

    def apply_optimistic_unlock(self, district_id: str, user_id: str, color: str) -> None:
        d = self._require(district_id)
        # Keep the oldest confirmed state if already pending
        self._pending.setdefault(district_id, _ConfirmedState.of(d))
        d.is_unlocked = True
        d.unlocked_by_user_id = user_id
        d.color = color

    def confirm_unlock(self, district_id: str, user_id: str, color: str) -> None:
        d = self._require(district_id)
        self._pending.pop(district_id, None)
        d.is_unlocked = True
        d.unlocked_by_user_id = user_id
        d.color = color

    def reject_unlock(self, district_id: str) -> None:
        """Roll back to the state before the optimistic unlock."""
        d = self._require(district_id)
        prior = self._pending.pop(district_id, None)
        if prior is None:
            return
        d.is_unlocked = prior.is_unlocked
        d.unlocked_by_user_id = prior.unlocked_by_user_id
        d.color = prior.color

    def set_color(self, district_id: str, color: str) -> None:
        self._require(district_id).color = color

    def snapshot(self) -> list[DistrictView]:
        """Render views of usable districts, fill color gray while locked."""
        return [
            DistrictView(
                id=d.id,
                name=d.name,
                polygon=tuple(d.polygon),
                is_unlocked=d.is_unlocked,
                fill_color=d.color if d.is_unlocked else self._locked_color,
                pending=d.id in self._pending,
            )
            for d in self._districts.values()
            if d.usable
        ]
