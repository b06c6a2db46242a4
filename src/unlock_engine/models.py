"""Core data types shared by the engine components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from unlock_geo.points import GeoPoint

from unlock_engine.config import LOCKED_COLOR


@dataclass(slots=True)
class District:
    """A polygonal map region that can be unlocked.

    An empty polygon means the boundary could not be normalized; such a
    district stays in the registry but is excluded from containment tests
    and rendering.
    """
    id: str
    name: str
    polygon: list[GeoPoint] = field(default_factory=list)
    region_id: str | None = None
    is_unlocked: bool = False
    unlocked_by_user_id: str | None = None
    color: str = LOCKED_COLOR

    @property
    def usable(self) -> bool:
        return len(self.polygon) >= 3


@dataclass(frozen=True, slots=True)
class DistrictView:
    """Read-only render snapshot of a district."""
    id: str
    name: str
    polygon: tuple[GeoPoint, ...]
    is_unlocked: bool
    fill_color: str
    pending: bool = False


@dataclass(frozen=True, slots=True)
class LocationFix:
    """One position report from the location source."""
    latitude: float
    longitude: float
    timestamp: float  # seconds
    accuracy_m: float | None = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.latitude, self.longitude)


class IntentState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


@dataclass(slots=True)
class UnlockIntent:
    """Request to unlock one district, tracked until it resolves."""
    district_id: str
    region_id: str
    user_id: str
    color: str
    token: int  # per-session identity, compared to drop stale responses
    created_at: float = 0.0
    state: IntentState = IntentState.PENDING

    @property
    def resolved(self) -> bool:
        return self.state is not IntentState.PENDING


@dataclass(frozen=True, slots=True)
class UserColorAssignment:
    user_id: str
    color: str
    assigned_at: float = 0.0


@dataclass(frozen=True, slots=True)
class MapUser:
    """A roster member of a collaborative map."""
    id: str
    username: str
    color: str | None = None


@dataclass(frozen=True, slots=True)
class PointOfInterest:
    id: str
    name: str
    location: GeoPoint
    description: str | None = None
    district_id: str | None = None
    category: str | None = None
