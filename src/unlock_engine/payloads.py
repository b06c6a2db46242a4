"""Backend JSON payload models and their conversion to engine types."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from unlock_geo.geojson import normalize_coordinates
from unlock_geo.points import GeoPoint

from unlock_engine.config import LOCKED_COLOR
from unlock_engine.errors import BackendError, FailureReason
from unlock_engine.models import District, MapUser, PointOfInterest

logger = logging.getLogger(__name__)


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True, populate_by_name=True)


class Ref(_Payload):
    id: str


class Profile(_Payload):
    username: str | None = None


class DistrictPayload(_Payload):
    id: str
    name: str = ""
    boundaries: Any = None
    is_unlocked: bool = Field(default=False, alias="isUnlocked")
    user: Ref | None = None
    region_assignee: Ref | None = None
    color: str | None = None

    def to_district(self) -> District:
        polygon = normalize_coordinates(self.boundaries)
        if not polygon:
            logger.warning("%s: district %s (%s) has no usable boundary, excluded",
                           FailureReason.MALFORMED_GEOMETRY.value, self.name, self.id)
        return District(
            id=self.id,
            name=self.name or self.id,
            polygon=polygon,
            region_id=self.region_assignee.id if self.region_assignee else None,
            is_unlocked=self.is_unlocked,
            unlocked_by_user_id=self.user.id if self.user else None,
            color=self.color or LOCKED_COLOR,
        )


class UserPayload(_Payload):
    id: str
    profile: Profile | None = None
    color: str | None = None

    def to_user(self, index: int) -> MapUser:
        username = self.profile.username if self.profile and self.profile.username else None
        return MapUser(
            id=self.id,
            username=username or f"Usuario {index + 1}",
            color=self.color,
        )


class PointGeometry(_Payload):
    type: str = "Point"
    coordinates: list[float]


class PoiPayload(_Payload):
    id: str
    name: str
    description: str | None = None
    location: PointGeometry
    district_id: str | None = Field(default=None, alias="districtId")
    category: str | None = None

    def to_poi(self) -> PointOfInterest:
        lon, lat = self.location.coordinates[:2]
        return PointOfInterest(
            id=self.id,
            name=self.name,
            location=GeoPoint(lat=lat, lon=lon),
            description=self.description,
            district_id=self.district_id,
            category=self.category,
        )


class UnlockResponse(_Payload):
    """Answer to an unlock PUT.

    ``user`` names the district owner when the backend reports it, which
    is how "already unlocked by you" is told apart from "owned by someone
    else".
    """
    success: bool = False
    message: str | None = None
    user: Ref | None = None
    status: int = 200


def _items(data: Any, key: str) -> list[Any]:
    if not isinstance(data, dict):
        raise BackendError(f"Expected JSON object with {key!r}")
    if not data.get("success") or not isinstance(data.get(key), list):
        logger.warning("Backend returned no %s (success=%s)", key, data.get("success"))
        return []
    return data[key]


def parse_districts(data: Any) -> list[District]:
    """Parse a district list response. Bad entries are skipped."""
    districts = []
    for raw in _items(data, "districts"):
        try:
            districts.append(DistrictPayload.model_validate(raw).to_district())
        except ValidationError as e:
            logger.warning("Skipping malformed district entry: %s", e.errors()[0]["msg"])
    return districts


def parse_users(data: Any) -> list[MapUser]:
    users = []
    for raw in _items(data, "users"):
        try:
            users.append(UserPayload.model_validate(raw).to_user(len(users)))
        except ValidationError as e:
            logger.warning("Skipping malformed user entry: %s", e.errors()[0]["msg"])
    return users


def parse_pois(data: Any) -> list[PointOfInterest]:
    pois = []
    for raw in _items(data, "pois"):
        try:
            pois.append(PoiPayload.model_validate(raw).to_poi())
        except (ValidationError, ValueError) as e:
            logger.warning("Skipping malformed POI entry: %s", e)
    return pois
