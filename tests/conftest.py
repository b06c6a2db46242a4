"""Shared fixtures: Seville districts and a hand-driven location source."""

from __future__ import annotations

import asyncio

import pytest

from unlock_geo.points import GeoPoint
from unlock_engine.backend import InMemoryBackend
from unlock_engine.location import LocationSource, Subscription
from unlock_engine.models import District, LocationFix

TRIANA = [
    GeoPoint(37.383, -6.003),
    GeoPoint(37.383, -5.998),
    GeoPoint(37.386, -5.998),
    GeoPoint(37.386, -6.003),
]
MACARENA = [
    GeoPoint(37.400, -5.990),
    GeoPoint(37.400, -5.985),
    GeoPoint(37.403, -5.985),
    GeoPoint(37.403, -5.990),
]

INSIDE_TRIANA = (37.384, -6.001)
INSIDE_TRIANA_2 = (37.3845, -6.0005)
INSIDE_MACARENA = (37.4015, -5.9875)
FAR_AWAY = (37.42, -6.05)


def make_district(
    district_id: str = "Triana",
    polygon: list[GeoPoint] | None = None,
    region_id: str | None = "sevilla",
    **kwargs,
) -> District:
    return District(
        id=district_id,
        name=kwargs.pop("name", district_id),
        polygon=list(TRIANA if polygon is None else polygon),
        region_id=region_id,
        **kwargs,
    )


def fix(latlon: tuple[float, float], t: float) -> LocationFix:
    return LocationFix(latitude=latlon[0], longitude=latlon[1], timestamp=t)


class _ManualSubscription(Subscription):
    def __init__(self):
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True


class ManualSource(LocationSource):
    """Location source driven by the test via push()."""

    def __init__(self):
        self.callback = None
        self.subscription: _ManualSubscription | None = None

    async def subscribe(self, callback) -> Subscription:
        self.callback = callback
        self.subscription = _ManualSubscription()
        return self.subscription

    def push(self, latlon: tuple[float, float], t: float):
        assert self.callback is not None, "not subscribed"
        return self.callback(fix(latlon, t))


class GatedBackend(InMemoryBackend):
    """Holds every unlock call until the gate opens."""

    def __init__(self, districts, users=None):
        super().__init__(districts, users)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()

    async def unlock(self, district_id, user_id, region_id, color):
        self.entered.set()
        await self.gate.wait()
        return await super().unlock(district_id, user_id, region_id, color)


@pytest.fixture
def manual_source() -> ManualSource:
    return ManualSource()
