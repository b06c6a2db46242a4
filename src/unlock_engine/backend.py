"""Backend interface consumed by the engine, plus an in-memory backend.

The in-memory backend serves a district file for offline track replay
and acts as the backend double in tests. Ownership is first writer wins,
the same rule the REST backend applies.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from unlock_engine.errors import NetworkTransientError
from unlock_engine.models import District, MapUser, PointOfInterest
from unlock_engine.payloads import Ref, UnlockResponse, parse_districts

logger = logging.getLogger(__name__)


class BackendBase(ABC):
    @abstractmethod
    async def fetch_districts(self, map_id: str) -> list[District]: ...

    @abstractmethod
    async def fetch_users(self, map_id: str) -> list[MapUser]: ...

    @abstractmethod
    async def fetch_pois(self, map_id: str) -> list[PointOfInterest]: ...

    @abstractmethod
    async def unlock(
        self, district_id: str, user_id: str, region_id: str, color: str,
    ) -> UnlockResponse:
        """Unlock a district. Raises NetworkTransientError on network failure."""
        ...


class InMemoryBackend(BackendBase):
    """Backend held entirely in memory.

    ``fail_next`` makes the next N unlock calls raise NetworkTransientError,
    which is how tests exercise the retry path.
    """

    def __init__(
        self,
        districts: list[District],
        users: list[MapUser] | None = None,
        pois: list[PointOfInterest] | None = None,
    ):
        self._districts = {d.id: d for d in districts}
        self._users = list(users or [])
        self._pois = list(pois or [])
        self.unlock_calls: list[tuple[str, str, str, str]] = []
        self.fail_next = 0

    @classmethod
    def from_file(cls, path: Path, users: list[MapUser] | None = None) -> InMemoryBackend:
        """Load a district list response (``{"success": true, "districts": [...]}``)
        or a bare list of district payloads."""
        data = json.loads(path.read_text())
        if isinstance(data, list):
            data = {"success": True, "districts": data}
        districts = parse_districts(data)
        logger.info("Loaded %d districts from %s", len(districts), path)
        return cls(districts, users)

    def owner_of(self, district_id: str) -> str | None:
        d = self._districts.get(district_id)
        return None if d is None else d.unlocked_by_user_id

    def _copy(self, d: District) -> District:
        return District(
            id=d.id,
            name=d.name,
            polygon=list(d.polygon),
            region_id=d.region_id,
            is_unlocked=d.is_unlocked,
            unlocked_by_user_id=d.unlocked_by_user_id,
            color=d.color,
        )

    async def fetch_districts(self, map_id: str) -> list[District]:
        return [self._copy(d) for d in self._districts.values()]

    async def fetch_users(self, map_id: str) -> list[MapUser]:
        return list(self._users)

    async def fetch_pois(self, map_id: str) -> list[PointOfInterest]:
        return list(self._pois)

    async def unlock(
        self, district_id: str, user_id: str, region_id: str, color: str,
    ) -> UnlockResponse:
        self.unlock_calls.append((district_id, user_id, region_id, color))
        if self.fail_next > 0:
            self.fail_next -= 1
            raise NetworkTransientError("simulated connection reset")

        d = self._districts.get(district_id)
        if d is None:
            return UnlockResponse(success=False, message="District not found", status=404)
        if d.region_id is not None and d.region_id != region_id:
            return UnlockResponse(success=False, message="Region mismatch", status=400)
        if d.is_unlocked:
            owner = d.unlocked_by_user_id
            return UnlockResponse(
                success=False,
                message="District already unlocked",
                user=Ref(id=owner) if owner else None,
                status=409,
            )

        d.is_unlocked = True
        d.unlocked_by_user_id = user_id
        d.color = color
        return UnlockResponse(success=True, user=Ref(id=user_id))
