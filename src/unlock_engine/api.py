"""Async REST client for the district backend.

Endpoints:
  GET /api/districts/map/{map_id}
  GET /api/maps/users/{map_id}
  GET /api/poi/map/{map_id}
  PUT /api/districts/unlock/{district_id}/{user_id}/{region_id}  body {"color": ...}

Connection errors, timeouts and 5xx responses raise NetworkTransientError.
Anything else unusable raises BackendError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError

from unlock_engine.backend import BackendBase
from unlock_engine.errors import BackendError, NetworkTransientError
from unlock_engine.models import District, MapUser, PointOfInterest
from unlock_engine.payloads import (
    UnlockResponse,
    parse_districts,
    parse_pois,
    parse_users,
)

logger = logging.getLogger(__name__)

USER_AGENT = "DistrictUnlock/0.1"


def _seg(value: str) -> str:
    return quote(str(value), safe="")


class BackendClient(BackendBase):
    """aiohttp client for the district backend.

    Usage:
        async with BackendClient("http://localhost:3000") as api:
            districts = await api.fetch_districts(map_id)

    A caller-provided ``session`` is used as-is and not closed.
    """

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> BackendClient:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT},
                timeout=self._timeout,
            )
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _request(
        self, method: str, path: str, body: dict | None = None,
    ) -> tuple[int, Any]:
        if self._session is None:
            raise RuntimeError("BackendClient is not open. Use 'async with'.")

        url = f"{self._base_url}{path}"
        try:
            async with self._session.request(
                method, url, json=body, timeout=self._timeout,
            ) as resp:
                if resp.status >= 500:
                    raise NetworkTransientError(
                        f"{method} {path}: HTTP {resp.status}", status=resp.status,
                    )
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise BackendError(
                        f"{method} {path}: invalid JSON ({e})", status=resp.status,
                    ) from e
                return resp.status, data
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError,
                asyncio.TimeoutError) as e:
            raise NetworkTransientError(f"{method} {path}: {e!r}") from e

    async def _get_list(self, path: str) -> Any:
        status, data = await self._request("GET", path)
        if status != 200:
            raise BackendError(f"GET {path}: HTTP {status}", status=status)
        return data

    async def fetch_districts(self, map_id: str) -> list[District]:
        data = await self._get_list(f"/api/districts/map/{_seg(map_id)}")
        districts = parse_districts(data)
        logger.info("Fetched %d districts for map %s", len(districts), map_id)
        return districts

    async def fetch_users(self, map_id: str) -> list[MapUser]:
        data = await self._get_list(f"/api/maps/users/{_seg(map_id)}")
        return parse_users(data)

    async def fetch_pois(self, map_id: str) -> list[PointOfInterest]:
        data = await self._get_list(f"/api/poi/map/{_seg(map_id)}")
        return parse_pois(data)

    async def unlock(
        self, district_id: str, user_id: str, region_id: str, color: str,
    ) -> UnlockResponse:
        path = (
            f"/api/districts/unlock/{_seg(district_id)}"
            f"/{_seg(user_id)}/{_seg(region_id)}"
        )
        status, data = await self._request("PUT", path, {"color": color})
        if not isinstance(data, dict):
            raise BackendError(f"PUT {path}: expected JSON object", status=status)
        try:
            response = UnlockResponse.model_validate({**data, "status": status})
        except ValidationError as e:
            raise BackendError(f"PUT {path}: {e.errors()[0]['msg']}", status=status) from e
        if status >= 400 and response.success:
            # An error status never counts as success
            response = response.model_copy(update={"success": False})
        return response
