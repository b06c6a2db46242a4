"""One map session: the single owner of all engine state for a map screen.

Wires registry, intent ledger, pre-filter, stream processor, synchronizer
and color resolver together, and scopes the location subscription and
in-flight network calls to the session's lifetime:

    async with MapSession(backend, source, map_id, user_id) as session:
        session.subscribe(on_event)
        ...
    # subscription closed, unlock tasks cancelled, late responses dropped

Everything runs on the event loop that opened the session; there is no
concurrent writer to the registry.
"""

from __future__ import annotations

import asyncio
import logging
import time

from unlock_geo.points import GeoPoint
from unlock_geo.prefilter import ProximityFilter

from unlock_engine.backend import BackendBase
from unlock_engine.colors import ColorResolver, color_for
from unlock_engine.config import EngineConfig
from unlock_engine.errors import FailureReason, LocationPermissionDenied, PoiPlacementError
from unlock_engine.events import CelebrationEvent, EventBus, Listener, UnlockFailure
from unlock_engine.intents import IntentLedger
from unlock_engine.location import LocationSource, Subscription
from unlock_engine.models import (
    District,
    DistrictView,
    LocationFix,
    MapUser,
    PointOfInterest,
    UnlockIntent,
    UserColorAssignment,
)
from unlock_engine.registry import DistrictRegistry
from unlock_engine.stream import LocationStreamProcessor
from unlock_engine.synchronizer import OutcomeStatus, UnlockOutcome, UnlockSynchronizer

logger = logging.getLogger(__name__)


class MapSession:
    """Geofencing and unlock engine for one map screen."""

    def __init__(
        self,
        backend: BackendBase,
        source: LocationSource,
        map_id: str,
        user_id: str,
        config: EngineConfig | None = None,
    ):
        self._config = config or EngineConfig()
        self._backend = backend
        self._source = source
        self._map_id = map_id
        self._user_id = user_id

        cfg = self._config
        self._bus = EventBus()
        self._registry = DistrictRegistry(locked_color=cfg.colors.locked)
        self._ledger = IntentLedger()
        self._resolver = ColorResolver(cfg.colors.palette, cfg.colors.fallback)
        self._processor = LocationStreamProcessor(
            self._registry,
            self._ledger,
            ProximityFilter(
                near_certain_deg=cfg.prefilter.near_certain_deg,
                cutoff_deg=cfg.prefilter.cutoff_deg,
                top_k=cfg.prefilter.top_k,
            ),
            user_id=user_id,
            color=cfg.colors.fallback,
            deadband_m=cfg.stream.deadband_m,
        )
        self._sync = UnlockSynchronizer(
            backend,
            self._registry,
            self._ledger,
            max_retries=cfg.sync.max_retries,
            retry_delay_s=cfg.sync.retry_delay_s,
        )

        self._users: list[MapUser] = []
        self._assignments: list[UserColorAssignment] = []
        self._subscription: Subscription | None = None
        self._tasks: set[asyncio.Task] = set()
        self._retryable: dict[str, UnlockIntent] = {}
        self._opened = False
        self._closed = False

    # --- lifecycle ---

    async def __aenter__(self) -> MapSession:
        await self.open()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def open(self) -> None:
        """Load roster and districts, then start watching the location source."""
        if self._opened:
            raise RuntimeError("session already opened")
        self._opened = True
        try:
            await self._load_roster()
            await self._load_districts()
            self._processor.start()
            try:
                self._subscription = await self._source.subscribe(self.on_fix)
            except LocationPermissionDenied as e:
                logger.warning("Location unavailable for map %s: %s", self._map_id, e)
                self._bus.emit(UnlockFailure(
                    reason=FailureReason.LOCATION_PERMISSION_DENIED,
                    message="Location access is needed to unlock districts. "
                            "The map stays available without it.",
                ))
        except BaseException:
            await self.close()
            raise
        logger.info("Map session %s open for user %s (%d districts, color %s)",
                    self._map_id, self._user_id, len(self._registry), self.color)

    async def close(self) -> None:
        """Release the subscription and drop every in-flight request."""
        if self._closed:
            return
        self._closed = True
        if self._subscription is not None:
            self._subscription.close()
        self._processor.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._ledger.clear()
        logger.info("Map session %s closed", self._map_id)

    @property
    def closed(self) -> bool:
        return self._closed

    # --- loading ---

    async def _load_roster(self) -> None:
        self._users = await self._backend.fetch_users(self._map_id)
        roster = [u.id for u in self._users]
        if self._user_id not in roster:
            roster.append(self._user_id)
        existing = [
            UserColorAssignment(user_id=u.id, color=u.color)
            for u in self._users if u.color
        ]
        self._assignments = self._resolver.assign(roster, existing)
        self._processor.color = color_for(self._assignments, self._user_id) or self._resolver.fallback

    async def _load_districts(self) -> None:
        districts = await self._backend.fetch_districts(self._map_id)
        self._apply_districts(districts)

    def _apply_districts(self, districts: list[District]) -> None:
        self._registry.load(districts)
        self._ledger.drop([i.district_id for i in self._ledger.pending_intents()
                           if i.district_id not in self._registry])
        for did in [d for d in self._retryable if d not in self._registry]:
            del self._retryable[did]
        self._paint_owned(districts)

    def _paint_owned(self, districts: list[District]) -> None:
        """Give unlocked districts their owner's color when none is stored."""
        locked = self._config.colors.locked
        for d in districts:
            if not d.is_unlocked or d.color != locked or d.unlocked_by_user_id is None:
                continue
            if self._registry.is_pending(d.id):
                continue
            owner_color = color_for(self._assignments, d.unlocked_by_user_id)
            self._registry.set_color(d.id, owner_color or self._resolver.fallback)

    async def refresh(self) -> None:
        """Re-fetch districts.

        Pending optimistic unlocks are preserved. In-flight intents for
        districts missing from the new set are superseded.
        """
        districts = await self._backend.fetch_districts(self._map_id)
        if self._closed:
            return
        self._apply_districts(districts)

    async def fetch_pois(self) -> list[PointOfInterest]:
        return await self._backend.fetch_pois(self._map_id)

    # --- location stream ---

    def on_fix(self, fix: LocationFix) -> UnlockIntent | None:
        """Location callback. Never raises into the location source."""
        if self._closed:
            return None
        try:
            intent = self._processor.evaluate(fix)
        except RuntimeError as e:
            logger.debug("Ignoring fix: %s", e)
            return None
        if intent is not None:
            self._schedule(intent)
        return intent

    evaluate = on_fix

    def _schedule(self, intent: UnlockIntent) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run_unlock(intent))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Unlock task failed", exc_info=task.exception())

    async def _run_unlock(self, intent: UnlockIntent) -> UnlockOutcome:
        outcome = await self._sync.request_unlock(intent)
        if not self._closed:
            self._handle_outcome(outcome)
        return outcome

    def _handle_outcome(self, outcome: UnlockOutcome) -> None:
        district_id = outcome.intent.district_id
        district = self._registry.get(district_id)
        name = district.name if district else district_id

        if outcome.status is OutcomeStatus.CONFIRMED:
            self._retryable.pop(district_id, None)
            if self._processor.mark_visited(name):
                self._bus.emit(CelebrationEvent(district_id, name, time.time()))
        elif outcome.status is OutcomeStatus.REJECTED:
            self._bus.emit(UnlockFailure(
                reason=outcome.reason,
                message=outcome.message,
                district_id=district_id,
                district_name=name,
            ))
        elif outcome.status is OutcomeStatus.TRANSIENT:
            self._retryable[district_id] = outcome.intent
            self._bus.emit(UnlockFailure(
                reason=outcome.reason,
                message=f"Could not reach the server to unlock {name}. Try again.",
                district_id=district_id,
                district_name=name,
            ))

    async def retry(self, district_id: str) -> UnlockOutcome | None:
        """Manually retry an unlock that failed with a transient error."""
        failed = self._retryable.pop(district_id, None)
        if failed is None or self._closed:
            return None
        district = self._registry.get(district_id)
        if district is None or district.is_unlocked:
            return None
        intent = self._processor.issue_unlock(district_id, failed.region_id)
        return await self._schedule(intent)

    async def wait_idle(self) -> None:
        """Wait for every in-flight unlock request to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- queries for the UI layer ---

    def subscribe(self, listener: Listener):
        return self._bus.subscribe(listener)

    @property
    def events(self) -> EventBus:
        return self._bus

    @property
    def registry(self) -> DistrictRegistry:
        return self._registry

    @property
    def ledger(self) -> IntentLedger:
        return self._ledger

    @property
    def processor(self) -> LocationStreamProcessor:
        return self._processor

    @property
    def synchronizer(self) -> UnlockSynchronizer:
        return self._sync

    @property
    def color(self) -> str:
        return self._processor.color

    @property
    def users(self) -> list[MapUser]:
        return list(self._users)

    @property
    def assignments(self) -> list[UserColorAssignment]:
        return list(self._assignments)

    def retryable(self) -> list[str]:
        return sorted(self._retryable)

    def snapshot(self) -> list[DistrictView]:
        return self._registry.snapshot()

    def locate_poi_district(self, point: GeoPoint) -> District:
        """District where a POI may be placed at ``point``.

        Raises PoiPlacementError if the point is outside every district or
        inside a district that is still locked.
        """
        district_id = self._processor.locate(point, exact=True)
        district = self._registry.get(district_id) if district_id else None
        if district is None:
            raise PoiPlacementError("Points of interest must be placed inside a district.")
        if not district.is_unlocked:
            raise PoiPlacementError(
                f'District "{district.name}" is locked.', district_name=district.name,
            )
        return district
