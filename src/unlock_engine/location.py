"""Location sources: push-based fix subscriptions.

A source delivers LocationFix objects to one callback until the returned
subscription is closed. Closing is idempotent. Sources raise
LocationPermissionDenied when access to location is refused.
"""

from __future__ import annotations

import asyncio
import csv
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from pathlib import Path

from unlock_engine.errors import LocationPermissionDenied
from unlock_engine.models import LocationFix

logger = logging.getLogger(__name__)

FixCallback = Callable[[LocationFix], None]


class Subscription(ABC):
    @abstractmethod
    def close(self) -> None: ...

    @property
    @abstractmethod
    def closed(self) -> bool: ...


class LocationSource(ABC):
    @abstractmethod
    async def subscribe(self, callback: FixCallback) -> Subscription:
        """Start delivering fixes to callback."""
        ...


class _TaskSubscription(Subscription):
    def __init__(self, task: asyncio.Task):
        self._task = task
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def task(self) -> asyncio.Task:
        return self._task

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._task.cancel()


class ReplaySource(LocationSource):
    """Replays a recorded track from a background task.

    Usage:
        source = ReplaySource(load_track(Path("walk.csv")), interval_s=0.0)
        sub = await source.subscribe(on_fix)
        await source.finished()
    """

    def __init__(self, fixes: Iterable[LocationFix], interval_s: float = 0.0):
        self._fixes = list(fixes)
        self._interval = interval_s
        self._subscription: _TaskSubscription | None = None

    @property
    def fix_count(self) -> int:
        return len(self._fixes)

    async def subscribe(self, callback: FixCallback) -> Subscription:
        if self._subscription is not None and not self._subscription.closed:
            raise RuntimeError("ReplaySource supports a single subscriber")
        task = asyncio.get_running_loop().create_task(self._run(callback))
        self._subscription = _TaskSubscription(task)
        return self._subscription

    async def _run(self, callback: FixCallback) -> None:
        for fix in self._fixes:
            callback(fix)
            # Yield so in-flight unlock tasks interleave with the stream
            await asyncio.sleep(self._interval)
        logger.debug("Replay finished: %d fixes", len(self._fixes))

    async def finished(self) -> None:
        """Wait until every fix has been delivered (or the replay cancelled)."""
        if self._subscription is None:
            return
        try:
            await self._subscription.task
        except asyncio.CancelledError:
            pass


class DeniedSource(LocationSource):
    """A source whose permission request was refused."""

    async def subscribe(self, callback: FixCallback) -> Subscription:
        raise LocationPermissionDenied("Location permission denied")


def load_track(path: Path) -> list[LocationFix]:
    """Read a track file.

    CSV with header ``timestamp,latitude,longitude[,accuracy_m]``, or a JSON
    list of objects with the same keys.
    """
    if path.suffix.lower() == ".json":
        rows = json.loads(path.read_text())
    else:
        with open(path, newline="") as f:
            rows = list(csv.DictReader(f))

    fixes = []
    for i, row in enumerate(rows):
        try:
            acc = row.get("accuracy_m")
            fixes.append(LocationFix(
                latitude=float(row["latitude"]),
                longitude=float(row["longitude"]),
                timestamp=float(row["timestamp"]),
                accuracy_m=float(acc) if acc not in (None, "") else None,
            ))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping track row %d: %s", i + 1, e)
    logger.info("Loaded %d fixes from %s", len(fixes), path)
    return fixes
