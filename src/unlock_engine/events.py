"""UI-facing events: unlock celebrations and failure notifications."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Union

from unlock_engine.errors import FailureReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CelebrationEvent:
    """First unlock of a district in this session."""
    district_id: str
    district_name: str
    timestamp: float


@dataclass(frozen=True, slots=True)
class UnlockFailure:
    """Something the user should be told about."""
    reason: FailureReason
    message: str
    district_id: str | None = None
    district_name: str | None = None

    @property
    def retryable(self) -> bool:
        return self.reason.retryable

    def summary(self) -> str:
        where = f" ({self.district_name})" if self.district_name else ""
        return f"{self.reason.value}{where}: {self.message}"


Event = Union[CelebrationEvent, UnlockFailure]
Listener = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out to registered listeners.

    A failing listener is logged and skipped; it never breaks the engine.
    """

    def __init__(self):
        self._listeners: list[Listener] = []
        self.history: list[Event] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: Event) -> None:
        self.history.append(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed", listener)
