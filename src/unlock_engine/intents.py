"""Per-session ledger of in-flight unlock intents.

At most one intent per district is current. Intents carry a monotonically
increasing token, so a response for an intent that has since been
superseded can be told apart from a response for the current one even
when both target the same district.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable

from unlock_engine.models import IntentState, UnlockIntent

logger = logging.getLogger(__name__)


class IntentLedger:
    """Issues intents and tracks which one is current per district."""

    def __init__(self):
        self._next_token = 1
        self._current: dict[str, UnlockIntent] = {}

    def issue(
        self,
        district_id: str,
        region_id: str,
        user_id: str,
        color: str,
        t: float | None = None,
    ) -> UnlockIntent:
        """Create a new current intent, superseding any for the same district."""
        previous = self._current.get(district_id)
        if previous is not None and not previous.resolved:
            previous.state = IntentState.SUPERSEDED

        intent = UnlockIntent(
            district_id=district_id,
            region_id=region_id,
            user_id=user_id,
            color=color,
            token=self._next_token,
            created_at=time.monotonic() if t is None else t,
        )
        self._next_token += 1
        self._current[district_id] = intent
        return intent

    def pending(self, district_id: str) -> UnlockIntent | None:
        intent = self._current.get(district_id)
        if intent is None or intent.resolved:
            return None
        return intent

    def pending_intents(self) -> list[UnlockIntent]:
        return [i for i in self._current.values() if not i.resolved]

    def supersede_except(self, district_id: str) -> list[UnlockIntent]:
        """Mark pending intents for other districts superseded.

        Returns the intents that were superseded.
        """
        superseded = []
        for did, intent in list(self._current.items()):
            if did == district_id or intent.resolved:
                continue
            intent.state = IntentState.SUPERSEDED
            del self._current[did]
            superseded.append(intent)
            logger.debug("Superseded intent #%d for %s", intent.token, did)
        return superseded

    def drop(self, district_ids: Iterable[str]) -> list[UnlockIntent]:
        """Supersede pending intents for districts that no longer exist."""
        dropped = []
        for did in district_ids:
            intent = self._current.pop(did, None)
            if intent is None:
                continue
            if not intent.resolved:
                intent.state = IntentState.SUPERSEDED
                dropped.append(intent)
                logger.info("Dropped intent #%d, district %s is gone", intent.token, did)
        return dropped

    def is_current(self, intent: UnlockIntent) -> bool:
        current = self._current.get(intent.district_id)
        return (
            current is not None
            and current.token == intent.token
            and not intent.resolved
        )

    def resolve(self, intent: UnlockIntent, state: IntentState) -> bool:
        """Move a current intent to a terminal state.

        Returns False (and changes nothing) if the intent is stale.
        """
        if state is IntentState.PENDING:
            raise ValueError("cannot resolve to PENDING")
        if not self.is_current(intent):
            return False
        intent.state = state
        return True

    def clear(self) -> None:
        for intent in self._current.values():
            if not intent.resolved:
                intent.state = IntentState.SUPERSEDED
        self._current.clear()
