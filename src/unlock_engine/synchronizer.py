"""Unlock synchronizer: turns an intent into a remote call and reconciles.

Outcomes:
  CONFIRMED   backend unlocked it, or it was already unlocked by this user
  REJECTED    explicit application-level refusal (e.g. owned by another user)
  TRANSIENT   network failure after the retry; the UI can offer a manual retry
  SUPERSEDED  a newer intent replaced this one while it was in flight; the
              response was dropped without touching the registry

Only network-level failures are retried, once by default.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from unlock_engine.backend import BackendBase
from unlock_engine.errors import BackendError, FailureReason, NetworkTransientError
from unlock_engine.intents import IntentLedger
from unlock_engine.models import IntentState, UnlockIntent
from unlock_engine.payloads import UnlockResponse
from unlock_engine.registry import DistrictRegistry

logger = logging.getLogger(__name__)


class OutcomeStatus(Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    SUPERSEDED = "superseded"


@dataclass(frozen=True, slots=True)
class UnlockOutcome:
    """Result of one request_unlock call."""
    status: OutcomeStatus
    intent: UnlockIntent
    reason: FailureReason | None = None
    message: str = ""
    attempts: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status is OutcomeStatus.CONFIRMED


@dataclass(slots=True)
class SyncStats:
    requests: int = 0
    backend_calls: int = 0
    confirmed: int = 0
    rejected: int = 0
    transient: int = 0
    superseded: int = 0
    short_circuited: int = 0


class UnlockSynchronizer:
    """Idempotent, retrying unlock requests against the backend.

    Usage:
        sync = UnlockSynchronizer(backend, registry, ledger)
        outcome = await sync.request_unlock(intent)
    """

    def __init__(
        self,
        backend: BackendBase,
        registry: DistrictRegistry,
        ledger: IntentLedger,
        max_retries: int = 1,
        retry_delay_s: float = 0.5,
    ):
        self._backend = backend
        self._registry = registry
        self._ledger = ledger
        self._max_retries = max_retries
        self._retry_delay = retry_delay_s
        self._stats = SyncStats()

    @property
    def stats(self) -> SyncStats:
        return self._stats

    def _already_mine(self, intent: UnlockIntent) -> bool:
        d = self._registry.get(intent.district_id)
        return (
            d is not None
            and d.is_unlocked
            and d.unlocked_by_user_id == intent.user_id
            and not self._registry.is_pending(intent.district_id)
        )

    async def request_unlock(self, intent: UnlockIntent) -> UnlockOutcome:
        """Perform the unlock call for an intent and apply the result."""
        self._stats.requests += 1

        if self._already_mine(intent):
            self._stats.short_circuited += 1
            self._ledger.resolve(intent, IntentState.CONFIRMED)
            return self._finish(OutcomeStatus.CONFIRMED, intent, attempts=0)

        attempts = 0
        while True:
            attempts += 1
            self._stats.backend_calls += 1
            try:
                response = await self._backend.unlock(
                    intent.district_id, intent.user_id, intent.region_id, intent.color,
                )
                break
            except NetworkTransientError as e:
                if attempts > self._max_retries:
                    return self._apply_transient(intent, str(e), attempts)
                logger.warning("Unlock %s failed (attempt %d/%d): %s",
                               intent.district_id, attempts, self._max_retries + 1, e)
                await asyncio.sleep(self._retry_delay)
            except BackendError as e:
                return self._apply_rejection(
                    intent, FailureReason.SERVER_REJECTED, str(e), attempts,
                )

        return self._apply_response(intent, response, attempts)

    def _apply_response(
        self, intent: UnlockIntent, response: UnlockResponse, attempts: int,
    ) -> UnlockOutcome:
        owner = response.user.id if response.user else None

        if response.success or owner == intent.user_id:
            if intent.district_id not in self._registry:
                self._ledger.resolve(intent, IntentState.SUPERSEDED)
                return self._superseded(intent, attempts)
            if not self._ledger.resolve(intent, IntentState.CONFIRMED):
                return self._superseded(intent, attempts)
            self._registry.confirm_unlock(intent.district_id, intent.user_id, intent.color)
            return self._finish(OutcomeStatus.CONFIRMED, intent, attempts=attempts)

        if owner is not None or response.status == 409:
            reason = FailureReason.ALREADY_OWNED_BY_OTHER
            message = response.message or "District already unlocked by another user"
        else:
            reason = FailureReason.SERVER_REJECTED
            message = response.message or "Unknown error"
        return self._apply_rejection(intent, reason, message, attempts)

    def _apply_rejection(
        self, intent: UnlockIntent, reason: FailureReason, message: str, attempts: int,
    ) -> UnlockOutcome:
        if not self._ledger.resolve(intent, IntentState.REJECTED):
            return self._superseded(intent, attempts)
        if intent.district_id in self._registry:
            self._registry.reject_unlock(intent.district_id)
        return self._finish(OutcomeStatus.REJECTED, intent, reason, message, attempts)

    def _apply_transient(self, intent: UnlockIntent, message: str, attempts: int) -> UnlockOutcome:
        if not self._ledger.resolve(intent, IntentState.REJECTED):
            return self._superseded(intent, attempts)
        if intent.district_id in self._registry:
            self._registry.reject_unlock(intent.district_id)
        return self._finish(
            OutcomeStatus.TRANSIENT, intent, FailureReason.NETWORK_TRANSIENT, message, attempts,
        )

    def _superseded(self, intent: UnlockIntent, attempts: int) -> UnlockOutcome:
        logger.debug("Dropping response for superseded intent #%d (%s)",
                     intent.token, intent.district_id)
        return self._finish(OutcomeStatus.SUPERSEDED, intent, attempts=attempts)

    def _finish(
        self,
        status: OutcomeStatus,
        intent: UnlockIntent,
        reason: FailureReason | None = None,
        message: str = "",
        attempts: int = 0,
    ) -> UnlockOutcome:
        if status is OutcomeStatus.CONFIRMED:
            self._stats.confirmed += 1
            logger.info("District %s unlocked by %s", intent.district_id, intent.user_id)
        elif status is OutcomeStatus.REJECTED:
            self._stats.rejected += 1
            logger.info("Unlock of %s rejected (%s): %s",
                        intent.district_id, reason.value, message)
        elif status is OutcomeStatus.TRANSIENT:
            self._stats.transient += 1
            logger.warning("Unlock of %s failed after %d attempts: %s",
                           intent.district_id, attempts, message)
        else:
            self._stats.superseded += 1
        return UnlockOutcome(status, intent, reason, message, attempts)
