"""Collision-free color assignment for collaborative map rosters.

Every active roster member gets a palette color no other active member
holds. Existing assignments are kept where possible so colors stay stable
across reloads. Once the palette is exhausted, the remaining users share a
neutral fallback color. That is a degraded display, not an error.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence

from unlock_engine.config import FALLBACK_COLOR, USER_COLORS
from unlock_engine.models import UserColorAssignment

logger = logging.getLogger(__name__)


class ColorResolver:
    """Deterministic palette assignment.

    Same roster + same existing assignments -> same colors.
    """

    def __init__(
        self,
        palette: Sequence[str] = USER_COLORS,
        fallback: str = FALLBACK_COLOR,
    ):
        if not palette:
            raise ValueError("palette must not be empty")
        if len(set(palette)) != len(palette):
            raise ValueError("palette colors must be distinct")
        if fallback in palette:
            raise ValueError("fallback color must not be a palette color")
        self._palette = list(palette)
        self._fallback = fallback

    @property
    def palette(self) -> list[str]:
        return list(self._palette)

    @property
    def fallback(self) -> str:
        return self._fallback

    def assign(
        self,
        roster: Iterable[str],
        existing: Iterable[UserColorAssignment] = (),
        at: float | None = None,
    ) -> list[UserColorAssignment]:
        """Assign a color to every roster member, in roster order.

        Args:
            roster: active user ids (duplicates collapsed)
            existing: previously stored assignments
            at: timestamp for new assignments (defaults to now)
        """
        if at is None:
            at = time.time()
        users = list(dict.fromkeys(roster))
        previous = {a.user_id: a for a in existing}

        # Pass 1: keep valid existing colors, first roster member wins a clash
        held: dict[str, str] = {}
        kept: dict[str, UserColorAssignment] = {}
        for user_id in users:
            prior = previous.get(user_id)
            if prior is None or prior.color not in self._palette:
                continue
            if prior.color in held:
                logger.info("Color %s held by both %s and %s, reassigning %s",
                            prior.color, held[prior.color], user_id, user_id)
                continue
            held[prior.color] = user_id
            kept[user_id] = prior

        # Pass 2: lowest free palette index, recomputed after every pick
        result = []
        exhausted = 0
        for user_id in users:
            if user_id in kept:
                result.append(kept[user_id])
                continue
            color = next((c for c in self._palette if c not in held), None)
            if color is None:
                color = self._fallback
                exhausted += 1
            else:
                held[color] = user_id
            result.append(UserColorAssignment(user_id=user_id, color=color, assigned_at=at))

        if exhausted:
            logger.info("Palette exhausted: %d users share fallback color %s",
                        exhausted, self._fallback)
        return result


def color_for(assignments: Iterable[UserColorAssignment], user_id: str) -> str | None:
    """Look up one user's color in an assignment list."""
    for a in assignments:
        if a.user_id == user_id:
            return a.color
    return None
