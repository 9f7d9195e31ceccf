"""Suppression Registry — remembers tickets the bot itself just changed.

GLPI fires its update notification for every change, including the ones
the bot makes on a user's behalf. Each entry lives for a cooldown window
and lets the webhook coalescer drop that echo.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from deskbot.services.timers import SUPPRESSION, TimerRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Suppression:
    ticket_id: int
    recorded_at: float


class SuppressionRegistry:
    """At most one live suppression per user; a newer one replaces it."""

    def __init__(
        self,
        timers: TimerRegistry,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timers = timers
        self._cooldown = cooldown
        self._clock = clock
        self._entries: dict[str, Suppression] = {}

    @property
    def cooldown(self) -> float:
        return self._cooldown

    def record(self, user_id: str, ticket_id: int) -> None:
        self._entries[user_id] = Suppression(ticket_id=ticket_id, recorded_at=self._clock())
        self._timers.schedule((user_id, SUPPRESSION), self._cooldown, lambda: self._expire(user_id))
        logger.debug("Suppressing updates of ticket #%s for %s", ticket_id, user_id)

    def get(self, user_id: str) -> Suppression | None:
        return self._entries.get(user_id)

    def is_suppressed(self, user_id: str, ticket_id: int) -> bool:
        entry = self._entries.get(user_id)
        if entry is None or entry.ticket_id != ticket_id:
            return False
        return self._clock() - entry.recorded_at < self._cooldown

    def clear(self, user_id: str) -> None:
        self._entries.pop(user_id, None)
        self._timers.cancel((user_id, SUPPRESSION))

    async def _expire(self, user_id: str) -> None:
        self._entries.pop(user_id, None)
