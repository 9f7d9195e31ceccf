"""Timer Registry — one cancelable delayed callback per (user, purpose) key.

Inactivity timeouts, webhook processing delays and suppression expiry are
all the same shape: wait a while, then run a coroutine, unless a newer
event replaced the wait. The registry keeps at most one live task per key;
scheduling again for the same key cancels the previous task first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

TimerKey = tuple[str, str]
TimerCallback = Callable[[], Awaitable[None]]

# Purposes used as the second half of a key.
INACTIVITY = "inactivity"
WEBHOOK = "webhook"
SUPPRESSION = "suppression"


class TimerRegistry:
    """Schedules delayed coroutines on the running event loop.

    Usage::

        timers = TimerRegistry()
        timers.schedule((user_id, INACTIVITY), 300, expire)
        timers.cancel((user_id, INACTIVITY))  # safe to call twice
    """

    def __init__(self) -> None:
        self._tasks: dict[TimerKey, asyncio.Task] = {}  # type: ignore[type-arg]

    def schedule(
        self,
        key: TimerKey,
        delay: float,
        callback: TimerCallback,
    ) -> asyncio.Task:  # type: ignore[type-arg]
        """(Re)start the timer for ``key``."""
        self.cancel(key)
        task = asyncio.create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        return task

    def cancel(self, key: TimerKey) -> bool:
        """Cancel the live timer for ``key``. Returns whether one was pending."""
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_pending(self, key: TimerKey) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        """Cancel every live timer."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cancelled %d pending timer(s)", len(tasks))

    async def _run(self, key: TimerKey, delay: float, callback: TimerCallback) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            # Replaced by a newer schedule() or cancelled outright.
            return

        # The callback may reschedule the same key, so drop ours first.
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]

        try:
            await callback()
        except Exception:
            logger.exception("Timer callback failed for %s", key)
