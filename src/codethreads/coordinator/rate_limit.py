"""Auto-resume timers for rate-limited threads.

Deadlines are always derived from the persisted absolute timestamp
(``timestamp + cooldown``) so a timer re-armed after a restart fires at the
same wall-clock moment as the one lost with the previous process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

log = logging.getLogger(__name__)

FireCallback = Callable[[str], Awaitable[object]]


def format_retry_time(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, UTC).strftime("%Y-%m-%d %H:%M UTC")


class AutoResumeScheduler:
    """At most one pending timer per thread id."""

    def __init__(self, *, cooldown_seconds: int, clock: Callable[[], float] = time.time) -> None:
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._timers: dict[str, asyncio.Task[None]] = {}

    def deadline(self, timestamp: int) -> int:
        return timestamp + self.cooldown_seconds

    def delay_for(self, timestamp: int) -> float:
        return max(self.deadline(timestamp) - self._clock(), 0.0)

    def is_due(self, timestamp: int) -> bool:
        return self._clock() >= self.deadline(timestamp)

    def schedule(self, thread_id: str, timestamp: int, fire: FireCallback) -> float:
        """Arm (or replace) the timer for ``thread_id``; returns the delay in seconds."""
        self.cancel(thread_id)
        delay = self.delay_for(timestamp)
        task = asyncio.create_task(
            self._run(thread_id, delay, fire),
            name=f"auto-resume:{thread_id}",
        )
        self._timers[thread_id] = task
        log.info(
            "Auto-resume for %s armed for %s (in %.0fs)",
            thread_id,
            format_retry_time(self.deadline(timestamp)),
            delay,
        )
        return delay

    async def _run(self, thread_id: str, delay: float, fire: FireCallback) -> None:
        await asyncio.sleep(delay)
        current = asyncio.current_task()
        # A fired timer is no longer pending, so a re-arm from inside ``fire``
        # registers a new task instead of cancelling this one.
        if self._timers.get(thread_id) is current:
            del self._timers[thread_id]
        try:
            await fire(thread_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Auto-resume for %s failed", thread_id)

    def cancel(self, thread_id: str) -> bool:
        task = self._timers.pop(thread_id, None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        log.debug("Auto-resume timer for %s cancelled", thread_id)
        return True

    def cancel_all(self) -> None:
        for thread_id in list(self._timers):
            self.cancel(thread_id)

    def has_timer(self, thread_id: str) -> bool:
        task = self._timers.get(thread_id)
        return task is not None and not task.done()

    def pending(self) -> list[str]:
        return [tid for tid, task in self._timers.items() if not task.done()]

    async def wait_all(self) -> None:
        """Wait until every currently armed timer has fired or been cancelled."""
        while self._timers:
            tasks = list(self._timers.values())
            await asyncio.gather(*tasks, return_exceptions=True)
            for thread_id, task in list(self._timers.items()):
                if task.done():
                    self._timers.pop(thread_id, None)
