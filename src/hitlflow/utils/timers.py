"""Cancellable scheduled tasks keyed by an opaque id."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class TimerHandle:
    """Handle for a single scheduled callback."""

    def __init__(self, key: str, delay_seconds: float, task: "asyncio.Task[Any]"):
        self.key = key
        self.delay_seconds = delay_seconds
        self.task = task
        self.fired = False

    @property
    def cancelled(self) -> bool:
        return self.task.cancelled()

    def cancel(self) -> None:
        """Cancel the timer. Safe to call repeatedly, and from inside the callback."""
        if self.task.done() or self.task is asyncio.current_task():
            return
        self.task.cancel()


class TimerRegistry:
    """
    At most one live timer per key.

    Scheduling under an existing key replaces the previous timer. A fired
    timer is removed from the registry before its callback runs, so the
    callback may reschedule under the same key or cancel it without
    cancelling itself.
    """

    def __init__(self, name: str = "timers"):
        self.name = name
        self._timers: Dict[str, TimerHandle] = {}

    def schedule(
        self,
        key: str,
        delay_seconds: float,
        callback: Callable[[], Awaitable[Any]],
    ) -> TimerHandle:
        self.cancel(key)

        async def _run() -> None:
            try:
                await asyncio.sleep(max(0.0, delay_seconds))
            except asyncio.CancelledError:
                return

            handle = self._timers.get(key)
            if handle is not None and handle.task is asyncio.current_task():
                del self._timers[key]
                handle.fired = True

            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {self.name} callback for {key}: {e}", exc_info=True)

        task = asyncio.create_task(_run(), name=f"{self.name}:{key}")
        handle = TimerHandle(key, delay_seconds, task)
        self._timers[key] = handle
        return handle

    def cancel(self, key: str) -> bool:
        """Cancel the timer for key. Returns whether a live timer existed."""
        handle = self._timers.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def has(self, key: str) -> bool:
        return key in self._timers

    def get(self, key: str) -> Optional[TimerHandle]:
        return self._timers.get(key)

    def cancel_all(self) -> int:
        count = 0
        for key in list(self._timers):
            if self.cancel(key):
                count += 1
        return count

    def __len__(self) -> int:
        return len(self._timers)
