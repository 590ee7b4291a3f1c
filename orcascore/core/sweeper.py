"""Recurring background jobs owned by the process lifecycle.

A ``RecurringTask`` runs an async callback on a fixed interval until it is
stopped. Failures inside the callback are logged and the schedule continues.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Any, Awaitable, Callable

from orcascore.core.edit_locks import EditLockManager
from orcascore.core.logging import get_logger

logger = get_logger("core.sweeper")


class RecurringTask:
    """Timer + cancellation handle around an async callback.

    Args:
        name: Label used in log lines.
        interval_seconds: Delay between the end of one run and the start of the next.
        callback: Coroutine function invoked on every tick.
        run_immediately: Run the callback once as soon as ``start()`` is called.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
        run_immediately: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop. Calling twice is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"recurring:{self.name}")
        logger.info("Recurring task '%s' started (every %.0fs)", self.name, self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Recurring task '%s' stopped", self.name)

    async def run_once(self) -> None:
        self.runs += 1
        try:
            await self._callback()
        except Exception as exc:
            logger.warning("Recurring task '%s' failed: %s", self.name, exc)

    async def _loop(self) -> None:
        if self._run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()


def stale_lock_sweeper(
    locks: EditLockManager,
    timeout_minutes: int = 5,
    interval_seconds: float = 60.0,
) -> RecurringTask:
    """Build the sweep that clears abandoned edit locks at startup and then every interval."""

    async def _sweep() -> None:
        await locks.cleanup_stale(timeout_minutes)

    return RecurringTask("stale-edit-locks", interval_seconds, _sweep)
