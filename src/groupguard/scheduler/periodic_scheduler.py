"""Fixed-interval scheduler for the enforcement passes.

Each scheduler owns one asyncio task that runs its pass, sleeps for the
interval and repeats. Shutdown interrupts the sleep at once but lets a pass
that is in flight finish, cancelling it only after ``stop_timeout`` seconds.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from groupguard.util.logger import get_logger

logger = get_logger("periodic_scheduler")


class PeriodicScheduler:
    """
    Reusable scheduler for one periodic enforcement pass.

    Args:
        name: Human-readable name for logging (e.g., "GATEKEEPER").
        run_pass: Zero-argument coroutine function performing one pass.
        get_interval: Callable returning the interval in seconds (called at start).
        run_immediately: Run the first pass at start instead of after one interval.
        stop_timeout: Seconds shutdown waits for an in-flight pass before cancelling it.
    """

    def __init__(
        self,
        name: str,
        run_pass: Callable[[], Awaitable[Any]],
        get_interval: Callable[[], float],
        run_immediately: bool = True,
        stop_timeout: float = 30.0,
    ) -> None:
        self._name = name
        self._run_pass = run_pass
        self._get_interval = get_interval
        self._run_immediately = run_immediately
        self._stop_timeout = stop_timeout
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self.passes_completed = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Any:
        """Run a single pass, logging instead of raising on failure."""
        try:
            return await self._run_pass()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("[%s] Unexpected error during pass: %s", self._name, exc)
            return None
        finally:
            self.passes_completed += 1

    async def _wait(self, stop_event: asyncio.Event, interval: float) -> bool:
        """Sleep for ``interval``. Returns True when shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        return stop_event.is_set()

    async def _run_loop(self, interval: float, stop_event: asyncio.Event) -> None:
        logger.info("[%s] Starting periodic pass (interval=%.1fs)", self._name, interval)
        try:
            if not self._run_immediately and await self._wait(stop_event, interval):
                return
            while not stop_event.is_set():
                await self.run_once()
                if await self._wait(stop_event, interval):
                    return
        except asyncio.CancelledError:
            logger.info("[%s] Periodic pass cancelled", self._name)
            raise

    def start(self) -> None:
        """Start the background task if not already running."""
        if self.running:
            logger.warning("[%s] Task already running", self._name)
            return
        interval = self._get_interval()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(interval, self._stop_event))

    async def shutdown(self) -> None:
        """Stop the loop, waiting up to ``stop_timeout`` for the current pass."""
        if self._task and not self._task.done():
            self._stop_event.set()
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("[%s] Pass still running after %.1fs, cancelling", self._name, self._stop_timeout)
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._stop_event = None
        logger.info("[%s] Scheduler shutdown complete", self._name)
