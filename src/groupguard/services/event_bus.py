"""
In-process broadcast plumbing between the engine and its UI consumers.

``broadcast(channel, payload)`` never raises. Synchronous subscribers run
inline; coroutine subscribers are scheduled as tasks that are tracked until
they finish so their errors are logged instead of lost.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set

from groupguard.util.logger import get_logger

logger = get_logger("event_bus")

Subscriber = Callable[[str, Any], Any]

CHANNEL_VIOLATION = "automod:violation"
CHANNEL_INSTANCE_EVENT = "instance-guard:event"
CHANNEL_PERMISSION_VIOLATION = "permission-guard:violation"
ALL_CHANNELS = "*"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, channel: str, callback: Subscriber) -> None:
        """Register ``callback(channel, payload)``. Use ``"*"`` to receive every channel."""
        self._subscribers[channel].append(callback)

    def unsubscribe(self, channel: str, callback: Subscriber) -> None:
        try:
            self._subscribers[channel].remove(callback)
        except ValueError:
            pass

    def broadcast(self, channel: str, payload: Any) -> None:
        for callback in list(self._subscribers.get(channel, ())) + list(self._subscribers.get(ALL_CHANNELS, ())):
            try:
                result = callback(channel, payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:
                logger.exception("[EVENT BUS] Subscriber failed on channel %s", channel)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[EVENT BUS] Async subscriber failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight async subscribers."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
