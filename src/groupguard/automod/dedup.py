"""
Deduplication sets shared by the enforcement loops.

Keys are composite strings such as ``gatekeeper:<groupId>:<userId>``,
``<groupId>:<worldId>:<instanceId>`` or ``<groupId>:<auditLogId>``. Both sets
only ever grow between prunes, so concurrent passes that mark a key before
acting converge instead of acting twice.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterator

from groupguard.util.logger import get_logger

logger = get_logger("dedup")


class BoundedKeySet:
    """
    Insertion-ordered key set with a size threshold.

    When the set grows beyond ``max_size`` the oldest half of the keys is
    evicted. This bounds memory; evicted keys may be processed again later.
    """

    def __init__(self, max_size: int = 1000, name: str = "keys") -> None:
        self.max_size = max_size
        self.name = name
        self._keys: Dict[str, None] = {}

    def add(self, key: str) -> None:
        self._keys[key] = None
        if len(self._keys) > self.max_size:
            self._prune()

    def mark(self, key: str) -> bool:
        """Add ``key`` and return True if it was not present before."""
        if key in self._keys:
            return False
        self.add(key)
        return True

    def discard(self, key: str) -> None:
        self._keys.pop(key, None)

    def clear(self) -> None:
        self._keys.clear()

    def _prune(self) -> None:
        evict = self.max_size // 2
        for key in list(self._keys)[:evict]:
            del self._keys[key]
        logger.debug("[DEDUP] Pruned %d oldest entries from %s", evict, self.name)

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._keys))


class ExpiringKeySet:
    """
    Key set whose entries expire ``ttl_seconds`` after being added.

    Expiry is lazy: callers run :meth:`prune` once per enforcement pass.
    """

    def __init__(self, ttl_seconds: float = 1800.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._timestamps: Dict[str, float] = {}

    def add(self, key: str) -> None:
        self._timestamps[key] = self._clock()

    def prune(self) -> int:
        """Drop expired keys and return how many were removed."""
        now = self._clock()
        expired = [key for key, added_at in self._timestamps.items() if now - added_at > self.ttl_seconds]
        for key in expired:
            del self._timestamps[key]
        return len(expired)

    def discard(self, key: str) -> None:
        self._timestamps.pop(key, None)

    def clear(self) -> None:
        self._timestamps.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._timestamps

    def __len__(self) -> int:
        return len(self._timestamps)
