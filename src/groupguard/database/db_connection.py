"""
Shared aiosqlite connection for the AutoMod action log.

The log is append-mostly: the audit service inserts one row per moderation
action and the UI pages through recent rows. One connection serves both.
Writers take ``transaction()``, which holds an asyncio lock for the whole
unit of work; readers take ``read()`` and never wait on a writer (WAL).
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from groupguard.util.logger import get_logger

logger = get_logger("database_connection")

BUSY_TIMEOUT_MS = 5000

_SETUP_SCRIPT = """
PRAGMA journal_mode = WAL;
PRAGMA synchronous = NORMAL;
PRAGMA temp_store = MEMORY;
PRAGMA busy_timeout = {busy_timeout};
"""


class ConnectionManager:
    def __init__(self, busy_timeout_ms: int = BUSY_TIMEOUT_MS) -> None:
        self._conn: aiosqlite.Connection | None = None
        self._writer = asyncio.Lock()
        self._busy_timeout_ms = busy_timeout_ms
        self.path: Path | None = None

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    async def open(self, path: Path) -> bool:
        """Connect to ``path`` and configure the session. Returns False if already open."""
        if self._conn is not None:
            logger.debug("[DB CONNECTION] Already connected to %s", self.path)
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        try:
            await conn.executescript(_SETUP_SCRIPT.format(busy_timeout=self._busy_timeout_ms))
        except aiosqlite.Error:
            await conn.close()
            raise

        self._conn = conn
        self.path = path
        logger.info("[DB CONNECTION] Connected to %s", path)
        return True

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.execute("PRAGMA optimize")
        except aiosqlite.Error as e:
            logger.warning("[DB CONNECTION] PRAGMA optimize failed on close: %s", e)
        finally:
            await conn.close()
        logger.info("[DB CONNECTION] Disconnected from %s", self.path)

    def _require(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("AutoMod log database is not open")
        return self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """One writer at a time. Commits on exit, rolls back if the block raises or is cancelled."""
        async with self._writer:
            conn = self._require()
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        yield self._require()
