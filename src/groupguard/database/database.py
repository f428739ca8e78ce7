"""
Audit database coordinator.

Owns the connection manager and the log repository.

Lifecycle:
    1. ``await database.initialize()`` at startup
    2. read and write through :attr:`Database.automod_logs`
    3. ``await database.shutdown()`` at exit
"""

from __future__ import annotations

from pathlib import Path

from groupguard.database.automod_log import AutoModLogRepository
from groupguard.database.db_connection import ConnectionManager
from groupguard.database.db_schema import SchemaManager
from groupguard.util.logger import get_logger

logger = get_logger("database")

DB_PATH = Path("./data/groupguard.db").resolve()


class Database:
    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = db_path
        self.connections = ConnectionManager()
        self.automod_logs = AutoModLogRepository(self.connections)
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> bool:
        """Open the connection and create the schema. Returns False on failure."""
        if self._initialized:
            logger.debug("[DATABASE] Already initialized, skipping")
            return True

        try:
            await self.connections.open(self.db_path)
            async with self.connections.transaction() as conn:
                await SchemaManager.initialize_schema(conn)
            self._initialized = True
            logger.info("[DATABASE] Database initialized at %s", self.db_path)
            return True
        except Exception as e:
            logger.error("[DATABASE] Database initialization failed: %s", e)
            return False

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self.connections.close()
        self._initialized = False
        logger.info("[DATABASE] Database shutdown complete")
