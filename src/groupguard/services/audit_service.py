"""
Audit/event sink for automated moderation actions.

``record`` persists an :class:`AuditEntry` in the background and broadcasts
it to the UI unless the entry asks not to be broadcast. Both side effects are
fire-and-forget: failures are logged and never reach the enforcement loops.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Set

from groupguard.database.database import Database
from groupguard.datatypes.audit_datatypes import AuditEntry
from groupguard.services.event_bus import CHANNEL_VIOLATION, EventBus
from groupguard.util.logger import get_logger

logger = get_logger("audit_service")


class AuditService:
    def __init__(self, database: Database, event_bus: EventBus) -> None:
        self.database = database
        self.event_bus = event_bus
        self._pending: Set[asyncio.Task] = set()

    def record(self, entry: AuditEntry) -> None:
        """Persist ``entry`` without waiting and broadcast it unless ``skip_broadcast`` is set."""
        self.persist(entry)
        if not entry.skip_broadcast:
            self.broadcast(entry)

    def persist(self, entry: AuditEntry) -> None:
        task = asyncio.ensure_future(self._persist(entry))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def broadcast(self, entry: AuditEntry) -> None:
        payload = entry.to_broadcast_payload()
        payload["groupId"] = entry.group_id
        payload["module"] = entry.module
        self.event_bus.broadcast(CHANNEL_VIOLATION, payload)

    async def _persist(self, entry: AuditEntry) -> None:
        if not self.database.initialized:
            logger.warning("[AUDIT] Database not initialized, dropping %s entry for %s", entry.action, entry.user_id)
            return
        try:
            await self.database.automod_logs.create_log(entry)
        except Exception:
            logger.exception("[AUDIT] Failed to persist %s entry for %s", entry.action, entry.user_id)

    async def flush(self) -> None:
        """Wait for pending writes. Used at shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def get_history(self, group_id: Optional[str] = None, limit: int = 100) -> List[AuditEntry]:
        try:
            return await self.database.automod_logs.get_logs(group_id, limit)
        except Exception:
            logger.exception("[AUDIT] Failed to read history")
            return []

    async def clear_history(self) -> int:
        try:
            await self.flush()
            return await self.database.automod_logs.clear_logs()
        except Exception:
            logger.exception("[AUDIT] Failed to clear history")
            return 0
