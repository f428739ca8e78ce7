"""
AutoMod action log repository.

Stores :class:`AuditEntry` rows in ``automod_logs`` and reads them back for the
history views, newest first.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import aiosqlite

from groupguard.database.db_connection import ConnectionManager
from groupguard.datatypes.audit_datatypes import AuditEntry
from groupguard.util.logger import get_logger

logger = get_logger("database_automod_log")


def _row_to_entry(row: aiosqlite.Row) -> AuditEntry:
    try:
        details = json.loads(row["details"] or "{}")
    except ValueError:
        details = {}
    return AuditEntry(
        id=row["id"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        user=row["user"],
        user_id=row["user_id"],
        group_id=row["group_id"],
        action=row["action"],
        reason=row["reason"],
        module=row["module"],
        details=details if isinstance(details, dict) else {},
    )


class AutoModLogRepository:
    """Insert and query AutoMod audit rows through a shared :class:`ConnectionManager`."""

    def __init__(self, connections: ConnectionManager) -> None:
        self._connections = connections

    async def create_log(self, entry: AuditEntry) -> int:
        """Insert ``entry`` and return its row id."""
        async with self._connections.transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO automod_logs (timestamp, user, user_id, group_id, action, reason, module, details)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.timestamp.isoformat(),
                    entry.user,
                    entry.user_id,
                    entry.group_id,
                    entry.action,
                    entry.reason,
                    entry.module,
                    json.dumps(entry.details, default=str),
                ),
            )
            entry.id = cursor.lastrowid

        logger.debug("[AUTOMOD LOG] Logged %s on %s in group %s", entry.action, entry.user_id, entry.group_id)
        return entry.id or 0

    async def get_logs(self, group_id: Optional[str] = None, limit: int = 100) -> List[AuditEntry]:
        async with self._connections.read() as conn:
            if group_id:
                cursor = await conn.execute(
                    "SELECT * FROM automod_logs WHERE group_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (group_id, limit),
                )
            else:
                cursor = await conn.execute(
                    "SELECT * FROM automod_logs ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (limit,),
                )
            rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def count_logs(self, group_id: str, action: Optional[str] = None) -> int:
        async with self._connections.read() as conn:
            if action:
                cursor = await conn.execute(
                    "SELECT COUNT(*) FROM automod_logs WHERE group_id = ? AND action = ?", (group_id, action)
                )
            else:
                cursor = await conn.execute("SELECT COUNT(*) FROM automod_logs WHERE group_id = ?", (group_id,))
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def clear_logs(self) -> int:
        async with self._connections.transaction() as conn:
            cursor = await conn.execute("DELETE FROM automod_logs")
            deleted = cursor.rowcount
        logger.info("[AUTOMOD LOG] Cleared %d log entries", deleted)
        return deleted

    async def cleanup_old_logs(self, days_to_keep: int = 30) -> int:
        """Delete entries older than ``days_to_keep`` days. Returns the number deleted."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days_to_keep)).isoformat()
        async with self._connections.transaction() as conn:
            cursor = await conn.execute("DELETE FROM automod_logs WHERE timestamp < ?", (cutoff,))
            deleted = cursor.rowcount
        if deleted:
            logger.info("[AUTOMOD LOG] Removed %d entries older than %d days", deleted, days_to_keep)
        return deleted
