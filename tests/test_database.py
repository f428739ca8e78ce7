"""Tests for the audit database."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from groupguard.database.database import Database
from groupguard.database.db_connection import ConnectionManager
from groupguard.datatypes.audit_datatypes import AuditEntry, AuditModule


def make_entry(group_id: str = "grp_1", action: str = "REJECT", **kwargs) -> AuditEntry:
    fields = dict(
        user="Someone",
        user_id="usr_1",
        group_id=group_id,
        action=action,
        reason="Keyword: \"scam\" (in bio)",
        module=AuditModule.GATEKEEPER,
    )
    fields.update(kwargs)
    return AuditEntry(**fields)


class TestInitDatabase:
    @pytest.mark.asyncio
    async def test_init_creates_tables(self, database):
        async with database.connections.read() as conn:
            cursor = await conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='automod_logs'"
            )
            assert await cursor.fetchone() is not None

            cursor = await conn.execute("SELECT version FROM schema_version")
            assert (await cursor.fetchone())[0] == 1

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, database):
        assert await database.initialize() is True

    @pytest.mark.asyncio
    async def test_initialize_failure_returns_false(self, tmp_path: Path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("", encoding="utf-8")
        db = Database(blocker / "automod.db")
        assert await db.initialize() is False
        assert db.initialized is False


class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_open_twice_keeps_first_connection(self, tmp_path: Path):
        connections = ConnectionManager()
        assert await connections.open(tmp_path / "log.db") is True
        assert await connections.open(tmp_path / "other.db") is False
        assert connections.path == tmp_path / "log.db"
        await connections.close()
        assert not connections.is_open

    @pytest.mark.asyncio
    async def test_wal_and_busy_timeout_are_applied(self, tmp_path: Path):
        connections = ConnectionManager(busy_timeout_ms=1234)
        await connections.open(tmp_path / "log.db")
        try:
            async with connections.read() as conn:
                assert (await (await conn.execute("PRAGMA journal_mode")).fetchone())[0] == "wal"
                assert (await (await conn.execute("PRAGMA busy_timeout")).fetchone())[0] == 1234
        finally:
            await connections.close()

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, tmp_path: Path):
        connections = ConnectionManager()
        await connections.open(tmp_path / "log.db")
        try:
            async with connections.transaction() as conn:
                await conn.execute("CREATE TABLE t (v INTEGER)")

            with pytest.raises(ValueError):
                async with connections.transaction() as conn:
                    await conn.execute("INSERT INTO t VALUES (1)")
                    raise ValueError("abort")

            async with connections.read() as conn:
                assert (await (await conn.execute("SELECT COUNT(*) FROM t")).fetchone())[0] == 0
        finally:
            await connections.close()

    @pytest.mark.asyncio
    async def test_use_before_open_raises(self):
        connections = ConnectionManager()
        with pytest.raises(RuntimeError):
            async with connections.read():
                pass
        await connections.close()


class TestAutoModLogs:
    @pytest.mark.asyncio
    async def test_create_and_read_back(self, database):
        entry = make_entry(details={"ruleName": "Scam", "evaluation": {"action": "REJECT"}})
        row_id = await database.automod_logs.create_log(entry)

        assert row_id == entry.id
        logs = await database.automod_logs.get_logs("grp_1")
        assert len(logs) == 1
        assert logs[0].details == {"ruleName": "Scam", "evaluation": {"action": "REJECT"}}
        assert logs[0].timestamp == entry.timestamp
        assert logs[0].module == "Gatekeeper"

    @pytest.mark.asyncio
    async def test_logs_are_newest_first_and_filtered(self, database):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await database.automod_logs.create_log(make_entry(reason="old", timestamp=base))
        await database.automod_logs.create_log(make_entry(reason="new", timestamp=base + timedelta(hours=1)))
        await database.automod_logs.create_log(make_entry(group_id="grp_2", timestamp=base))

        logs = await database.automod_logs.get_logs("grp_1")
        assert [log.reason for log in logs] == ["new", "old"]
        assert len(await database.automod_logs.get_logs()) == 3
        assert len(await database.automod_logs.get_logs(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_count_logs(self, database):
        await database.automod_logs.create_log(make_entry(action="REJECT"))
        await database.automod_logs.create_log(make_entry(action="AUTO_ACCEPT"))
        assert await database.automod_logs.count_logs("grp_1") == 2
        assert await database.automod_logs.count_logs("grp_1", "REJECT") == 1

    @pytest.mark.asyncio
    async def test_clear_and_cleanup(self, database):
        old = datetime.now(timezone.utc) - timedelta(days=40)
        await database.automod_logs.create_log(make_entry(timestamp=old))
        await database.automod_logs.create_log(make_entry())

        assert await database.automod_logs.cleanup_old_logs(30) == 1
        assert await database.automod_logs.clear_logs() == 1
        assert await database.automod_logs.get_logs() == []
