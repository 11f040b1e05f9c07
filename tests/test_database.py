"""Tests for the offline database lifecycle and schema upgrades."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiosqlite
import pytest

from ecogram_offline.config import OfflineConfig
from ecogram_offline.exceptions import StorageUnavailableError
from ecogram_offline.local import (
    SCHEMA_VERSION,
    LocalRecordStore,
    OfflineDatabase,
    SyncQueue,
    get_offline_db,
    init_offline_db,
    is_ready,
    shutdown_offline_db,
)
from ecogram_offline.local import database as database_module


class TestLifecycle:
    async def test_create_initializes(self) -> None:
        db = await OfflineDatabase.create(":memory:")
        assert db.is_ready is True
        assert await db.get_schema_version() == SCHEMA_VERSION
        await db.close()
        assert db.is_ready is False

    async def test_close_twice_is_safe(self) -> None:
        db = await OfflineDatabase.create(":memory:")
        await db.close()
        await db.close()

    async def test_concurrent_initialize_opens_once(self, tmp_path: Path) -> None:
        db = OfflineDatabase(tmp_path / "offline.db")

        await asyncio.gather(db.initialize(), db.initialize(), db.initialize())

        assert db.is_ready
        conn = db.conn
        await db.initialize()
        assert db.conn is conn
        await db.close()

    async def test_context_manager(self, tmp_path: Path) -> None:
        async with OfflineDatabase(tmp_path / "nested" / "offline.db") as db:
            assert db.is_ready
        assert not db.is_ready
        assert (tmp_path / "nested" / "offline.db").exists()

    async def test_unopenable_path_raises_storage_unavailable(self, tmp_path: Path) -> None:
        # A directory cannot be opened as a database file
        db = OfflineDatabase(tmp_path)

        with pytest.raises(StorageUnavailableError) as exc_info:
            await db.initialize()

        assert exc_info.value.operation == "initialize"
        assert db.is_ready is False

    def test_connection_before_initialize_raises(self) -> None:
        db = OfflineDatabase(":memory:")

        with pytest.raises(StorageUnavailableError) as exc_info:
            db.conn

        assert exc_info.value.operation == "access"

    async def test_data_survives_reopen(self, tmp_path: Path) -> None:
        path = tmp_path / "offline.db"
        async with OfflineDatabase(path) as db:
            await LocalRecordStore(db).put("games", {"_id": "g1", "name": "Kimura Trap"})
            await SyncQueue(db).enqueue("update", "games", "g1", {"favorite": True})

        async with OfflineDatabase(path) as db:
            assert (await LocalRecordStore(db).get("games", "g1"))["name"] == "Kimura Trap"
            pending = await SyncQueue(db).pending()
            assert [e.payload for e in pending] == [{"favorite": True}]


class TestSchemaUpgrade:
    async def _create_v1_database(self, path: Path) -> None:
        async with aiosqlite.connect(str(path)) as conn:
            await conn.execute(
                "CREATE TABLE games (key TEXT NOT NULL PRIMARY KEY, data TEXT NOT NULL, "
                "updated_at TEXT NOT NULL)"
            )
            await conn.execute(
                "CREATE TABLE sessions (key TEXT NOT NULL PRIMARY KEY, data TEXT NOT NULL, "
                "updated_at TEXT NOT NULL)"
            )
            await conn.execute(
                'CREATE TABLE "syncQueue" (seq INTEGER PRIMARY KEY AUTOINCREMENT, '
                "op TEXT NOT NULL, collection TEXT NOT NULL, record_key TEXT, payload TEXT, "
                "timestamp TEXT NOT NULL)"
            )
            await conn.execute(
                "CREATE TABLE metadata (key TEXT NOT NULL PRIMARY KEY, value TEXT, "
                "updated_at TEXT NOT NULL)"
            )
            await conn.execute(
                "INSERT INTO games VALUES ('g1', '{\"_id\": \"g1\", \"topic\": \"offense\"}', "
                "'2025-01-01T00:00:00.000000+00:00')"
            )
            await conn.execute(
                "INSERT INTO \"syncQueue\" (op, collection, record_key, payload, timestamp) "
                "VALUES ('update', 'games', 'g1', '{\"topic\": \"offense\"}', "
                "'2025-01-01T00:00:00.000000+00:00')"
            )
            await conn.commit()

    async def test_upgrade_from_v1_preserves_rows(self, tmp_path: Path) -> None:
        path = tmp_path / "legacy.db"
        await self._create_v1_database(path)

        async with OfflineDatabase(path) as db:
            assert await db.get_schema_version() == SCHEMA_VERSION

            store = LocalRecordStore(db)
            assert await store.get("games", "g1") == {"_id": "g1", "topic": "offense"}
            # Index created during the upgrade
            assert [r["_id"] for r in await store.list("games", "topic", "offense")] == ["g1"]

            pending = await SyncQueue(db).pending()
            assert len(pending) == 1
            assert pending[0].retries == 0
            assert pending[0].last_error is None

            # Collection added in v2
            await store.put("classPreps", {"id": "p1", "date": "2026-10-19"})
            assert await store.count("classPreps") == 1

    async def test_upgrade_logs_added_collections(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        path = tmp_path / "legacy.db"
        await self._create_v1_database(path)

        with caplog.at_level(logging.INFO, logger="ecogram_offline.local.database"):
            async with OfflineDatabase(path):
                pass

        upgrades = [r for r in caplog.records if r.getMessage().startswith("Upgrading")]
        assert len(upgrades) == 1
        assert upgrades[0].added_collections == ["classPreps"]

    async def test_fresh_database_does_not_log_upgrade(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="ecogram_offline.local.database"):
            async with OfflineDatabase(tmp_path / "fresh.db"):
                pass

        assert not [r for r in caplog.records if r.getMessage().startswith("Upgrading")]

    async def test_fresh_database_reports_version(self, tmp_path: Path) -> None:
        async with OfflineDatabase(tmp_path / "fresh.db") as db:
            row = await db.fetchone("check", "SELECT value FROM schema_meta WHERE key = 'version'")
            assert int(row["value"]) == SCHEMA_VERSION


class TestProcessWideHandle:
    @pytest.fixture(autouse=True)
    async def reset_default(self):
        yield
        await shutdown_offline_db()

    async def test_init_is_ready_shutdown(self) -> None:
        assert is_ready() is False
        with pytest.raises(StorageUnavailableError):
            get_offline_db()

        db = await init_offline_db(OfflineConfig(db_path=":memory:"))

        assert is_ready() is True
        assert get_offline_db() is db

        await shutdown_offline_db()
        assert is_ready() is False

    async def test_concurrent_init_returns_same_handle(self) -> None:
        config = OfflineConfig(db_path=":memory:")

        handles = await asyncio.gather(*(init_offline_db(config) for _ in range(5)))

        assert all(h is handles[0] for h in handles)
        assert database_module._default_db is handles[0]
