"""
Offline database handle.

Owns the single aiosqlite connection shared by the record store, the
sync queue and the metadata store. All writes go through
``transaction()``, which serialises them on one lock so a commit or
rollback never mixes statements from two callers.

A process-wide default handle is available through ``init_offline_db``,
``is_ready``, ``get_offline_db`` and ``shutdown_offline_db``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from ..config import OfflineConfig
from ..exceptions import StorageUnavailableError
from .schema import (
    COLLECTIONS,
    METADATA_TABLE_SQL,
    QUEUE_INDEX_SQL,
    QUEUE_TABLE,
    QUEUE_TABLE_SQL,
    QUEUE_V2_COLUMNS,
    SCHEMA_META_TABLE,
    SCHEMA_META_TABLE_SQL,
    SCHEMA_VERSION,
)

logger = logging.getLogger(__name__)


class OfflineDatabase:
    """Lifecycle and schema management for the local SQLite file."""

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, db_path: str | Path = ":memory:") -> OfflineDatabase:
        """Create and initialize a database handle."""
        db = cls(db_path)
        await db.initialize()
        return db

    @property
    def is_ready(self) -> bool:
        return self._initialized and self._conn is not None

    @property
    def conn(self) -> aiosqlite.Connection:
        conn = self._conn
        if not self._initialized or conn is None:
            raise StorageUnavailableError("access", str(self.db_path))
        return conn

    async def initialize(self) -> None:
        """Open the connection and bring the schema up to date.

        Concurrent callers wait for the first attempt instead of opening
        a second connection.
        """
        async with self._init_lock:
            if self._initialized:
                return

            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            try:
                conn = self._conn = await aiosqlite.connect(str(self.db_path))
                conn.row_factory = aiosqlite.Row
                await self._create_schema(conn)
                await conn.commit()
            except (sqlite3.Error, OSError) as e:
                if self._conn is not None:
                    await self._conn.close()
                    self._conn = None
                raise StorageUnavailableError("initialize", str(self.db_path), e) from e

            self._initialized = True
            logger.info(f"Offline database initialized: {self.db_path}")

    async def close(self) -> None:
        """Close the connection. Safe to call twice."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
        self._initialized = False

    async def __aenter__(self) -> OfflineDatabase:
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================================================================
    # Query helpers
    # =========================================================================

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run writes atomically; sqlite errors become StorageUnavailableError."""
        conn = self.conn
        async with self._write_lock:
            try:
                yield conn
                await conn.commit()
            except sqlite3.Error as e:
                await conn.rollback()
                raise StorageUnavailableError(operation, str(self.db_path), e) from e
            except BaseException:
                await conn.rollback()
                raise

    async def fetchall(
        self, operation: str, sql: str, params: Iterable[Any] = ()
    ) -> list[aiosqlite.Row]:
        conn = self.conn
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise StorageUnavailableError(operation, str(self.db_path), e) from e

    async def fetchone(
        self, operation: str, sql: str, params: Iterable[Any] = ()
    ) -> aiosqlite.Row | None:
        conn = self.conn
        try:
            async with conn.execute(sql, tuple(params)) as cursor:
                return await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageUnavailableError(operation, str(self.db_path), e) from e

    # =========================================================================
    # Schema Management
    # =========================================================================

    async def _create_schema(self, conn: aiosqlite.Connection) -> None:
        await conn.execute(SCHEMA_META_TABLE_SQL)

        version = await self.get_schema_version()
        if 0 < version < SCHEMA_VERSION:
            added = [s.name for s in COLLECTIONS.values() if s.since_version > version]
            logger.info(
                f"Upgrading offline schema from v{version} to v{SCHEMA_VERSION}",
                extra={"added_collections": added},
            )

        for spec in COLLECTIONS.values():
            await conn.execute(spec.table_sql())
            for sql in spec.index_sql():
                await conn.execute(sql)

        await conn.execute(QUEUE_TABLE_SQL)
        await self._add_missing_columns(conn, QUEUE_TABLE, QUEUE_V2_COLUMNS)
        for sql in QUEUE_INDEX_SQL:
            await conn.execute(sql)

        await conn.execute(METADATA_TABLE_SQL)

        if version != SCHEMA_VERSION:
            await self._set_schema_version(conn, SCHEMA_VERSION)

    async def _add_missing_columns(
        self, conn: aiosqlite.Connection, table: str, columns: dict[str, str]
    ) -> None:
        """Add columns that older databases lack; existing rows get defaults."""
        async with conn.execute(f'PRAGMA table_info("{table}")') as cursor:
            existing = {row[1] for row in await cursor.fetchall()}

        for name, ddl in columns.items():
            if name not in existing:
                await conn.execute(f'ALTER TABLE "{table}" ADD COLUMN {name} {ddl}')
                logger.debug(f"Added column {table}.{name}")

    async def get_schema_version(self) -> int:
        """Current schema version; 0 for an empty file, 1 for pre-versioned ones."""
        conn = self._conn
        if conn is None:
            raise StorageUnavailableError("schema version", str(self.db_path))

        async with conn.execute(
            f"SELECT value FROM \"{SCHEMA_META_TABLE}\" WHERE key = 'version'"
        ) as cursor:
            row = await cursor.fetchone()
        if row:
            return int(row[0])

        async with conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (QUEUE_TABLE,),
        ) as cursor:
            legacy = await cursor.fetchone()
        return 1 if legacy else 0

    async def _set_schema_version(self, conn: aiosqlite.Connection, version: int) -> None:
        await conn.execute(
            f"""
            INSERT INTO "{SCHEMA_META_TABLE}" (key, value) VALUES ('version', ?)
            ON CONFLICT (key) DO UPDATE SET value = excluded.value
            """,
            (str(version),),
        )


# =============================================================================
# Process-wide handle
# =============================================================================

_default_db: OfflineDatabase | None = None
_default_lock = asyncio.Lock()


async def init_offline_db(config: OfflineConfig | None = None) -> OfflineDatabase:
    """Open the process-wide database once; later calls return the same handle."""
    global _default_db

    async with _default_lock:
        if _default_db is not None and _default_db.is_ready:
            return _default_db

        config = config or OfflineConfig.from_env()
        db = OfflineDatabase(config.db_path)
        await db.initialize()
        _default_db = db
        return db


def is_ready() -> bool:
    return _default_db is not None and _default_db.is_ready


def get_offline_db() -> OfflineDatabase:
    if _default_db is None or not _default_db.is_ready:
        raise StorageUnavailableError("access")
    return _default_db


async def shutdown_offline_db() -> None:
    global _default_db

    async with _default_lock:
        if _default_db is not None:
            await _default_db.close()
            _default_db = None
