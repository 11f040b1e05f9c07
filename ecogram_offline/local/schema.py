"""
Persisted local schema.

Record collections are stored as JSON documents in one table each, with
expression indexes over the JSON fields that the app filters on.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..exceptions import ValidationError

SCHEMA_VERSION = 2

QUEUE_TABLE = "syncQueue"
METADATA_TABLE = "metadata"
SCHEMA_META_TABLE = "schema_meta"


@dataclass(frozen=True)
class CollectionSpec:
    """A record collection: its primary key field and secondary indexes."""

    name: str
    key_path: str = "_id"
    indexes: tuple[str, ...] = ()
    since_version: int = 1

    def index_sql(self) -> list[str]:
        return [
            f'CREATE INDEX IF NOT EXISTS "idx_{self.name}_{index}" '
            f"ON \"{self.name}\" (json_extract(data, '$.{index}'))"
            for index in self.indexes
        ]

    def table_sql(self) -> str:
        # rowid keeps insertion order; upserts keep the original rowid
        return f"""
            CREATE TABLE IF NOT EXISTS "{self.name}" (
                key TEXT NOT NULL PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """


GAMES = CollectionSpec("games", "_id", ("name", "topic", "position", "favorite"))
SESSIONS = CollectionSpec("sessions", "_id", ("name", "favorite"))
CLASS_PREPS = CollectionSpec("classPreps", "id", ("date",), since_version=2)

COLLECTIONS: dict[str, CollectionSpec] = {
    spec.name: spec for spec in (GAMES, SESSIONS, CLASS_PREPS)
}

QUEUE_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS "{QUEUE_TABLE}" (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        op TEXT NOT NULL,
        collection TEXT NOT NULL,
        record_key TEXT,
        payload TEXT,
        timestamp TEXT NOT NULL,
        retries INTEGER NOT NULL DEFAULT 0,
        last_error TEXT
    )
"""

# Columns added to the queue table after version 1
QUEUE_V2_COLUMNS = {
    "retries": "INTEGER NOT NULL DEFAULT 0",
    "last_error": "TEXT",
}

QUEUE_INDEX_SQL = [
    f'CREATE INDEX IF NOT EXISTS idx_queue_op ON "{QUEUE_TABLE}" (op)',
    f'CREATE INDEX IF NOT EXISTS idx_queue_timestamp ON "{QUEUE_TABLE}" (timestamp)',
    f'CREATE INDEX IF NOT EXISTS idx_queue_collection ON "{QUEUE_TABLE}" (collection, record_key)',
]

METADATA_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS "{METADATA_TABLE}" (
        key TEXT NOT NULL PRIMARY KEY,
        value TEXT,
        updated_at TEXT NOT NULL
    )
"""

SCHEMA_META_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS "{SCHEMA_META_TABLE}" (
        key TEXT PRIMARY KEY,
        value TEXT
    )
"""


def get_collection(name: str) -> CollectionSpec:
    """Look up a record collection, rejecting unknown names."""
    try:
        return COLLECTIONS[name]
    except KeyError:
        raise ValidationError(
            "collection", f"unknown collection (expected one of {sorted(COLLECTIONS)})", name
        ) from None
