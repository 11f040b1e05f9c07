"""
Metadata store for sync bookkeeping (``lastSync:<collection>`` and friends).
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from ..id_utils import from_iso, to_iso, utc_now
from .database import OfflineDatabase
from .schema import METADATA_TABLE

LAST_SYNC_KEY = "lastSync"


def last_sync_key(collection: str | None = None) -> str:
    return f"{LAST_SYNC_KEY}:{collection}" if collection else LAST_SYNC_KEY


class MetadataStore:
    """Small key/value store; values are JSON encoded."""

    def __init__(self, db: OfflineDatabase):
        self.db = db

    async def set(self, key: str, value: Any) -> None:
        async with self.db.transaction("set metadata") as conn:
            await conn.execute(
                f"""
                INSERT INTO "{METADATA_TABLE}" (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), to_iso(utc_now())),
            )

    async def get(self, key: str, default: Any = None) -> Any:
        row = await self.db.fetchone(
            "get metadata", f'SELECT value FROM "{METADATA_TABLE}" WHERE key = ?', (key,)
        )
        if row is None or row["value"] is None:
            return default
        return json.loads(row["value"])

    async def delete(self, key: str) -> None:
        async with self.db.transaction("delete metadata") as conn:
            await conn.execute(f'DELETE FROM "{METADATA_TABLE}" WHERE key = ?', (key,))

    async def items(self) -> dict[str, Any]:
        rows = await self.db.fetchall(
            "list metadata", f'SELECT key, value FROM "{METADATA_TABLE}" ORDER BY key'
        )
        return {row["key"]: json.loads(row["value"]) for row in rows if row["value"] is not None}

    async def get_last_sync(self, collection: str | None = None) -> datetime | None:
        value = await self.get(last_sync_key(collection))
        return from_iso(value) if value else None

    async def set_last_sync(self, when: datetime, collection: str | None = None) -> None:
        await self.set(last_sync_key(collection), to_iso(when))
