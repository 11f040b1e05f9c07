"""
Local record store.

Keeps cached copies of remote entities (games, sessions, class preps)
as JSON documents, one table per collection. Lists come back in
insertion order; overwriting a record keeps its original position.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Any

from ..exceptions import ValidationError
from ..id_utils import to_iso, utc_now
from .database import OfflineDatabase
from .schema import CollectionSpec, get_collection

logger = logging.getLogger(__name__)

Record = dict[str, Any]

_UPSERT_SQL = """
    INSERT INTO "{table}" (key, data, updated_at) VALUES (?, ?, ?)
    ON CONFLICT (key) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
"""


def _index_param(value: Any) -> Any:
    # json_extract yields 1/0 for JSON booleans
    if isinstance(value, bool):
        return int(value)
    return value


class LocalRecordStore:
    """Key-addressed persistent storage for cached entity records."""

    def __init__(self, db: OfflineDatabase):
        self.db = db

    def _record_key(self, spec: CollectionSpec, record: Record) -> str:
        key = record.get(spec.key_path)
        if key is None or key == "":
            raise ValidationError(spec.key_path, f"record for {spec.name} has no key")
        return str(key)

    async def put(self, collection: str, record: Record) -> Record:
        """Insert or overwrite a record keyed by its unique id."""
        spec = get_collection(collection)
        key = self._record_key(spec, record)

        async with self.db.transaction(f"put {collection}") as conn:
            await conn.execute(
                _UPSERT_SQL.format(table=spec.name),
                (key, json.dumps(record), to_iso(utc_now())),
            )
        return record

    async def bulk_put(self, collection: str, records: Iterable[Record]) -> int:
        """Write many records in one transaction."""
        spec = get_collection(collection)
        now = to_iso(utc_now())
        rows = [(self._record_key(spec, r), json.dumps(r), now) for r in records]
        if not rows:
            return 0

        async with self.db.transaction(f"bulk put {collection}") as conn:
            await conn.executemany(_UPSERT_SQL.format(table=spec.name), rows)

        logger.debug(f"Cached {len(rows)} {collection} records")
        return len(rows)

    async def get(self, collection: str, key: Any) -> Record | None:
        """Return the record, or None when it is not cached."""
        spec = get_collection(collection)
        row = await self.db.fetchone(
            f"get {collection}",
            f'SELECT data FROM "{spec.name}" WHERE key = ?',
            (str(key),),
        )
        return json.loads(row["data"]) if row else None

    async def list(
        self,
        collection: str,
        index_name: str | None = None,
        index_value: Any = None,
    ) -> list[Record]:
        """List records, optionally filtered on a secondary index."""
        spec = get_collection(collection)

        if index_name is None:
            rows = await self.db.fetchall(
                f"list {collection}",
                f'SELECT data FROM "{spec.name}" ORDER BY rowid',
            )
        else:
            if index_name not in spec.indexes:
                raise ValidationError(
                    "index_name", f"{collection} has no index {index_name!r}", index_name
                )
            expr = f"json_extract(data, '$.{index_name}')"
            if index_value is None:
                where, params = f"{expr} IS NULL", ()
            else:
                where, params = f"{expr} = ?", (_index_param(index_value),)
            rows = await self.db.fetchall(
                f"list {collection} by {index_name}",
                f'SELECT data FROM "{spec.name}" WHERE {where} ORDER BY rowid',
                params,
            )

        return [json.loads(row["data"]) for row in rows]

    async def delete(self, collection: str, key: Any) -> bool:
        """Remove a record. Returns False if it was already absent."""
        spec = get_collection(collection)
        async with self.db.transaction(f"delete {collection}") as conn:
            cursor = await conn.execute(f'DELETE FROM "{spec.name}" WHERE key = ?', (str(key),))
            removed = cursor.rowcount > 0
            await cursor.close()
        return removed

    async def replace_key(
        self, collection: str, old_key: Any, record: Record, upsert: bool = True
    ) -> Record | None:
        """Swap a temporary key for the record the server returned.

        The new record takes the old one's position in the listing. When
        ``old_key`` is gone the record is inserted, unless ``upsert`` is
        False, in which case nothing is written and None is returned.
        """
        spec = get_collection(collection)
        new_key = self._record_key(spec, record)

        async with self.db.transaction(f"replace key {collection}") as conn:
            cursor = await conn.execute(
                f'SELECT 1 FROM "{spec.name}" WHERE key = ?', (str(old_key),)
            )
            exists = await cursor.fetchone() is not None
            await cursor.close()
            if not exists and not upsert:
                return None

            if new_key != str(old_key):
                await conn.execute(f'DELETE FROM "{spec.name}" WHERE key = ?', (new_key,))
            if exists:
                await conn.execute(
                    f'UPDATE "{spec.name}" SET key = ?, data = ?, updated_at = ? WHERE key = ?',
                    (new_key, json.dumps(record), to_iso(utc_now()), str(old_key)),
                )
            else:
                await conn.execute(
                    _UPSERT_SQL.format(table=spec.name),
                    (new_key, json.dumps(record), to_iso(utc_now())),
                )
        return record

    async def clear(self, collection: str) -> int:
        spec = get_collection(collection)
        async with self.db.transaction(f"clear {collection}") as conn:
            cursor = await conn.execute(f'DELETE FROM "{spec.name}"')
            count = cursor.rowcount
            await cursor.close()
        return count

    async def count(self, collection: str) -> int:
        spec = get_collection(collection)
        row = await self.db.fetchone(
            f"count {collection}", f'SELECT COUNT(*) AS n FROM "{spec.name}"'
        )
        return int(row["n"]) if row else 0

    async def keys(self, collection: str) -> list[str]:
        spec = get_collection(collection)
        rows = await self.db.fetchall(
            f"keys {collection}", f'SELECT key FROM "{spec.name}" ORDER BY rowid'
        )
        return [row["key"] for row in rows]
