"""
Sync queue.

Append-only log of mutations waiting to be applied to the remote
service. Every local write is enqueued, and ``enqueue`` commits before
it returns, so the queue is what makes offline writes durable. Entries
leave the queue once the sync engine confirms them or drops them as
permanently failed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import aiosqlite

from ..exceptions import ValidationError
from ..id_utils import from_iso, to_iso, utc_now
from .database import OfflineDatabase
from .schema import QUEUE_TABLE, get_collection

logger = logging.getLogger(__name__)


class SyncOp(Enum):
    """Type of queued mutation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class QueueEntry:
    """One pending mutation.

    Attributes:
        seq: Store-assigned, strictly increasing sequence id
        op: Mutation type
        collection: Target collection
        record_key: Target record key (temporary for unconfirmed creates)
        payload: Fields to apply remotely
        timestamp: When the mutation was enqueued
        retries: Transient failures seen so far
        last_error: Message of the last failure
    """

    seq: int
    op: SyncOp
    collection: str
    record_key: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    retries: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "op": self.op.value,
            "collection": self.collection,
            "record_key": self.record_key,
            "payload": self.payload,
            "timestamp": to_iso(self.timestamp),
            "retries": self.retries,
            "last_error": self.last_error,
        }

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> QueueEntry:
        return cls(
            seq=row["seq"],
            op=SyncOp(row["op"]),
            collection=row["collection"],
            record_key=row["record_key"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            timestamp=from_iso(row["timestamp"]),
            retries=row["retries"],
            last_error=row["last_error"],
        )


_SELECT = f'SELECT * FROM "{QUEUE_TABLE}"'


class SyncQueue:
    """Durable FIFO of pending mutations."""

    def __init__(self, db: OfflineDatabase):
        self.db = db

    async def enqueue(
        self,
        op: SyncOp | str,
        collection: str,
        record_key: Any = None,
        payload: dict[str, Any] | None = None,
    ) -> QueueEntry:
        """Append a mutation and return it with its assigned sequence id."""
        op = SyncOp(op)
        get_collection(collection)
        if op is not SyncOp.CREATE and record_key is None:
            raise ValidationError("record_key", f"{op.value} needs a record key")

        key = None if record_key is None else str(record_key)
        timestamp = utc_now()
        payload = dict(payload or {})

        async with self.db.transaction("enqueue") as conn:
            cursor = await conn.execute(
                f"""
                INSERT INTO "{QUEUE_TABLE}" (op, collection, record_key, payload, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                (op.value, collection, key, json.dumps(payload), to_iso(timestamp)),
            )
            seq = cursor.lastrowid
            await cursor.close()

        entry = QueueEntry(
            seq=int(seq),
            op=op,
            collection=collection,
            record_key=key,
            payload=payload,
            timestamp=timestamp,
        )
        logger.debug(f"Enqueued {op.value} {collection}/{key} as #{entry.seq}")
        return entry

    async def pending(self) -> list[QueueEntry]:
        """All unconfirmed entries, oldest first."""
        rows = await self.db.fetchall("read queue", f"{_SELECT} ORDER BY seq")
        return [QueueEntry.from_row(row) for row in rows]

    dequeue_pending = pending

    async def get(self, seq: int) -> QueueEntry | None:
        row = await self.db.fetchone("read queue entry", f"{_SELECT} WHERE seq = ?", (seq,))
        return QueueEntry.from_row(row) if row else None

    async def remove(self, seq: int) -> bool:
        """Delete a confirmed entry. Returns False if it was already gone."""
        async with self.db.transaction("dequeue") as conn:
            cursor = await conn.execute(f'DELETE FROM "{QUEUE_TABLE}" WHERE seq = ?', (seq,))
            removed = cursor.rowcount > 0
            await cursor.close()
        return removed

    async def mark_failed(self, seq: int, error: str) -> bool:
        """Count a transient failure against an entry."""
        async with self.db.transaction("mark failed") as conn:
            cursor = await conn.execute(
                f'UPDATE "{QUEUE_TABLE}" SET retries = retries + 1, last_error = ? WHERE seq = ?',
                (error, seq),
            )
            updated = cursor.rowcount > 0
            await cursor.close()
        return updated

    async def rekey(self, collection: str, old_key: Any, new_key: Any) -> int:
        """Point pending entries at a record's server-assigned key."""
        async with self.db.transaction("rekey queue") as conn:
            cursor = await conn.execute(
                f"""
                UPDATE "{QUEUE_TABLE}" SET record_key = ?
                WHERE collection = ? AND record_key = ?
                """,
                (str(new_key), collection, str(old_key)),
            )
            count = cursor.rowcount
            await cursor.close()
        return count

    async def peek_by_type(self, op: SyncOp | str) -> list[QueueEntry]:
        rows = await self.db.fetchall(
            "read queue by type",
            f"{_SELECT} WHERE op = ? ORDER BY seq",
            (SyncOp(op).value,),
        )
        return [QueueEntry.from_row(row) for row in rows]

    async def by_collection(self, collection: str) -> list[QueueEntry]:
        rows = await self.db.fetchall(
            "read queue by collection",
            f"{_SELECT} WHERE collection = ? ORDER BY seq",
            (collection,),
        )
        return [QueueEntry.from_row(row) for row in rows]

    async def for_record(self, collection: str, record_key: Any) -> list[QueueEntry]:
        rows = await self.db.fetchall(
            "read queue by record",
            f"{_SELECT} WHERE collection = ? AND record_key = ? ORDER BY seq",
            (collection, str(record_key)),
        )
        return [QueueEntry.from_row(row) for row in rows]

    async def since(self, timestamp: datetime) -> list[QueueEntry]:
        """Entries enqueued at or after ``timestamp``."""
        rows = await self.db.fetchall(
            "read queue by timestamp",
            f"{_SELECT} WHERE timestamp >= ? ORDER BY seq",
            (to_iso(timestamp),),
        )
        return [QueueEntry.from_row(row) for row in rows]

    async def count(self, collection: str | None = None) -> int:
        if collection is None:
            row = await self.db.fetchone("count queue", f'SELECT COUNT(*) AS n FROM "{QUEUE_TABLE}"')
        else:
            row = await self.db.fetchone(
                "count queue",
                f'SELECT COUNT(*) AS n FROM "{QUEUE_TABLE}" WHERE collection = ?',
                (collection,),
            )
        return int(row["n"]) if row else 0

    async def clear(self) -> int:
        async with self.db.transaction("clear queue") as conn:
            cursor = await conn.execute(f'DELETE FROM "{QUEUE_TABLE}"')
            count = cursor.rowcount
            await cursor.close()
        return count
