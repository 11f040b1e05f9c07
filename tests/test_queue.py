"""Tests for the sync queue and the metadata store."""

from __future__ import annotations

from datetime import timedelta

import pytest

from ecogram_offline.exceptions import ValidationError
from ecogram_offline.id_utils import utc_now
from ecogram_offline.local import MetadataStore, SyncOp, SyncQueue, last_sync_key


class TestSyncQueue:
    async def test_enqueue_assigns_increasing_sequence(self, queue: SyncQueue) -> None:
        first = await queue.enqueue(SyncOp.CREATE, "games", "local-1", {"name": "A"})
        second = await queue.enqueue("update", "games", "g2", {"favorite": True})
        third = await queue.enqueue(SyncOp.DELETE, "sessions", "s1")

        assert first.seq < second.seq < third.seq
        assert second.op is SyncOp.UPDATE
        assert third.payload == {}

    async def test_pending_is_fifo(self, queue: SyncQueue) -> None:
        for i in range(5):
            await queue.enqueue(SyncOp.UPDATE, "games", "g1", {"rating": i})

        pending = await queue.pending()

        assert [e.payload["rating"] for e in pending] == [0, 1, 2, 3, 4]
        assert await queue.dequeue_pending() == pending

    async def test_sequence_not_reused_after_remove(self, queue: SyncQueue) -> None:
        first = await queue.enqueue(SyncOp.UPDATE, "games", "g1", {})
        await queue.remove(first.seq)
        second = await queue.enqueue(SyncOp.UPDATE, "games", "g1", {})

        assert second.seq > first.seq

    async def test_remove_is_idempotent(self, queue: SyncQueue) -> None:
        entry = await queue.enqueue(SyncOp.DELETE, "games", "g1")

        assert await queue.remove(entry.seq) is True
        assert await queue.remove(entry.seq) is False
        assert await queue.count() == 0

    async def test_create_may_omit_key(self, queue: SyncQueue) -> None:
        entry = await queue.enqueue(SyncOp.CREATE, "games", None, {"name": "Shrimp drill"})
        assert entry.record_key is None

    async def test_update_requires_key(self, queue: SyncQueue) -> None:
        with pytest.raises(ValidationError):
            await queue.enqueue(SyncOp.UPDATE, "games", None, {"name": "x"})

    async def test_unknown_collection_rejected(self, queue: SyncQueue) -> None:
        with pytest.raises(ValidationError):
            await queue.enqueue(SyncOp.CREATE, "belts", None, {})

    async def test_peek_by_type_and_collection(self, queue: SyncQueue) -> None:
        await queue.enqueue(SyncOp.CREATE, "games", "local-1", {})
        await queue.enqueue(SyncOp.UPDATE, "sessions", "s1", {})
        await queue.enqueue(SyncOp.UPDATE, "games", "g1", {})

        updates = await queue.peek_by_type(SyncOp.UPDATE)
        games = await queue.by_collection("games")

        assert [e.record_key for e in updates] == ["s1", "g1"]
        assert [e.op for e in games] == [SyncOp.CREATE, SyncOp.UPDATE]
        assert await queue.count("sessions") == 1

    async def test_since_filters_by_timestamp(self, queue: SyncQueue) -> None:
        entry = await queue.enqueue(SyncOp.UPDATE, "games", "g1", {})

        assert await queue.since(entry.timestamp - timedelta(seconds=1)) == [entry]
        assert await queue.since(utc_now() + timedelta(minutes=1)) == []

    async def test_mark_failed_counts_retries(self, queue: SyncQueue) -> None:
        entry = await queue.enqueue(SyncOp.UPDATE, "games", "g1", {})

        await queue.mark_failed(entry.seq, "timeout")
        await queue.mark_failed(entry.seq, "unreachable")

        stored = await queue.get(entry.seq)
        assert stored is not None
        assert stored.retries == 2
        assert stored.last_error == "unreachable"

    async def test_rekey_points_entries_at_server_key(self, queue: SyncQueue) -> None:
        await queue.enqueue(SyncOp.CREATE, "games", "local-1", {})
        await queue.enqueue(SyncOp.UPDATE, "games", "local-1", {"favorite": True})
        await queue.enqueue(SyncOp.UPDATE, "sessions", "local-1", {})

        assert await queue.rekey("games", "local-1", "srv-7") == 2

        assert [e.record_key for e in await queue.by_collection("games")] == ["srv-7", "srv-7"]
        assert (await queue.by_collection("sessions"))[0].record_key == "local-1"

    async def test_entry_to_dict(self, queue: SyncQueue) -> None:
        entry = await queue.enqueue(SyncOp.CREATE, "games", "local-1", {"name": "A"})

        data = entry.to_dict()

        assert data["op"] == "create"
        assert data["seq"] == entry.seq
        assert data["payload"] == {"name": "A"}

    async def test_clear(self, queue: SyncQueue) -> None:
        await queue.enqueue(SyncOp.DELETE, "games", "g1")
        await queue.enqueue(SyncOp.DELETE, "games", "g2")

        assert await queue.clear() == 2
        assert await queue.pending() == []


class TestMetadataStore:
    async def test_set_and_get(self, metadata: MetadataStore) -> None:
        await metadata.set("theme", {"dark": True})

        assert await metadata.get("theme") == {"dark": True}
        assert await metadata.get("missing", "fallback") == "fallback"

    async def test_last_sync_round_trip(self, metadata: MetadataStore) -> None:
        now = utc_now()

        await metadata.set_last_sync(now, "games")

        assert await metadata.get_last_sync("games") == now
        assert await metadata.get_last_sync() is None
        assert last_sync_key("games") in await metadata.items()

    async def test_delete(self, metadata: MetadataStore) -> None:
        await metadata.set("k", 1)
        await metadata.delete("k")

        assert await metadata.get("k") is None
