"""
Offline-first repository.

The entry point the app talks to. Reads come from the local record
store; writes are applied to it optimistically and appended to the
sync queue in the same call, then the sync engine is nudged if the
client is online.

When the local database cannot be opened the repository falls back to
online-only mode and forwards every call to the remote service.
"""

from __future__ import annotations

import logging
from typing import Any

from .config import OfflineConfig
from .exceptions import StorageUnavailableError, ValidationError
from .id_utils import is_temp_key, temp_key, to_iso, utc_now
from .local.database import OfflineDatabase
from .local.metadata import MetadataStore
from .local.queue import SyncOp, SyncQueue
from .local.schema import get_collection
from .local.store import LocalRecordStore, Record
from .remote.base import DataService
from .sync.connectivity import ConnectivityMonitor, TriggerReason
from .sync.engine import PENDING_FIELD, SyncEngine, SyncResult, SyncState, SyncStatus

logger = logging.getLogger(__name__)


class OfflineRepository:
    """Optimistic local writes backed by a durable sync queue."""

    def __init__(
        self,
        db: OfflineDatabase | None,
        remote: DataService,
        config: OfflineConfig | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ):
        self.config = config or OfflineConfig()
        self.remote = remote
        self.connectivity = connectivity or ConnectivityMonitor()
        self.db = db

        self.store: LocalRecordStore | None = None
        self.queue: SyncQueue | None = None
        self.metadata: MetadataStore | None = None
        self.engine: SyncEngine | None = None

        if db is not None:
            self.store = LocalRecordStore(db)
            self.queue = SyncQueue(db)
            self.metadata = MetadataStore(db)
            self.engine = SyncEngine(
                self.store,
                self.queue,
                self.metadata,
                remote,
                config=self.config.sync,
                connectivity=self.connectivity,
            )

    @classmethod
    async def open(
        cls,
        remote: DataService,
        config: OfflineConfig | None = None,
        connectivity: ConnectivityMonitor | None = None,
    ) -> OfflineRepository:
        """Open the local database, degrading to online-only if it fails."""
        config = config or OfflineConfig.from_env()
        db: OfflineDatabase | None = OfflineDatabase(config.db_path)
        try:
            await db.initialize()
        except StorageUnavailableError as e:
            logger.warning(f"Offline storage unavailable, running online-only: {e.message}")
            db = None
        return cls(db, remote, config=config, connectivity=connectivity)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.stop_auto_sync()
            await self.engine.wait_idle()
        await self.connectivity.wait_idle()
        if self.db is not None:
            await self.db.close()
        await self.remote.close()

    @property
    def offline_available(self) -> bool:
        return self.db is not None and self.db.is_ready

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, collection: str, key: Any) -> Record | None:
        if self.store is None:
            return await self.remote.get(collection, str(key))
        return await self.store.get(collection, key)

    async def list(
        self,
        collection: str,
        index_name: str | None = None,
        index_value: Any = None,
    ) -> list[Record]:
        if self.store is None:
            records = await self.remote.list(collection)
            if index_name is not None:
                records = [r for r in records if r.get(index_name) == index_value]
            return records
        return await self.store.list(collection, index_name, index_value)

    async def search_games(
        self,
        topic: str | None = None,
        position: str | None = None,
        favorite: bool | None = None,
        search: str | None = None,
    ) -> list[Record]:
        """Filter cached games the way the games page does, sorted by name."""
        if topic:
            games = await self.list("games", "topic", topic)
        else:
            games = await self.list("games")

        if position:
            games = [g for g in games if g.get("position") == position]
        if favorite:
            games = [g for g in games if g.get("favorite")]
        if search:
            needle = search.lower()
            fields = ("name", "topPlayer", "bottomPlayer", "coaching")
            games = [
                g for g in games
                if any(needle in str(g.get(f) or "").lower() for f in fields)
            ]

        return sorted(games, key=lambda g: str(g.get("name") or "").lower())

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, collection: str, data: Record) -> Record:
        """Save a new record locally under a temporary key and queue it."""
        spec = get_collection(collection)
        if self.store is None or self.queue is None:
            return await self.remote.create(collection, data)

        key = data.get(spec.key_path) or temp_key()
        record = {**data, spec.key_path: key, PENDING_FIELD: True}

        await self.store.put(collection, record)
        await self.queue.enqueue(SyncOp.CREATE, collection, key, _payload(record))
        await self._after_change()
        return record

    async def update(self, collection: str, key: Any, changes: Record) -> Record | None:
        """Apply changes optimistically and queue them.

        Returns the updated local record, or None if it was not cached.
        """
        spec = get_collection(collection)
        if self.store is None or self.queue is None:
            return await self.remote.update(collection, str(key), changes)

        changes = {k: v for k, v in changes.items() if k != spec.key_path}
        if not changes:
            raise ValidationError("changes", "nothing to update")

        key = self._resolve_key(collection, key)
        local = await self.store.get(collection, key)
        record = None
        if local is not None:
            record = {**local, **changes, PENDING_FIELD: True}
            await self.store.put(collection, record)

        await self.queue.enqueue(SyncOp.UPDATE, collection, key, _payload(changes))
        await self._after_change()
        return record

    async def delete(self, collection: str, key: Any) -> None:
        """Remove a record locally and queue the remote delete.

        A record that never reached the server just has its queued
        mutations discarded, unless a drain might be sending it right now.
        A temporary key whose create was already confirmed is deleted
        under its server key.
        """
        get_collection(collection)
        if self.store is None or self.queue is None:
            await self.remote.delete(collection, str(key))
            return

        resolved = self._resolve_key(collection, key)
        await self.store.delete(collection, key)
        if resolved != str(key):
            await self.store.delete(collection, resolved)

        draining = self.engine is not None and self.engine.is_draining
        if is_temp_key(resolved) and not draining:
            for entry in await self.queue.for_record(collection, resolved):
                await self.queue.remove(entry.seq)
            return

        await self.queue.enqueue(SyncOp.DELETE, collection, resolved)
        await self._after_change()

    async def toggle_favorite(self, collection: str, key: Any) -> Record | None:
        local = await self.get(collection, key)
        if local is None:
            return None
        return await self.update(collection, key, {"favorite": not local.get("favorite", False)})

    async def mark_used(self, key: Any) -> Record | None:
        """Bump a game's usage counter after it was run in class."""
        game = await self.get("games", key)
        if game is None:
            return None
        return await self.update(
            "games",
            key,
            {"usageCount": int(game.get("usageCount") or 0) + 1, "lastUsed": to_iso(utc_now())},
        )

    def _resolve_key(self, collection: str, key: Any) -> str:
        if self.engine is None:
            return str(key)
        return self.engine.resolve_key(collection, key)

    async def _after_change(self) -> None:
        if self.engine is None or not self.config.sync.sync_on_change:
            return
        if self.engine.is_online and self.engine.state is not SyncState.PAUSED:
            # The monitor owns the drain task, so close() waits for it
            await self.connectivity.request_sync(TriggerReason.LOCAL_CHANGE)

    # =========================================================================
    # Sync
    # =========================================================================

    async def load_initial(self, collections: list[str] | None = None) -> int:
        """Fill the cache from the server (first launch or manual refresh)."""
        if self.engine is None:
            return 0
        total = 0
        for collection in collections or self.engine.collections:
            total += await self.engine.refresh(collection)
        return total

    async def sync_now(self) -> SyncResult | None:
        if self.engine is None:
            return None
        return await self.engine.sync_now()

    async def status(self) -> SyncStatus:
        if self.engine is None:
            return SyncStatus(
                is_online=self.connectivity.is_online,
                state=SyncState.IDLE,
                pending_changes=0,
                last_sync=None,
            )
        return await self.engine.get_status()


def _payload(record: Record) -> Record:
    return {k: v for k, v in record.items() if k != PENDING_FIELD}
