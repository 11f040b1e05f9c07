"""
Local persistence: the SQLite database handle, the record store, the
sync queue and the metadata store.
"""

from .database import (
    OfflineDatabase,
    get_offline_db,
    init_offline_db,
    is_ready,
    shutdown_offline_db,
)
from .metadata import MetadataStore, last_sync_key
from .queue import QueueEntry, SyncOp, SyncQueue
from .schema import COLLECTIONS, SCHEMA_VERSION, CollectionSpec, get_collection
from .store import LocalRecordStore, Record

__all__ = [
    "OfflineDatabase",
    "init_offline_db",
    "is_ready",
    "get_offline_db",
    "shutdown_offline_db",
    "LocalRecordStore",
    "Record",
    "SyncQueue",
    "SyncOp",
    "QueueEntry",
    "MetadataStore",
    "last_sync_key",
    "COLLECTIONS",
    "SCHEMA_VERSION",
    "CollectionSpec",
    "get_collection",
]
