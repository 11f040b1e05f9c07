"""
Ecogram Offline

Offline-first cache and sync engine for the Ecogram BJJ training app.

Provides:
- A local SQLite record store for games, sessions and class preps
- A durable sync queue of mutations made while offline
- A sync engine that replays the queue against the REST API
- Backup and restore of the local cache

Usage:

    >>> from ecogram_offline import HttpDataService, OfflineConfig, OfflineRepository
    >>> config = OfflineConfig.from_env()
    >>> remote = HttpDataService(config.api_base_url, timeout=config.request_timeout)
    >>> repo = await OfflineRepository.open(remote, config)
    >>> game = await repo.create("games", {"name": "Leg Drag Entry", "topic": "offense"})
    >>> result = await repo.sync_now()
"""

from .backup import export_backup, import_backup
from .config import OfflineConfig, SyncConfig
from .exceptions import (
    ConflictError,
    OfflineStorageError,
    PermanentSyncError,
    RemoteServiceError,
    StorageUnavailableError,
    SyncError,
    TransientSyncError,
    ValidationError,
)
from .local import (
    LocalRecordStore,
    MetadataStore,
    OfflineDatabase,
    QueueEntry,
    SyncOp,
    SyncQueue,
    init_offline_db,
    is_ready,
    shutdown_offline_db,
)
from .remote import DataService, HttpDataService
from .repository import OfflineRepository
from .sync import (
    ConnectivityMonitor,
    SyncEngine,
    SyncIssue,
    SyncResult,
    SyncState,
    SyncStatus,
)

__all__ = [
    # Configuration
    "OfflineConfig",
    "SyncConfig",
    # Local storage
    "OfflineDatabase",
    "init_offline_db",
    "is_ready",
    "shutdown_offline_db",
    "LocalRecordStore",
    "MetadataStore",
    "SyncQueue",
    "SyncOp",
    "QueueEntry",
    # Remote
    "DataService",
    "HttpDataService",
    # Sync
    "SyncEngine",
    "SyncState",
    "SyncResult",
    "SyncStatus",
    "SyncIssue",
    "ConnectivityMonitor",
    # Facade
    "OfflineRepository",
    "export_backup",
    "import_backup",
    # Exceptions
    "OfflineStorageError",
    "StorageUnavailableError",
    "ValidationError",
    "RemoteServiceError",
    "SyncError",
    "TransientSyncError",
    "PermanentSyncError",
    "ConflictError",
]

__version__ = "0.1.0"
