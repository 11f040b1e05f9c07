"""
Custom exceptions for the offline cache and sync engine.

Storage and queue operations raise these so callers can tell a broken
local database apart from a remote failure or a bad argument.
"""


class OfflineStorageError(Exception):
    """Base exception for all offline storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageUnavailableError(OfflineStorageError):
    """Raised when the local database cannot be opened or operated.

    Fatal for offline features: callers should fall back to online-only mode.
    """

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Local storage unavailable during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class ValidationError(OfflineStorageError):
    """Raised when a record, collection or index argument is invalid."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value


class RemoteServiceError(OfflineStorageError):
    """Raised by a data service when a remote operation fails.

    ``code`` is machine readable: ``not_found``, ``rejected``,
    ``unavailable`` or ``timeout``.
    """

    NOT_FOUND = "not_found"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"

    TRANSIENT_CODES = frozenset({UNAVAILABLE, TIMEOUT})

    def __init__(
        self,
        code: str,
        message: str,
        status: int | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {"code": code}
        if status is not None:
            details["status"] = status
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.code = code
        self.status = status
        self.cause = cause

    @property
    def transient(self) -> bool:
        return self.code in self.TRANSIENT_CODES

    @property
    def not_found(self) -> bool:
        return self.code == self.NOT_FOUND


class SyncError(OfflineStorageError):
    """Raised when a queued mutation cannot be applied remotely."""

    def __init__(
        self,
        message: str,
        seq: int | None = None,
        collection: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {}
        if seq is not None:
            details["seq"] = seq
        if collection:
            details["collection"] = collection
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.seq = seq
        self.collection = collection
        self.cause = cause


class TransientSyncError(SyncError):
    """Network or timeout failure; retrying later may succeed."""


class PermanentSyncError(SyncError):
    """The remote service rejected the mutation; retrying cannot help."""


class ConflictError(OfflineStorageError):
    """Raised when remote state diverged from a queued local mutation."""

    def __init__(
        self,
        collection: str,
        record_key: str,
        conflict_type: str,
        resolution: str | None = None,
    ):
        details = {
            "collection": collection,
            "record_key": record_key,
            "conflict_type": conflict_type,
        }
        if resolution:
            details["resolution"] = resolution
        super().__init__(
            f"Sync conflict on {collection}/{record_key}: {conflict_type}",
            details,
        )
        self.collection = collection
        self.record_key = record_key
        self.conflict_type = conflict_type
        self.resolution = resolution
