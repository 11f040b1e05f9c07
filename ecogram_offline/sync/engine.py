"""
Sync engine.

Replays the sync queue against the remote data service and reconciles
the answers back into the local record store.

One pass ("drain") walks the queue oldest first:
- success: store the authoritative record, dequeue the entry
- transient failure (network, timeout): stop, keep the rest queued
- permanent failure (rejected, not found): dequeue the entry, report
  it, continue with the next one

The remote copy always wins. Only one drain runs at a time; triggers
arriving during a drain are folded into a single follow-up drain.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import SyncConfig
from ..exceptions import (
    ConflictError,
    OfflineStorageError,
    PermanentSyncError,
    RemoteServiceError,
    SyncError,
    TransientSyncError,
)
from ..id_utils import is_temp_key, utc_now
from ..local.metadata import MetadataStore
from ..local.queue import QueueEntry, SyncOp, SyncQueue
from ..local.schema import COLLECTIONS, get_collection
from ..local.store import LocalRecordStore, Record
from ..logging_utils import SyncLoggerAdapter
from ..remote.base import DataService
from .connectivity import ConnectivityMonitor, TriggerReason

logger = logging.getLogger(__name__)

# Local-only fields never sent to the remote service
PENDING_FIELD = "_pending"


class SyncState(Enum):
    """Sync engine states.

    IDLE -> DRAINING -> (SUCCESS | PARTIAL_FAILURE) -> IDLE. SUCCESS and
    PARTIAL_FAILURE are the outcomes reported on ``SyncResult``; the
    engine itself is back to IDLE once the pass returns.
    """

    IDLE = "idle"
    DRAINING = "draining"
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    PAUSED = "paused"
    OFFLINE = "offline"


class IssueKind(Enum):
    TRANSIENT = "transient"
    RETRIES_EXHAUSTED = "retries_exhausted"
    PERMANENT = "permanent"
    STORAGE = "storage"
    UNEXPECTED = "unexpected"


@dataclass
class SyncIssue:
    """A problem met while draining, kept for the UI instead of raised.

    ``conflict_type`` is set when the entry was dropped because the
    remote record had diverged (for example deleted by another client).
    """

    kind: IssueKind
    message: str
    seq: int | None = None
    op: SyncOp | None = None
    collection: str | None = None
    record_key: str | None = None
    conflict_type: str | None = None
    occurred_at: datetime = field(default_factory=utc_now)

    @property
    def surfaced(self) -> bool:
        """Transient failures stay quiet until their retries run out."""
        return self.kind is not IssueKind.TRANSIENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "seq": self.seq,
            "op": self.op.value if self.op else None,
            "collection": self.collection,
            "record_key": self.record_key,
            "conflict_type": self.conflict_type,
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class SyncResult:
    """Summary of one drain."""

    state: SyncState
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    confirmed: list[int] = field(default_factory=list)
    dropped: list[int] = field(default_factory=list)
    remaining: int = 0
    pulled: int = 0
    errors: list[SyncIssue] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.state is SyncState.SUCCESS

    @property
    def duration_ms(self) -> int:
        if self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


@dataclass
class SyncStatus:
    """What the UI shows about offline state."""

    is_online: bool
    state: SyncState
    pending_changes: int
    last_sync: datetime | None
    errors: list[SyncIssue] = field(default_factory=list)


class SyncEngine:
    """Drains the sync queue against a remote data service.

    Example:
        >>> engine = SyncEngine(store, queue, metadata, remote)
        >>> result = await engine.sync_now()
        >>> result.state, result.confirmed, result.remaining
    """

    def __init__(
        self,
        store: LocalRecordStore,
        queue: SyncQueue,
        metadata: MetadataStore,
        remote: DataService,
        config: SyncConfig | None = None,
        connectivity: ConnectivityMonitor | None = None,
        collections: list[str] | None = None,
    ):
        self.store = store
        self.queue = queue
        self.metadata = metadata
        self.remote = remote
        self.config = config or SyncConfig()
        self.connectivity = connectivity
        self.collections = collections or list(COLLECTIONS)

        self._state = SyncState.IDLE
        self._paused = False
        self._drain_task: asyncio.Task[SyncResult] | None = None
        self._rerun_requested = False
        self._auto_task: asyncio.Task[None] | None = None
        self._consecutive_failures = 0
        self._surfaced: list[SyncIssue] = []
        # temporary key -> server key for creates confirmed by this engine
        self._server_keys: dict[tuple[str, str], str] = {}
        self.last_result: SyncResult | None = None
        self.drain_count = 0

        if connectivity is not None:
            connectivity.on_sync_requested(self._on_sync_requested)

    @property
    def state(self) -> SyncState:
        if self._paused and self._state is SyncState.IDLE:
            return SyncState.PAUSED
        return self._state

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online if self.connectivity else True

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    # =========================================================================
    # Triggers
    # =========================================================================

    def trigger(self, reason: TriggerReason = TriggerReason.REQUESTED) -> asyncio.Task[SyncResult]:
        """Start a drain, or fold this request into the running one.

        The check and the transition to DRAINING happen without yielding
        to the event loop, so two triggers can never start two drains.
        """
        running = self._drain_task
        if running is not None and not running.done():
            self._rerun_requested = True
            logger.debug(f"Drain in progress, coalescing trigger ({reason.value})")
            return running

        logger.debug(f"Starting drain ({reason.value})")
        self._state = SyncState.DRAINING
        task = asyncio.create_task(self._run())
        task.add_done_callback(_log_drain_failure)
        self._drain_task = task
        return task

    async def sync_now(self) -> SyncResult:
        """Trigger a drain and wait for it (and any coalesced follow-up)."""
        return await self.trigger()

    async def wait_idle(self) -> None:
        """Wait for the running drain, if any, including its follow-up."""
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    def resolve_key(self, collection: str, key: Any) -> str:
        """Server key for a record created under a temporary key, once known."""
        return self._server_keys.get((collection, str(key)), str(key))

    def _on_sync_requested(self, reason: TriggerReason) -> Awaitable[SyncResult]:
        return self.trigger(reason)

    async def _run(self) -> SyncResult:
        try:
            while True:
                self._rerun_requested = False
                result = await self._drain_once()
                self.last_result = result
                if not self._rerun_requested:
                    return result
        finally:
            self._state = SyncState.IDLE

    # =========================================================================
    # Draining
    # =========================================================================

    async def _drain_once(self) -> SyncResult:
        result = SyncResult(state=SyncState.DRAINING)

        if self._paused:
            result.state = SyncState.PAUSED
            result.finished_at = utc_now()
            return result

        if not self.is_online:
            result.state = SyncState.OFFLINE
            result.errors.append(SyncIssue(IssueKind.TRANSIENT, "No network connectivity"))
            result.remaining = await self._safe_count()
            result.finished_at = utc_now()
            return result

        self.drain_count += 1
        self._state = SyncState.DRAINING
        log = SyncLoggerAdapter(logger, {"drain": self.drain_count})
        touched: set[str] = set()
        complete = False

        try:
            complete = await self._drain_entries(result, touched)
            if complete and self.config.pull_after_push:
                complete = await self._pull_all(result)
            await self._record_last_sync(result, touched, complete)
            result.remaining = await self.queue.count()
        except OfflineStorageError as e:
            log.error(f"Sync pass aborted by local storage failure: {e}")
            result.errors.append(SyncIssue(IssueKind.STORAGE, str(e)))
            complete = False
        except Exception as e:
            log.exception(f"Sync pass aborted by unexpected error: {e}")
            result.errors.append(SyncIssue(IssueKind.UNEXPECTED, f"{type(e).__name__}: {e}"))
            complete = False

        result.state = SyncState.SUCCESS if complete else SyncState.PARTIAL_FAILURE
        result.finished_at = utc_now()

        if complete:
            self._consecutive_failures = 0
        else:
            self._consecutive_failures += 1

        self._surfaced.extend(issue for issue in result.errors if issue.surfaced)
        log.info(
            "Sync pass finished",
            extra={
                "sync_state": result.state.value,
                "confirmed": len(result.confirmed),
                "dropped": len(result.dropped),
                "remaining": result.remaining,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def _drain_entries(self, result: SyncResult, touched: set[str]) -> bool:
        """Process pending entries in order. Returns False on a transient stop."""
        entries = await self.queue.pending()
        # temporary key -> server key, for entries read before the rekey
        key_map: dict[tuple[str, str], str] = {}
        abandoned: set[tuple[str, str]] = set()

        for entry in entries:
            touched.add(entry.collection)
            if entry.record_key is not None:
                mapped = key_map.get((entry.collection, entry.record_key))
                if mapped is not None:
                    entry.record_key = mapped
                if (entry.collection, entry.record_key) in abandoned:
                    continue

            try:
                response = await self._call_remote(entry)
            except TransientSyncError as e:
                await self._handle_transient(entry, e, result)
                return False
            except PermanentSyncError as e:
                await self._handle_permanent(entry, e, result, abandoned)
                continue

            await self._confirm(entry, response, key_map)
            result.confirmed.append(entry.seq)

        return True

    async def _call_remote(self, entry: QueueEntry) -> Record | None:
        """Run the remote operation for an entry, classifying any failure."""
        spec = get_collection(entry.collection)
        payload = _outbound_payload(entry.payload, spec.key_path)

        if entry.op is SyncOp.CREATE:
            call = self.remote.create(entry.collection, payload)
        elif entry.op is SyncOp.UPDATE:
            call = self.remote.update(entry.collection, str(entry.record_key), payload)
        else:
            call = self.remote.delete(entry.collection, str(entry.record_key))

        try:
            return await asyncio.wait_for(call, timeout=self.config.request_timeout)
        except Exception as e:
            raise classify_error(e, entry) from e

    async def _confirm(
        self,
        entry: QueueEntry,
        response: Record | None,
        key_map: dict[tuple[str, str], str],
    ) -> None:
        """Reconcile the store with a confirmed mutation, then dequeue it."""
        collection = entry.collection
        spec = get_collection(collection)

        if entry.op is SyncOp.DELETE:
            await self.store.delete(collection, entry.record_key)
            await self.queue.remove(entry.seq)
            return

        local_key = entry.record_key
        local = await self.store.get(collection, local_key) if local_key else None

        if response:
            server = dict(response)
        elif local is not None:
            # Empty answer (204): the mutation was applied as sent
            server = {**_local_fields(local), **entry.payload}
        else:
            await self.queue.remove(entry.seq)
            return

        server_key = server.get(spec.key_path)
        if server_key is None or is_temp_key(str(server_key)):
            server_key = local_key
            server[spec.key_path] = local_key
        server_key = str(server_key)
        rekeyed = local_key is not None and local_key != server_key

        if rekeyed:
            key_map[(collection, local_key)] = server_key
            self._server_keys[(collection, local_key)] = server_key
            await self.queue.rekey(collection, local_key, server_key)

        if local is None and entry.op is SyncOp.CREATE and is_temp_key(local_key):
            # Deleted locally before the create reached the server; the
            # queued delete now targets the server key.
            await self.queue.remove(entry.seq)
            return

        later = [e for e in await self.queue.for_record(collection, server_key) if e.seq != entry.seq]
        if later and local is not None:
            # Keep optimistic edits that are still queued on top of server state
            record = {**server, **_local_fields(local), spec.key_path: server[spec.key_path]}
            record[PENDING_FIELD] = True
        else:
            record = server
            record.pop(PENDING_FIELD, None)

        if rekeyed:
            # A record deleted locally while the create was in flight stays deleted
            written = await self.store.replace_key(collection, local_key, record, upsert=False)
            # Mutations queued against the temporary key meanwhile follow the record
            await self.queue.rekey(collection, local_key, server_key)
            if written is None:
                logger.debug(f"{collection}/{local_key} deleted during confirmation")
        else:
            await self.store.put(collection, record)

        await self.queue.remove(entry.seq)
        logger.debug(f"Confirmed #{entry.seq} {entry.op.value} {collection}/{server_key}")

    async def _handle_transient(
        self, entry: QueueEntry, error: TransientSyncError, result: SyncResult
    ) -> None:
        await self.queue.mark_failed(entry.seq, error.message)
        retries = entry.retries + 1
        kind = (
            IssueKind.RETRIES_EXHAUSTED
            if retries >= self.config.max_retries
            else IssueKind.TRANSIENT
        )
        result.errors.append(_issue(kind, error.message, entry))
        logger.warning(
            f"Transient failure on #{entry.seq}, stopping pass",
            extra={"seq": entry.seq, "retries": retries, "collection": entry.collection},
        )

    async def _handle_permanent(
        self,
        entry: QueueEntry,
        error: PermanentSyncError,
        result: SyncResult,
        abandoned: set[tuple[str, str]],
    ) -> None:
        """Drop an entry that can never succeed and converge on server truth."""
        await self.queue.remove(entry.seq)
        result.dropped.append(entry.seq)
        collection, key = entry.collection, entry.record_key
        cause = error.cause

        if isinstance(cause, RemoteServiceError) and cause.not_found and key is not None:
            conflict = ConflictError(
                collection,
                key,
                "delete_update" if entry.op is SyncOp.UPDATE else "already_deleted",
                resolution="remote_wins",
            )
            await self.store.delete(collection, key)
            issue = _issue(IssueKind.PERMANENT, conflict.message, entry)
            issue.conflict_type = conflict.conflict_type
            result.errors.append(issue)
            logger.warning(f"{conflict.message}; dropped local copy")
            return

        result.errors.append(_issue(IssueKind.PERMANENT, error.message, entry))
        logger.warning(f"Permanent failure on #{entry.seq}: {error.message}")

        if entry.op is SyncOp.CREATE and key is not None and is_temp_key(key):
            # The record never existed remotely: forget it and its follow-ups
            abandoned.add((collection, key))
            for follower in await self.queue.for_record(collection, key):
                await self.queue.remove(follower.seq)
                result.dropped.append(follower.seq)
            await self.store.delete(collection, key)
        elif entry.op is SyncOp.UPDATE and key is not None:
            await self._restore_from_remote(collection, key)

    async def _restore_from_remote(self, collection: str, key: str) -> None:
        """Best effort: overwrite a rejected optimistic update with the server copy."""
        if await self.queue.for_record(collection, key):
            return
        try:
            record = await asyncio.wait_for(
                self.remote.get(collection, key), timeout=self.config.request_timeout
            )
        except Exception as e:
            logger.debug(f"Could not restore {collection}/{key} from remote: {e}")
            return
        if record:
            await self.store.put(collection, record)

    # =========================================================================
    # Pull and bookkeeping
    # =========================================================================

    async def refresh(self, collection: str) -> int:
        """Replace the cached copy of a collection with the server's.

        Records with queued mutations keep their local state.
        """
        spec = get_collection(collection)
        records = await asyncio.wait_for(
            self.remote.list(collection), timeout=self.config.request_timeout
        )

        pending_keys = {e.record_key for e in await self.queue.by_collection(collection)}
        remote_keys: set[str] = set()
        fresh: list[Record] = []
        for record in records:
            key = record.get(spec.key_path)
            if key is None:
                continue
            remote_keys.add(str(key))
            if str(key) not in pending_keys:
                fresh.append(record)

        await self.store.bulk_put(collection, fresh)

        for key in await self.store.keys(collection):
            if key not in remote_keys and key not in pending_keys and not is_temp_key(key):
                await self.store.delete(collection, key)

        await self.metadata.set_last_sync(utc_now(), collection)
        logger.info(f"Refreshed {collection}: {len(fresh)} records")
        return len(fresh)

    async def _pull_all(self, result: SyncResult) -> bool:
        for collection in self.collections:
            try:
                result.pulled += await self.refresh(collection)
            except RemoteServiceError as e:
                kind = IssueKind.TRANSIENT if e.transient else IssueKind.PERMANENT
                result.errors.append(SyncIssue(kind, e.message, collection=collection))
                return False
            except (asyncio.TimeoutError, OSError) as e:
                result.errors.append(
                    SyncIssue(IssueKind.TRANSIENT, f"pull timed out: {e}", collection=collection)
                )
                return False
        return True

    async def _record_last_sync(self, result: SyncResult, touched: set[str], complete: bool) -> None:
        finished = utc_now()
        for collection in sorted(touched):
            if await self.queue.count(collection) == 0:
                await self.metadata.set_last_sync(finished, collection)
        if complete:
            await self.metadata.set_last_sync(finished)

    async def _safe_count(self) -> int:
        try:
            return await self.queue.count()
        except OfflineStorageError:
            return 0

    # =========================================================================
    # Status, backoff and scheduling
    # =========================================================================

    async def get_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            state=self.state,
            pending_changes=await self.queue.count(),
            last_sync=await self.metadata.get_last_sync(),
            errors=list(self._surfaced),
        )

    def surfaced_errors(self) -> list[SyncIssue]:
        return list(self._surfaced)

    def clear_errors(self) -> None:
        self._surfaced.clear()

    def next_retry_delay(self) -> float:
        """Seconds to wait before the next pass; 0 when the last one succeeded."""
        if self._consecutive_failures == 0:
            return 0.0
        delay = self.config.initial_backoff * (
            self.config.backoff_multiplier ** (self._consecutive_failures - 1)
        )
        return min(delay, self.config.max_backoff)

    async def start_auto_sync(self) -> None:
        """Drain periodically, backing off after failed passes."""
        if self._auto_task is not None:
            return

        async def sync_loop() -> None:
            while True:
                delay = self.next_retry_delay() or self.config.auto_sync_interval
                await asyncio.sleep(delay)
                if self._paused or not self.is_online:
                    continue
                try:
                    # Stopping the loop must not cancel a drain half way
                    await asyncio.shield(self.trigger(TriggerReason.SCHEDULED))
                except Exception as e:
                    logger.exception(f"Scheduled sync failed: {e}")
                    self._consecutive_failures += 1

        self._auto_task = asyncio.create_task(sync_loop())

    async def stop_auto_sync(self) -> None:
        if self._auto_task is not None:
            self._auto_task.cancel()
            try:
                await self._auto_task
            except asyncio.CancelledError:
                pass
            self._auto_task = None

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False


def classify_error(error: Exception, entry: QueueEntry | None = None) -> SyncError:
    """Sort a remote failure into transient or permanent."""
    seq = entry.seq if entry else None
    collection = entry.collection if entry else None

    if isinstance(error, RemoteServiceError):
        cls = TransientSyncError if error.transient else PermanentSyncError
        return cls(error.message, seq=seq, collection=collection, cause=error)
    if isinstance(error, (asyncio.TimeoutError, OSError)):
        message = str(error) or type(error).__name__
        return TransientSyncError(message, seq=seq, collection=collection, cause=error)
    message = str(error) or type(error).__name__
    return PermanentSyncError(message, seq=seq, collection=collection, cause=error)


def _log_drain_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Drain task failed: {error!r}", exc_info=error)


def _outbound_payload(payload: Record, key_path: str) -> Record:
    out = {k: v for k, v in payload.items() if k != PENDING_FIELD}
    if is_temp_key(out.get(key_path)):
        out.pop(key_path)
    return out


def _local_fields(record: Record) -> Record:
    return {k: v for k, v in record.items() if k != PENDING_FIELD}


def _issue(kind: IssueKind, message: str, entry: QueueEntry) -> SyncIssue:
    return SyncIssue(
        kind=kind,
        message=message,
        seq=entry.seq,
        op=entry.op,
        collection=entry.collection,
        record_key=entry.record_key,
    )
