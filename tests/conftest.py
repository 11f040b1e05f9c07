"""
Shared test configuration and fixtures.

Uses real SQLite (in-memory) for the local side and an in-memory fake
of the remote data service whose failures can be scripted per call.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from ecogram_offline.config import SyncConfig
from ecogram_offline.exceptions import RemoteServiceError
from ecogram_offline.local import (
    LocalRecordStore,
    MetadataStore,
    OfflineDatabase,
    SyncQueue,
)
from ecogram_offline.local.schema import COLLECTIONS
from ecogram_offline.remote.base import DataService
from ecogram_offline.sync import ConnectivityMonitor, SyncEngine


class FakeDataService(DataService):
    """
    In-memory remote service.

    Every mutating call is numbered from 1 in ``calls``; put an exception
    in ``fail_at[n]`` to make call ``n`` raise it. Set ``gate`` to an
    unset asyncio.Event to hold mutating calls until the test releases it.
    """

    def __init__(self) -> None:
        self.records: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self.calls: list[tuple[str, str, str | None, dict[str, Any] | None]] = []
        self.fail_at: dict[int, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.closed = False
        self._next_id = 100

    def seed(self, collection: str, *records: dict[str, Any]) -> None:
        key_path = COLLECTIONS[collection].key_path
        for record in records:
            self.records[collection][str(record[key_path])] = dict(record)

    async def _mutation(
        self, op: str, collection: str, key: str | None, payload: dict[str, Any] | None
    ) -> None:
        self.calls.append((op, collection, key, payload))
        if self.gate is not None:
            await self.gate.wait()
        error = self.fail_at.get(len(self.calls))
        if error is not None:
            raise error

    def _not_found(self, collection: str, key: str) -> RemoteServiceError:
        return RemoteServiceError(
            RemoteServiceError.NOT_FOUND, f"{collection}/{key} not found", status=404
        )

    async def list(self, collection: str) -> list[dict[str, Any]]:
        return [dict(r) for r in self.records[collection].values()]

    async def get(self, collection: str, key: str) -> dict[str, Any]:
        if key not in self.records[collection]:
            raise self._not_found(collection, key)
        return dict(self.records[collection][key])

    async def create(self, collection: str, payload: dict[str, Any]) -> dict[str, Any]:
        await self._mutation("create", collection, None, payload)
        key_path = COLLECTIONS[collection].key_path
        self._next_id += 1
        record = {**payload, key_path: str(self._next_id)}
        self.records[collection][record[key_path]] = record
        return dict(record)

    async def update(self, collection: str, key: str, payload: dict[str, Any]) -> dict[str, Any]:
        await self._mutation("update", collection, key, payload)
        if key not in self.records[collection]:
            raise self._not_found(collection, key)
        self.records[collection][key].update(payload)
        return dict(self.records[collection][key])

    async def delete(self, collection: str, key: str) -> None:
        await self._mutation("delete", collection, key, None)
        if key not in self.records[collection]:
            raise self._not_found(collection, key)
        del self.records[collection][key]

    async def close(self) -> None:
        self.closed = True


def unavailable(message: str = "network unreachable") -> RemoteServiceError:
    return RemoteServiceError(RemoteServiceError.UNAVAILABLE, message)


def rejected(message: str = "invalid payload") -> RemoteServiceError:
    return RemoteServiceError(RemoteServiceError.REJECTED, message, status=400)


@pytest.fixture
async def db() -> AsyncIterator[OfflineDatabase]:
    """Initialized in-memory offline database."""
    database = await OfflineDatabase.create(":memory:")
    yield database
    await database.close()


@pytest.fixture
def store(db: OfflineDatabase) -> LocalRecordStore:
    return LocalRecordStore(db)


@pytest.fixture
def queue(db: OfflineDatabase) -> SyncQueue:
    return SyncQueue(db)


@pytest.fixture
def metadata(db: OfflineDatabase) -> MetadataStore:
    return MetadataStore(db)


@pytest.fixture
def remote() -> FakeDataService:
    return FakeDataService()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(max_retries=3, request_timeout=2.0, initial_backoff=0.5)


@pytest.fixture
def engine(
    store: LocalRecordStore,
    queue: SyncQueue,
    metadata: MetadataStore,
    remote: FakeDataService,
    sync_config: SyncConfig,
    connectivity: ConnectivityMonitor,
) -> SyncEngine:
    return SyncEngine(
        store, queue, metadata, remote, config=sync_config, connectivity=connectivity
    )
