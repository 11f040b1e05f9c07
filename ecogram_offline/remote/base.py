"""
Remote data service contract.

The authoritative copy of every record lives behind this interface.
Implementations raise ``RemoteServiceError`` with a machine-readable
code so the sync engine can tell "not found" and rejections apart from
network trouble.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

Record = dict[str, Any]


class DataService(ABC):
    """Per-collection CRUD operations against the remote service."""

    @abstractmethod
    async def list(self, collection: str) -> list[Record]:
        """Return every record in a collection."""

    @abstractmethod
    async def get(self, collection: str, key: str) -> Record:
        """Return one record or raise a ``not_found`` error."""

    @abstractmethod
    async def create(self, collection: str, payload: Record) -> Record:
        """Create a record; the response carries the server-assigned key."""

    @abstractmethod
    async def update(self, collection: str, key: str, payload: Record) -> Record:
        """Apply ``payload`` to an existing record and return the result."""

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        """Delete a record."""

    async def close(self) -> None:
        """Release network resources. Default: nothing to release."""
        return None
