"""
Backup and restore of the local cache.

A backup is one JSON document:

    {
      "version": "2.0",
      "exportedAt": "...",
      "data": {"games": [...], "sessions": [...], "classPreps": [...]},
      "pending": [ ...queued mutations, for diagnostics... ]
    }

Restoring writes the records back into the store. Queued mutations are
never restored; they belong to the device that made them.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .exceptions import StorageUnavailableError, ValidationError
from .id_utils import to_iso, utc_now
from .local.queue import SyncQueue
from .local.schema import COLLECTIONS
from .local.store import LocalRecordStore

logger = logging.getLogger(__name__)

BACKUP_VERSION = "2.0"
SUPPORTED_VERSIONS = frozenset({"1.0", "2.0"})


@dataclass
class RestoreResult:
    restored: dict[str, int] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.restored.values())


async def export_backup(
    store: LocalRecordStore,
    path: Path,
    queue: SyncQueue | None = None,
) -> dict[str, int]:
    """Write every cached record to ``path``. Returns counts per collection."""
    data: dict[str, list[dict[str, Any]]] = {}
    for name in COLLECTIONS:
        data[name] = await store.list(name)

    document: dict[str, Any] = {
        "version": BACKUP_VERSION,
        "exportedAt": to_iso(utc_now()),
        "data": data,
    }
    if queue is not None:
        document["pending"] = [entry.to_dict() for entry in await queue.pending()]

    # Write to a temp file then rename, so a failed export never truncates
    # an existing backup
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document, indent=2, default=str))
            await f.flush()
        await aiofiles.os.replace(temp_path, path)
    except OSError as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageUnavailableError("export backup", str(path), e) from e

    counts = {name: len(records) for name, records in data.items()}
    logger.info(f"Exported backup to {path}", extra={"counts": counts})
    return counts


async def import_backup(
    store: LocalRecordStore,
    path: Path,
    replace: bool = False,
) -> RestoreResult:
    """Load records from a backup file into the store.

    Args:
        store: Target record store
        path: Backup file
        replace: Clear each collection before loading it
    """
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
    except OSError as e:
        raise StorageUnavailableError("import backup", str(path), e) from e

    try:
        document = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError("backup", f"not valid JSON: {e}", str(path)) from e

    version = str(document.get("version", ""))
    if version not in SUPPORTED_VERSIONS:
        raise ValidationError("version", "unsupported backup version", version)

    result = RestoreResult()
    for name, records in (document.get("data") or {}).items():
        if name not in COLLECTIONS:
            result.skipped.append(name)
            continue

        spec = COLLECTIONS[name]
        # Records exported without a key cannot be addressed locally
        keyed = [r for r in records if r.get(spec.key_path) not in (None, "")]
        if replace:
            await store.clear(name)
        result.restored[name] = await store.bulk_put(name, keyed)

    logger.info(f"Restored backup from {path}", extra={"restored": result.restored})
    return result
