"""ID and timestamp helpers for the offline cache.

Records created while offline get a temporary key of the form
``local-{uuid hex}`` until the remote service assigns a real one.
Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so that they sort lexically.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

TEMP_KEY_PREFIX = "local-"


def temp_key() -> str:
    """Generate a temporary local record key."""
    return f"{TEMP_KEY_PREFIX}{uuid.uuid4().hex}"


def is_temp_key(key: str | None) -> bool:
    return bool(key) and str(key).startswith(TEMP_KEY_PREFIX)


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
