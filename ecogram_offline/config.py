"""
Configuration for the offline cache and the sync engine.

Values come from code, environment variables, or the ``offline`` section
of ``~/.ecogram/settings.yaml``:

```yaml
offline:
  db_path: ~/.ecogram/offline.db
  api_base_url: https://ecogram.example.com
  request_timeout: 10
  sync:
    max_retries: 5
    initial_backoff: 1.0
    auto_sync_interval: 30
```
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path.home() / ".ecogram" / "settings.yaml"
DEFAULT_DB_PATH = Path.home() / ".ecogram" / "offline.db"


@dataclass
class SyncConfig:
    """Retry and scheduling settings for the sync engine."""

    # Transient failures tolerated per entry before it is reported
    max_retries: int = 5

    # Backoff between passes after a transient failure (seconds)
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0

    # Client-side bound on each remote call (seconds)
    request_timeout: float = 10.0

    auto_sync_interval: float = 30.0
    sync_on_change: bool = True
    pull_after_push: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class OfflineConfig:
    """Where the local database lives and how to reach the API."""

    db_path: str | Path = DEFAULT_DB_PATH
    api_base_url: str | None = None
    request_timeout: float = 10.0
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_env(cls) -> OfflineConfig:
        """Create config from environment variables.

        - ECOGRAM_OFFLINE_DB: database file (``:memory:`` allowed)
        - ECOGRAM_API_URL: base URL of the REST API
        - ECOGRAM_REQUEST_TIMEOUT: seconds per remote call
        - ECOGRAM_SYNC_MAX_RETRIES: transient failures before reporting
        """
        timeout = float(os.environ.get("ECOGRAM_REQUEST_TIMEOUT", "10"))
        sync = SyncConfig(
            max_retries=int(os.environ.get("ECOGRAM_SYNC_MAX_RETRIES", "5")),
            request_timeout=timeout,
        )
        return cls(
            db_path=os.environ.get("ECOGRAM_OFFLINE_DB", str(DEFAULT_DB_PATH)),
            api_base_url=os.environ.get("ECOGRAM_API_URL"),
            request_timeout=timeout,
            sync=sync,
        )

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> OfflineConfig:
        """Load the ``offline`` section of a settings file.

        A missing file yields defaults.
        """
        path = path or DEFAULT_SETTINGS_PATH
        if not path.exists():
            return cls()

        try:
            config = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            logger.warning(f"Ignoring unreadable settings file {path}: {e}")
            return cls()

        section: dict[str, Any] = config.get("offline", {}) or {}
        timeout = float(section.get("request_timeout", 10.0))
        sync_section = dict(section.get("sync", {}) or {})
        sync_section.setdefault("request_timeout", timeout)

        db_path = section.get("db_path", DEFAULT_DB_PATH)
        if isinstance(db_path, str) and db_path != ":memory:":
            db_path = Path(db_path).expanduser()

        return cls(
            db_path=db_path,
            api_base_url=section.get("api_base_url"),
            request_timeout=timeout,
            sync=SyncConfig.from_dict(sync_section),
        )
