"""Run one sync pass against the Ecogram API from the command line.

Opens the offline cache, drains the sync queue, and prints what happened.
Handy for checking a device's queue after it has been offline for a while.

Usage:
    python scripts/sync_once.py [--settings ~/.ecogram/settings.yaml] [--pull]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from ecogram_offline import HttpDataService, OfflineConfig, OfflineRepository, export_backup
from ecogram_offline.logging_utils import configure_structured_logging
from ecogram_offline.sync import ConnectivityMonitor


async def main():
    parser = argparse.ArgumentParser(
        description="Drain the Ecogram offline sync queue once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Use ~/.ecogram/settings.yaml
    python scripts/sync_once.py

    # Point at a local dev server and refresh the cache afterwards
    ECOGRAM_API_URL="http://localhost:3000" python scripts/sync_once.py --env --pull

    # Keep a copy of the cache after syncing
    python scripts/sync_once.py --backup ./ecogram-backup.json
        """,
    )
    parser.add_argument("--settings", type=Path, help="Settings file (default: ~/.ecogram/settings.yaml)")
    parser.add_argument("--env", action="store_true", help="Read configuration from environment")
    parser.add_argument("--pull", action="store_true", help="Refresh every collection after pushing")
    parser.add_argument("--backup", type=Path, help="Export the cache to this file afterwards")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    configure_structured_logging(level=logging.DEBUG if args.verbose else logging.INFO)

    config = OfflineConfig.from_env() if args.env else OfflineConfig.from_yaml(args.settings)
    if args.pull:
        config.sync.pull_after_push = True
    if not config.api_base_url:
        parser.error("No API URL configured (set api_base_url or ECOGRAM_API_URL)")

    remote = HttpDataService(
        config.api_base_url,
        timeout=config.request_timeout,
        auth_token=os.environ.get("ECOGRAM_API_TOKEN"),
    )
    connectivity = ConnectivityMonitor(online=True, probe=remote.ping)
    repo = await OfflineRepository.open(remote, config, connectivity)
    try:
        await connectivity.check()
        result = await repo.sync_now()
        status = await repo.status()
        if args.backup and repo.store is not None:
            await export_backup(repo.store, args.backup, queue=repo.queue)
    finally:
        await repo.close()

    print("\n" + "=" * 70)
    print("SYNC COMPLETE")
    print("=" * 70)
    print(f"Database: {config.db_path}")
    if result is None:
        print("Offline cache unavailable, nothing to sync")
        return
    print(f"State: {result.state.value}")
    print(f"Confirmed: {len(result.confirmed)}")
    print(f"Dropped: {len(result.dropped)}")
    print(f"Pulled: {result.pulled}")
    print(f"Pending: {status.pending_changes}")
    for issue in result.errors:
        print(f"  [{issue.kind.value}] {issue.collection or '-'} {issue.record_key or ''}: {issue.message}")
    if args.backup:
        print(f"Backup: {args.backup}")


if __name__ == "__main__":
    asyncio.run(main())
