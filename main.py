#!/usr/bin/env python3
"""QuizSync - keeps quiz progress in sync between devices.

Usage:
    python main.py --user-id 123456 sync
    python main.py --user-id 123456 flush
    python main.py --user-id 123456 migrate --force
    python main.py --user-id 123456 status
"""

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.local_cache import LocalCacheStore
from core.memory_store import MemoryRecordStore
from core.postgres_store import PostgresRecordStore
from core.record_store import RecordStore, StoreError
from core.session import SessionContext
from core.sync_manager import SyncManager, SyncStatus
from utils.config import AppSettings, Config

log = logging.getLogger("quizsync")


def setup_logging(verbose: bool = False) -> None:
    """Log to a rotating file under the XDG state directory and to stderr."""
    xdg_state_home = os.environ.get("XDG_STATE_HOME", str(Path.home() / ".local" / "state"))
    log_dir = Path(xdg_state_home) / "quizsync"
    log_dir.mkdir(parents=True, exist_ok=True)

    # 5MB per file, keep 5 backups
    file_handler = RotatingFileHandler(
        log_dir / "quizsync.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
    )

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[file_handler, logging.StreamHandler()],
    )


def default_db_path() -> Path:
    data_dir = Path.home() / ".local" / "share" / "quizsync"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "quizsync.db"


async def open_store(config: Config, settings: AppSettings) -> RecordStore:
    """Connect to the configured remote record store."""
    if settings.remote_backend == "postgres":
        store = PostgresRecordStore(
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
            password=config.get_postgres_password(),
            sslmode=settings.postgres_sslmode,
            max_retries=settings.transaction_max_retries,
        )
        await store.initialize()
        return store

    log.warning("Using the in-process memory store; remote data is not kept between runs")
    return MemoryRecordStore(max_retries=settings.transaction_max_retries)


def print_status(status: SyncStatus) -> None:
    print("=" * 70)
    print(f"State:          {status.state.value}")
    print(f"Online:         {status.online}")
    print(f"Subscribed:     {status.subscribed}")
    print(f"Pending writes: {status.pending_writes}")
    print(f"Last updated:   {status.last_updated}")
    if status.migration is not None:
        migration = status.migration
        outcome = migration.outcome.value if migration.outcome else "-"
        print(f"Migration:      {migration.state.value} ({outcome})")
        if migration.migrated_from:
            print(f"  Migrated from: {', '.join(migration.migrated_from)}")
        if migration.excluded:
            print(f"  Legacy records of other users skipped: {migration.excluded}")
        if migration.error:
            print(f"  Error: {migration.error}")
    print("=" * 70)


async def run_command(args: argparse.Namespace, config: Config) -> int:
    settings = config.settings()
    ctx = SessionContext(
        app_id=settings.app_id,
        user_id=args.user_id,
        user_name=args.user_name,
        settings=settings,
    )
    cache = LocalCacheStore(config.db_path, ctx.app_id, max_sessions=settings.max_local_sessions)

    if args.command == "status" and args.local:
        record = cache.load()
        print("=" * 70)
        print(f"Mistakes:  {len(record.mistakes)}")
        print(f"Archive:   {len(record.archive)}")
        print(f"Favorites: {len(record.favorites)}")
        print(f"Sessions:  {len(cache.load_sessions())}")
        print(f"Queued:    {len(cache.load_queue())}")
        print(f"Last sync: {cache.last_sync()}")
        print("=" * 70)
        return 0

    try:
        store = await open_store(config, settings)
    except StoreError as e:
        print(f"Error: remote store unavailable: {e}")
        return 1

    manager = SyncManager(ctx, store, cache)
    try:
        if args.command == "migrate":
            status = await manager.migration.run(force=args.force)
            print_status(manager.status())
            return 0 if status.migration_done or status.is_anonymous else 1

        await manager.start()
        if args.command == "sync":
            if manager.status().subscribed and not await manager.wait_for_snapshot(args.timeout):
                print(f"No remote snapshot within {args.timeout}s")
        elif args.command == "flush":
            result = await manager.flush_queue()
            print(
                f"Flushed: {result.flushed}, dropped: {result.dropped}, "
                f"pending: {result.retained}"
            )
        print_status(manager.status())
        return 0
    finally:
        await manager.stop()
        await store.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sync quiz progress between this device and the remote store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --user-id 123456 sync
  %(prog)s --user-id 123456 migrate --force
  %(prog)s status --local
        """,
    )
    parser.add_argument("--user-id", default=None, help="Durable user identity")
    parser.add_argument("--user-name", default="Guest", help="Display name")
    parser.add_argument("--db", type=Path, default=None, help="Local database path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    sync_parser = subparsers.add_parser("sync", help="Start a session and sync once")
    sync_parser.add_argument(
        "--timeout", type=float, default=10.0, help="Seconds to wait for the remote record"
    )
    subparsers.add_parser("flush", help="Send queued offline writes")
    migrate_parser = subparsers.add_parser("migrate", help="Migrate legacy records")
    migrate_parser.add_argument(
        "--force", action="store_true", help="Run even if already migrated"
    )
    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument(
        "--local", action="store_true", help="Only read the local cache"
    )

    args = parser.parse_args()
    setup_logging(args.verbose)

    db_path = args.db or default_db_path()
    try:
        config = Config(db_path)
    except Exception as e:
        print(f"Error loading config: {e}")
        sys.exit(1)

    sys.exit(asyncio.run(run_command(args, config)))


if __name__ == "__main__":
    main()
