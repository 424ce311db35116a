#!/usr/bin/env python3
"""Delete a user's legacy records once their migrated record is stored.

Legacy documents are never removed during migration; this script is the
explicit cleanup pass. It refuses to run while users/{id} does not exist.

Usage:
    python scripts/cleanup_legacy.py --user-id 123456
    python scripts/cleanup_legacy.py --user-id 123456 --dry-run
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.local_cache import LocalCacheStore  # noqa: E402
from core.migration import MigrationEngine  # noqa: E402
from core.record_store import StoreError  # noqa: E402
from core.session import SessionContext  # noqa: E402
from main import default_db_path, open_store  # noqa: E402
from utils.config import Config  # noqa: E402


def setup_logging(verbose: bool = False) -> None:
    """Setup logging for cleanup script."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def cleanup(config: Config, user_id: str, dry_run: bool) -> int:
    settings = config.settings()
    ctx = SessionContext(app_id=settings.app_id, user_id=user_id, settings=settings)
    if ctx.is_anonymous:
        print("Error: a durable user id is required")
        return 1

    cache = LocalCacheStore(config.db_path, ctx.app_id, max_sessions=settings.max_local_sessions)
    store = await open_store(config, settings)
    engine = MigrationEngine(ctx, store, cache)

    print("=" * 70)
    try:
        if dry_run:
            owned = await engine.find_owned_legacy_records()
            print(f"Would delete {len(owned)} legacy records:")
            for record in owned:
                print(f"  {record.address} ({record.schema_version})")
        else:
            removed = await engine.cleanup_legacy()
            print(f"✓ Deleted {removed} legacy records for user {user_id}")
        print("=" * 70)
        return 0
    except RuntimeError as e:
        print(f"✗ Cleanup refused: {e}")
    except StoreError as e:
        print(f"✗ Cleanup failed: {e}")
    finally:
        await store.close()
    print("=" * 70)
    return 1


def main():
    parser = argparse.ArgumentParser(
        description="Delete legacy records of a user after migration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --user-id 123456 --dry-run
  %(prog)s --user-id 123456
        """,
    )
    parser.add_argument("--user-id", required=True, help="Durable user identity")
    parser.add_argument("--db", type=Path, default=None, help="Local database path")
    parser.add_argument(
        "--dry-run", action="store_true", help="Only list the records that would be deleted"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )

    args = parser.parse_args()
    setup_logging(args.verbose)

    try:
        config = Config(args.db or default_db_path())
    except Exception as e:
        print(f"Error loading config: {e}")
        sys.exit(1)

    try:
        sys.exit(asyncio.run(cleanup(config, args.user_id, args.dry_run)))
    except StoreError as e:
        print(f"Error: remote store unavailable: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
