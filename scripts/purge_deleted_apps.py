#!/usr/bin/env python3
"""Permanently delete apps whose deletion grace period has elapsed.

Usage:
    python scripts/purge_deleted_apps.py            # delete elapsed apps
    python scripts/purge_deleted_apps.py --dry-run  # only list them
    python scripts/purge_deleted_apps.py --list     # list every pending app

Outside a dry run, sign-in token records that expired more than a day ago are
dropped from the primary store as well; Redis expires its own.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    USE_MEMORY_STORE / SHARED_FS_ROOT: operate on a memory store snapshot instead
    TOKEN_KEY_ENCRYPTION_SECRET: required with Postgres
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(runtime, dry_run: bool = False) -> List[dict]:
    results = runtime.tenants.purge_elapsed(dry_run=dry_run)
    return [
        {
            "message": result.message,
            "deleted": result.is_deleted,
            "delete_at": result.delete_at.isoformat(),
            "admin_emails": list(result.admin_emails),
        }
        for result in results
    ]


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Purge apps whose deletion grace period has elapsed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without making changes",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List every app pending deletion and exit",
    )
    args = parser.parse_args(argv)

    # Import here to avoid loading config before env vars are set
    from keyward.service.runtime import get_runtime
    from keyward.storage.errors import StorageError

    try:
        runtime = get_runtime()
        if args.list:
            for app_id in runtime.tenants.list_pending_deletion():
                print(app_id)
            return 0
        results = purge(runtime, dry_run=args.dry_run)
        expired_tokens = 0
        if not args.dry_run and runtime.cache is None:
            expired_tokens = runtime.store.purge_expired_signin_tokens(runtime.clock.now())
    except StorageError as e:
        print(f"Error: {e}")
        return 1

    prefix = "[DRY RUN] " if args.dry_run else ""
    for result in results:
        print(f"{prefix}{result['message']}")
    print(f"{prefix}{len(results)} app(s) processed")
    if expired_tokens:
        print(f"{expired_tokens} expired sign-in token(s) removed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
