#!/usr/bin/env python3
"""Create an app and print its API keys once.

Usage:
    python scripts/create_app.py myapp --admin-email admin@example.com
    python scripts/create_app.py myapp --admin-email admin@example.com --event-logging --retention-days 30

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    SHARED_FS_ROOT: directory for the memory store snapshot
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Create a keyward app",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("app_id", help="Alphanumeric app id starting with a letter")
    parser.add_argument(
        "--admin-email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument("--event-logging", action="store_true", help="Enable event logging")
    parser.add_argument("--retention-days", type=int, default=365, help="Event log retention in days")
    args = parser.parse_args(argv)

    if not args.admin_email:
        print("Error: --admin-email or ADMIN_EMAIL environment variable required")
        return 1

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from keyward.service.runtime import get_runtime
    from keyward.service.tenants import AppCreateOptions

    runtime = get_runtime()
    result = runtime.tenants.create(
        args.app_id,
        AppCreateOptions(
            admin_email=args.admin_email,
            event_logging_is_enabled=args.event_logging,
            event_logging_retention_period=args.retention_days,
        ),
    )
    if not result.is_ok:
        print(f"Error: {result.problem.title}")
        return 1

    created = result.value
    print(f"Created app '{args.app_id}'")
    print(f"  ApiKey1:    {created.api_key1}")
    print(f"  ApiKey2:    {created.api_key2}")
    print(f"  ApiSecret1: {created.api_secret1}")
    print(f"  ApiSecret2: {created.api_secret2}")
    print(created.message)
    return 0


if __name__ == "__main__":
    sys.exit(main())
