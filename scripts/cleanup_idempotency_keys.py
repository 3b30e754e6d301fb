#!/usr/bin/env python3
"""
Purge idempotency records older than the retention window.

Run: python scripts/cleanup_idempotency_keys.py [--days 7] [--dry-run]

Exit codes:
  0 - Cleanup finished (or dry run reported)
  2 - Cleanup failed (database not configured or unreachable)
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

try:
    from app import database
    from app.config import settings
    from app.services.idempotency import SqlAlchemyRecordStore, StoreUnavailableError
    from app.services.idempotency.housekeeping import purge_expired_records
except ImportError as e:
    print(f"ERROR: Failed to import required modules: {e}")
    print("Make sure you're running from the project root and dependencies are installed.")
    sys.exit(2)


def main(argv=None) -> int:
    """Cleanup script entry point"""
    parser = argparse.ArgumentParser(
        description="Clean up expired idempotency key records"
    )
    parser.add_argument(
        "--days",
        type=int,
        default=settings.idempotency_retention_days,
        help=f"Number of days to keep records (default: {settings.idempotency_retention_days})"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting"
    )
    args = parser.parse_args(argv)

    if args.days < 0:
        parser.error("--days must be >= 0")

    database.init_db()
    if database.SessionLocal is None:
        print("ERROR: Database not configured. Set DATABASE_URL environment variable.")
        return 2

    print(f"Cleaning up idempotency keys older than {args.days} days...")

    try:
        result = purge_expired_records(
            SqlAlchemyRecordStore(database.SessionLocal),
            retention_days=args.days,
            dry_run=args.dry_run
        )
    except StoreUnavailableError as e:
        print(f"ERROR: Cleanup failed: {e}")
        return 2

    if args.dry_run:
        print(f"DRY RUN: Would delete {result['would_delete']} records")
    else:
        print(f"Successfully deleted {result['deleted']} expired records")

    return 0


if __name__ == "__main__":
    sys.exit(main())
