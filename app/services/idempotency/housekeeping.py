"""
Idempotency Housekeeping
Time-based purge of durable idempotency records
"""

from datetime import timedelta
from typing import Optional

import structlog

from app.config import settings
from app.services.idempotency.store import RecordStore

logger = structlog.get_logger(__name__)


def purge_expired_records(
    store: RecordStore,
    retention_days: Optional[int] = None,
    dry_run: bool = False
) -> dict:
    """
    Delete idempotency records older than the retention window.

    A purged key behaves like a new key afterwards, so the window must be
    longer than any client's retry horizon.

    Args:
        store: Durable record store
        retention_days: Days to keep records (default: settings.idempotency_retention_days)
        dry_run: Only count what would be deleted

    Returns:
        dict with retention_days, dry_run and deleted (or would_delete) count
    """
    days = settings.idempotency_retention_days if retention_days is None else retention_days
    if days < 0:
        raise ValueError(f"retention_days must be >= 0, got {days}")

    age = timedelta(days=days)

    if dry_run:
        count = store.count_older_than(age)
        logger.info("idempotency_cleanup_dry_run", retention_days=days, would_delete=count)
        return {"retention_days": days, "dry_run": True, "would_delete": count}

    deleted = store.delete_older_than(age)
    logger.info("idempotency_cleanup_finished", retention_days=days, deleted=deleted)
    return {"retention_days": days, "dry_run": False, "deleted": deleted}
