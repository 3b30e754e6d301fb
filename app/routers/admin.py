"""
Admin API Router
Operational endpoints for idempotency housekeeping
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query
import structlog

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/admin/idempotency", tags=["admin"])


@router.post("/cleanup")
async def trigger_cleanup(
    days: Optional[int] = Query(None, ge=0, description="Days to keep records (default from settings)"),
    dry_run: bool = Query(False, description="Only count what would be deleted")
):
    """
    Manually trigger the idempotency record purge.

    For operational purposes. Runs the cleanup immediately instead of waiting
    for the daily schedule.

    Returns:
        dict: Cleanup result with deleted (or would_delete) count

    Raises:
        503: Database not configured or unreachable
    """
    from app.database import SessionLocal
    from app.services.idempotency import SqlAlchemyRecordStore, StoreUnavailableError
    from app.services.idempotency.housekeeping import purge_expired_records

    if SessionLocal is None:
        raise HTTPException(status_code=503, detail="Database not configured")

    try:
        result = purge_expired_records(
            SqlAlchemyRecordStore(SessionLocal),
            retention_days=days,
            dry_run=dry_run
        )
    except StoreUnavailableError as e:
        logger.error("manual_cleanup_error", error=str(e))
        raise HTTPException(status_code=503, detail="Idempotency store unavailable")

    logger.info("manual_cleanup_completed", **result)
    return {"status": "completed", "result": result}
