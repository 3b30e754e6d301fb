"""
APScheduler Background Jobs

Scheduled housekeeping for idempotency records.
Jobs run via BackgroundScheduler in FastAPI process.
"""

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

logger = structlog.get_logger(__name__)


def run_idempotency_cleanup():
    """
    Wrapper function for the daily idempotency record purge.

    Called by APScheduler daily at 03:00 to delete records older than
    settings.idempotency_retention_days.
    """
    try:
        from app.database import SessionLocal
        from app.services.idempotency import SqlAlchemyRecordStore
        from app.services.idempotency.housekeeping import purge_expired_records

        if SessionLocal is None:
            logger.warning("idempotency_cleanup_skipped", reason="database_not_configured")
            return

        result = purge_expired_records(SqlAlchemyRecordStore(SessionLocal))
        logger.info("idempotency_cleanup_completed", **result)

    except Exception as e:
        # Next scheduled run retries; never kill the scheduler thread
        logger.error("idempotency_cleanup_crashed", error=str(e), exc_info=True)


def start_scheduler(environment: str = "production") -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance
    """
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    # Daily idempotency record purge (at 03:00 UTC)
    scheduler.add_job(
        run_idempotency_cleanup,
        trigger=CronTrigger(hour=3, minute=0),
        id="idempotency_cleanup",
        name="Idempotency Record Daily Cleanup",
        replace_existing=True
    )
    logger.info("job_registered", job="idempotency_cleanup", schedule="daily_03:00")

    scheduler.start()
    logger.info("scheduler_started", jobs=["idempotency_cleanup"])

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_idempotency_cleanup",
]
