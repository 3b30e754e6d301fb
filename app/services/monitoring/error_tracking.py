"""
Sentry Error Tracking
Reports unexpected exceptions from the API and the capture workers
"""

from typing import Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.dramatiq import DramatiqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration

logger = structlog.get_logger(__name__)


def init_sentry() -> bool:
    """
    Initialize Sentry SDK with FastAPI and Dramatiq integrations.

    If SENTRY_DSN is not configured, logs a warning and returns False, so
    development and tests run without error tracking.

    Returns:
        True when Sentry was initialized
    """
    from app.config import settings

    if not settings.sentry_dsn:
        logger.warning("sentry_disabled", reason="dsn_not_configured")
        return False

    environment = settings.sentry_environment or settings.environment
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=environment,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        integrations=[
            FastApiIntegration(),
            DramatiqIntegration(),
        ],
    )

    logger.info("sentry_initialized", environment=environment,
                traces_sample_rate=settings.sentry_traces_sample_rate)
    return True


def set_job_context(job_type: str, idempotency_key: Optional[str], correlation_id: Optional[str] = None) -> None:
    """
    Tag the current scope with the job being run.

    A failed capture then shows which key was retried and which request
    enqueued it.
    """
    sentry_sdk.set_context("idempotent_job", {
        "job_type": job_type,
        "idempotency_key": idempotency_key,
        "correlation_id": correlation_id or "none",
    })
    sentry_sdk.set_tag("job_type", job_type)
    if idempotency_key:
        sentry_sdk.set_tag("idempotency_key", idempotency_key)
