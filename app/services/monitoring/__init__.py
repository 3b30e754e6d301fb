"""
Monitoring Module
Exports for structured logging, correlation ID propagation and error tracking
"""

from app.services.monitoring.error_tracking import init_sentry, set_job_context
from app.services.monitoring.logging import (
    CorrelationJsonFormatter,
    add_correlation_id,
    idempotency_log_context,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "add_correlation_id",
    "CorrelationJsonFormatter",
    "idempotency_log_context",
    "init_sentry",
    "set_job_context",
]
