"""
Idempotency Services

At-most-once execution for HTTP write requests and queued jobs, keyed by a
caller-supplied idempotency key.

Usage:
    from app.services.idempotency import get_coordinator
"""

from typing import Optional

import structlog

from app.config import settings
from app.services.idempotency.cache import (
    FastPathCache,
    InMemoryFastPathCache,
    LockHandle,
    RedisFastPathCache,
)
from app.services.idempotency.coordinator import (
    HasIdempotencyKey,
    IdempotencyConfig,
    IdempotencyCoordinator,
    RequestAttempt,
    validate_key,
)
from app.services.idempotency.errors import (
    DuplicateRecordError,
    IdempotencyError,
    InvalidKeyError,
    KeyMalformedError,
    KeyMissingError,
    StoreUnavailableError,
)
from app.services.idempotency.fingerprint import fingerprint, fingerprint_body, fingerprint_request
from app.services.idempotency.metrics import IdempotencyMetrics, PrometheusIdempotencyMetrics, build_metrics
from app.services.idempotency.outcomes import (
    BASE64_ENCODING,
    JobOutcome,
    JobOutcomeKind,
    OperationResult,
    RejectionReason,
    RequestOutcome,
    RequestOutcomeKind,
    is_successful,
)
from app.services.idempotency.store import RecordStore, SqlAlchemyRecordStore

logger = structlog.get_logger(__name__)

# Process-wide coordinator, built lazily from settings
_coordinator: Optional[IdempotencyCoordinator] = None


def build_coordinator() -> IdempotencyCoordinator:
    """
    Build a coordinator from application settings.

    Raises StoreUnavailableError until init_db() has configured the database.
    Without REDIS_URL the in-memory cache is used, which only deduplicates
    within one process.
    """
    from app import database

    if database.SessionLocal is None:
        raise StoreUnavailableError("database", "init_db")

    if settings.redis_url:
        cache: FastPathCache = RedisFastPathCache.from_url(settings.redis_url)
        logger.info("idempotency_cache_configured", type="redis")
    else:
        cache = InMemoryFastPathCache()
        logger.warning("idempotency_cache_configured", type="in_memory", note="single_process_only")

    return IdempotencyCoordinator(
        cache=cache,
        store=SqlAlchemyRecordStore(database.SessionLocal),
        config=IdempotencyConfig.from_settings(settings),
        metrics=build_metrics(settings.metrics_enabled),
    )


def get_coordinator() -> IdempotencyCoordinator:
    """Get the global coordinator instance."""
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator()
    return _coordinator


def set_coordinator(coordinator: Optional[IdempotencyCoordinator]) -> None:
    """Replace (or reset with None) the global coordinator. Used by tests and app startup."""
    global _coordinator
    _coordinator = coordinator


__all__ = [
    "BASE64_ENCODING",
    "DuplicateRecordError",
    "FastPathCache",
    "HasIdempotencyKey",
    "IdempotencyConfig",
    "IdempotencyCoordinator",
    "IdempotencyError",
    "IdempotencyMetrics",
    "InMemoryFastPathCache",
    "InvalidKeyError",
    "JobOutcome",
    "JobOutcomeKind",
    "KeyMalformedError",
    "KeyMissingError",
    "LockHandle",
    "OperationResult",
    "PrometheusIdempotencyMetrics",
    "RecordStore",
    "RedisFastPathCache",
    "RejectionReason",
    "RequestAttempt",
    "RequestOutcome",
    "RequestOutcomeKind",
    "SqlAlchemyRecordStore",
    "StoreUnavailableError",
    "build_coordinator",
    "build_metrics",
    "fingerprint",
    "fingerprint_body",
    "fingerprint_request",
    "get_coordinator",
    "is_successful",
    "set_coordinator",
    "validate_key",
]
