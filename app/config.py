"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Redis (fast-path cache, locks, job queue)
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # HTTP Idempotency
    idempotency_header: str = "Idempotency-Key"
    idempotency_key_max_length: int = 255
    idempotency_require_key: bool = True  # False = requests without a key pass through untracked
    idempotency_safe_methods: List[str] = ["GET", "HEAD", "OPTIONS"]
    idempotency_lock_ttl: float = 10.0  # seconds, must exceed worst-case request duration
    idempotency_lock_wait: float = 0.0  # seconds, 0 = fail fast with 409
    idempotency_lock_renewal: bool = True  # extend the lock every ttl/3 while the operation runs
    idempotency_response_ttl: int = 86400  # 24 hours in the fast-path cache

    # USER DECISION: keep mismatch rejection on by default.
    # Turning it off replays the FIRST stored result for a reused key even when the
    # payload differs. Intentionally permissive, masks client bugs.
    idempotency_reject_payload_mismatch: bool = True

    # Store outage policy: False = fail closed (503), True = execute without dedup
    idempotency_fail_open: bool = False

    # Queue Idempotency
    job_idempotency_enabled: bool = True
    job_idempotency_ttl: int = 86400  # completion marker lifetime
    job_lock_ttl: float = 60.0

    # Housekeeping
    idempotency_retention_days: int = 7

    # Metrics
    metrics_enabled: bool = False

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None  # Sentry project DSN
    sentry_environment: Optional[str] = None  # Defaults to environment setting
    sentry_traces_sample_rate: float = 0.1

    # Worker Configuration
    worker_processes: int = 2
    worker_threads: int = 1

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
