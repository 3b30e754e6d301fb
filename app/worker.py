"""
Dramatiq Worker Entrypoint

Usage:
    dramatiq app.worker --processes 2 --threads 1 --verbose

Procfile Configuration:
    worker: dramatiq app.worker --processes 2 --threads 1 --verbose

Workers share no in-process state: the idempotency lock and completion
markers live in Redis, so any number of processes and hosts can consume the
same queue. Without REDIS_URL each worker deduplicates only its own jobs.
"""

import structlog

from app.actors import broker
from app.config import settings
from app.database import init_db
from app.services.monitoring import add_correlation_id, init_sentry, setup_logging

# Same log shape as the API process; correlation IDs come from the actor argument
setup_logging()
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.JSONRenderer()
    ]
)
logger = structlog.get_logger()

init_sentry()

# Idempotency records and payments need the database in every worker process
init_db()

logger.info(
    "worker_ready",
    broker=type(broker).__name__,
    processes=settings.worker_processes,
    threads=settings.worker_threads,
)
