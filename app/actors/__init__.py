"""
Dramatiq Actors - Idempotent Background Jobs

Builds the broker the actors register with:
- RedisBroker when REDIS_URL is set (shared queue, same Redis as the locks)
- StubBroker otherwise (tests, single-process development)

Usage:
    from app.actors import broker, capture_payment
"""

from typing import Optional

import dramatiq
import structlog
from dramatiq.broker import Broker

from app.config import settings

logger = structlog.get_logger()


def build_broker(redis_url: Optional[str]) -> Broker:
    """
    Create the Dramatiq broker and make it the global one.

    Args:
        redis_url: Redis connection URL, None for the in-process stub

    Returns:
        Broker instance (RedisBroker or StubBroker)
    """
    if redis_url:
        from dramatiq.brokers.redis import RedisBroker

        broker = RedisBroker(
            url=redis_url,
            namespace="idempotency_gateway",
            max_connections=10,
            socket_timeout=5,
            socket_connect_timeout=5,
            retry_on_timeout=True,
            dead_message_ttl=86400000  # keep dead-lettered captures a day
        )
    else:
        from dramatiq.brokers.stub import StubBroker

        broker = StubBroker()

    dramatiq.set_broker(broker)
    logger.info("broker_configured", type=type(broker).__name__)
    return broker


broker = build_broker(settings.redis_url)

# Actors register with the global broker on import
from app.actors.payment_capture import capture_payment  # noqa: F401,E402

__all__ = ["broker", "build_broker", "capture_payment"]
