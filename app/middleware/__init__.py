"""
Middleware Module
ASGI middleware for request processing
"""

from app.middleware.correlation_id import CorrelationIdMiddleware, correlation_context, get_correlation_id
from app.middleware.idempotency import IdempotencyMiddleware

__all__ = ["CorrelationIdMiddleware", "IdempotencyMiddleware", "correlation_context", "get_correlation_id"]
