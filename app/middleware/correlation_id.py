"""
Correlation ID Propagation
Request correlation IDs for logs, carried by hand across the queue boundary
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

__all__ = ["CorrelationIdMiddleware", "correlation_context", "get_correlation_id"]


def get_correlation_id() -> str:
    """
    Correlation ID of the current request, or 'none' outside a request.

    Passed explicitly as an actor argument when a job is enqueued, since the
    worker process does not share the request's context.
    """
    return correlation_id.get() or 'none'


@contextmanager
def correlation_context(value: Optional[str]) -> Iterator[None]:
    """
    Set the correlation ID for the duration of a job.

    Logs emitted inside the block (structlog processor and JSON formatter both
    read the same context variable) carry the originating request's ID.
    """
    if not value or value == 'none':
        yield
        return

    token = correlation_id.set(value)
    try:
        yield
    finally:
        correlation_id.reset(token)
