"""
Structured JSON Logging with Correlation and Idempotency Context
Log records from the API and the workers carry the request correlation ID and,
while a keyed operation runs, its idempotency key and operation
"""

import logging
import os
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from asgi_correlation_id.context import correlation_id
from pythonjsonlogger import jsonlogger

SERVICE_NAME = 'idempotency-gateway'

# structlog contextvars copied onto stdlib JSON records
IDEMPOTENCY_FIELDS = ('idempotency_key', 'operation', 'job_type')


@contextmanager
def idempotency_log_context(key: Optional[str], operation: str, **extra) -> Iterator[None]:
    """
    Bind the idempotency key and operation for everything logged in the block.

    structlog events pick them up through merge_contextvars, stdlib records
    through CorrelationJsonFormatter. Values bound by an enclosing block are
    restored on exit.
    """
    with structlog.contextvars.bound_contextvars(idempotency_key=key, operation=operation, **extra):
        yield


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for stdlib records (uvicorn, SQLAlchemy, dramatiq).

    Adds correlation_id, service and environment to every record, plus the
    idempotency fields bound with idempotency_log_context().
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')

        bound = structlog.contextvars.get_contextvars()
        for name in IDEMPOTENCY_FIELDS:
            if bound.get(name) is not None:
                log_record.setdefault(name, bound[name])


def add_correlation_id(logger, method_name, event_dict):
    """
    structlog processor adding the request correlation ID.

    Explicitly bound correlation_id values win.
    """
    event_dict.setdefault('correlation_id', correlation_id.get() or 'none')
    return event_dict


def setup_logging(level: int = logging.INFO) -> logging.Handler:
    """
    Send stdlib logging to stdout as JSON, one object per line.

    Returns:
        The installed handler (for tests)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={'timestamp': 'asctime', 'level': 'levelname'},
    ))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    return handler
