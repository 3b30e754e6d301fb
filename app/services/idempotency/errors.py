"""
Idempotency Errors

Exceptions raised by the idempotency layer. Conflict and payload mismatch are
NOT exceptions - they are normal outcomes (see outcomes.py).
"""

from typing import Optional


class IdempotencyError(Exception):
    """Base class for all idempotency-layer errors."""


class InvalidKeyError(IdempotencyError):
    """Idempotency key missing or outside the accepted shape (client error)."""

    reason = "invalid_key"


class KeyMissingError(InvalidKeyError):
    """No idempotency key supplied where one is required."""

    reason = "key_missing"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or "Idempotency key is required")


class KeyMalformedError(InvalidKeyError):
    """Idempotency key is empty, blank or too long."""

    reason = "key_malformed"

    def __init__(self, key: str, max_length: int, message: Optional[str] = None):
        self.key = key
        self.max_length = max_length

        if message is None:
            message = (
                f"Idempotency key must be 1-{max_length} characters and not blank "
                f"(got {len(key)} characters)"
            )
        super().__init__(message)


class StoreUnavailableError(IdempotencyError):
    """
    Durable store or fast-path cache could not be reached.

    Wraps the driver exception (redis.RedisError, sqlalchemy OperationalError)
    so the coordinator can apply the fail-open / fail-closed policy without
    knowing which backend failed.
    """

    def __init__(self, backend: str, operation: str, cause: Optional[BaseException] = None):
        self.backend = backend
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{backend} unavailable during {operation}{detail}")


class DuplicateRecordError(IdempotencyError):
    """
    Insert rejected by the (key, operation) uniqueness constraint.

    Means another attempt already recorded a result; the coordinator swallows
    it and re-reads the stored record.
    """

    def __init__(self, key: str, operation: str):
        self.key = key
        self.operation = operation
        super().__init__(f"Idempotency record already exists for key={key!r} operation={operation!r}")
