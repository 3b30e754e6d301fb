"""
IdempotencyRecord Model
Authoritative outcome of a completed idempotent operation
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class IdempotencyRecord(Base):
    """
    Durable record of a replayable operation result.

    One row per (key, operation). The unique constraint is the last line of
    defense when two attempts race past the Redis lock, so it lives in the
    database and not only in application code.
    Rows are never updated; housekeeping deletes them after the retention window.
    """
    __tablename__ = "idempotency_keys"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Identity
    key = Column(String(255), nullable=False, index=True)
    operation = Column(String(512), nullable=False)
    # "POST /api/v1/payments" for HTTP, job type for queued jobs

    # SHA-256 hex of the canonical request payload
    payload_fingerprint = Column(String(64), nullable=True)

    # Stored Result
    status_code = Column(Integer, nullable=False)
    response_body = Column(JSON, nullable=True)
    response_encoding = Column(String(16), nullable=True)  # "base64" for non-JSON bodies
    response_headers = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('key', 'operation', name='uq_idempotency_key_operation'),
        Index('ix_idempotency_created_at', 'created_at'),
    )

    def __repr__(self):
        return (
            f"<IdempotencyRecord(id={self.id}, key='{self.key}', "
            f"operation='{self.operation}', status_code={self.status_code})>"
        )
