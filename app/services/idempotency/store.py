"""
Durable Record Store
SQLAlchemy-backed storage of idempotency records (authoritative outcomes)
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.models.idempotency_record import IdempotencyRecord
from app.services.idempotency.errors import DuplicateRecordError, StoreUnavailableError

logger = structlog.get_logger(__name__)


class RecordStore(ABC):
    """Abstract interface for the durable record store."""

    @abstractmethod
    def find(self, key: str, operation: str) -> Optional[IdempotencyRecord]:
        """Return the record for (key, operation) or None."""

    @abstractmethod
    def insert(self, record: IdempotencyRecord) -> None:
        """Insert a record. Raises DuplicateRecordError on a (key, operation) clash."""

    @abstractmethod
    def delete_older_than(self, age: timedelta) -> int:
        """Delete records created more than `age` ago. Returns the count."""

    @abstractmethod
    def count_older_than(self, age: timedelta) -> int:
        """Count records created more than `age` ago (dry-run support)."""


class SqlAlchemyRecordStore(RecordStore):
    """
    Relational record store.

    Each call uses its own session from the factory (independent transactions),
    so a record committed by one worker is immediately visible to the others.
    Driver failures are raised as StoreUnavailableError, never swallowed:
    the coordinator decides between fail-open and fail-closed.
    """

    def __init__(self, session_factory: sessionmaker):
        """
        Initialize record store.

        Args:
            session_factory: SQLAlchemy sessionmaker (not session - creates independent transactions)
        """
        self.session_factory = session_factory
        self.logger = logger.bind(store="idempotency_records")

    def find(self, key: str, operation: str) -> Optional[IdempotencyRecord]:
        session: Session = self.session_factory()
        try:
            record = session.query(IdempotencyRecord).filter(
                IdempotencyRecord.key == key,
                IdempotencyRecord.operation == operation
            ).first()

            if record is not None:
                session.expunge(record)
            return record

        except SQLAlchemyError as e:
            self.logger.error("idempotency_record_find_failed", key=key, operation=operation, error=str(e))
            raise StoreUnavailableError("database", "find", e) from e
        finally:
            session.close()

    def insert(self, record: IdempotencyRecord) -> None:
        session: Session = self.session_factory()
        try:
            if record.created_at is None:
                record.created_at = datetime.now(timezone.utc)

            session.add(record)
            session.commit()
            session.refresh(record)
            session.expunge(record)

            self.logger.info(
                "idempotency_record_stored",
                key=record.key,
                operation=record.operation,
                status_code=record.status_code
            )

        except IntegrityError as e:
            session.rollback()
            self.logger.info("idempotency_record_already_exists", key=record.key, operation=record.operation)
            raise DuplicateRecordError(record.key, record.operation) from e
        except SQLAlchemyError as e:
            session.rollback()
            self.logger.error("idempotency_record_insert_failed", key=record.key, error=str(e))
            raise StoreUnavailableError("database", "insert", e) from e
        finally:
            session.close()

    def delete_older_than(self, age: timedelta) -> int:
        session: Session = self.session_factory()
        try:
            cutoff = datetime.now(timezone.utc) - age

            deleted_count = session.query(IdempotencyRecord).filter(
                IdempotencyRecord.created_at < cutoff
            ).delete(synchronize_session=False)

            session.commit()

            self.logger.info("idempotency_cleanup_complete", deleted_count=deleted_count, cutoff=cutoff.isoformat())
            return deleted_count

        except SQLAlchemyError as e:
            session.rollback()
            self.logger.error("idempotency_cleanup_failed", error=str(e))
            raise StoreUnavailableError("database", "delete_older_than", e) from e
        finally:
            session.close()

    def count_older_than(self, age: timedelta) -> int:
        session: Session = self.session_factory()
        try:
            cutoff = datetime.now(timezone.utc) - age
            return session.query(IdempotencyRecord).filter(
                IdempotencyRecord.created_at < cutoff
            ).count()

        except SQLAlchemyError as e:
            self.logger.error("idempotency_count_failed", error=str(e))
            raise StoreUnavailableError("database", "count_older_than", e) from e
        finally:
            session.close()
