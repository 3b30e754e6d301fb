"""
Payment Capture Actor
Dramatiq actor capturing a payment at most once per payment, with retry on transient failures
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import dramatiq
import structlog

from app.middleware.correlation_id import correlation_context
from app.services.monitoring import idempotency_log_context, set_job_context

logger = structlog.get_logger()


def should_retry(retries_so_far: int, exception: Exception) -> bool:
    """
    Determine if a failed capture should be retried based on exception type.

    Retryable exceptions (transient failures):
    - ConnectionError, TimeoutError
    - OperationalError (from sqlalchemy - database connection issues)
    - StoreUnavailableError (idempotency cache/store down, fail-closed)

    Non-retryable exceptions (permanent failures):
    - ValueError, KeyError (bad input, payment missing)
    - InvalidKeyError (job key missing or malformed, same on every delivery)

    Args:
        retries_so_far: Number of retries attempted so far
        exception: The exception that was raised

    Returns:
        True if should retry (and haven't exceeded max retries), False otherwise
    """
    # Lazy import to avoid import-time dependencies
    from sqlalchemy.exc import OperationalError
    from app.services.idempotency import InvalidKeyError, StoreUnavailableError

    retryable_types = (
        ConnectionError,
        TimeoutError,
        OperationalError,
        StoreUnavailableError,
    )

    # Permanent failures - do not retry
    if isinstance(exception, (ValueError, KeyError, InvalidKeyError)):
        logger.info("non_retryable_exception",
                    exception_type=type(exception).__name__,
                    retries=retries_so_far)
        return False

    # Transient failures - retry up to max
    if isinstance(exception, retryable_types):
        should_retry_flag = retries_so_far < 5
        logger.info("retryable_exception",
                    exception_type=type(exception).__name__,
                    retries=retries_so_far,
                    will_retry=should_retry_flag)
        return should_retry_flag

    # Unknown exception - retry to be safe
    logger.warning("unknown_exception_type",
                   exception_type=type(exception).__name__,
                   retries=retries_so_far)
    return retries_so_far < 5


@dataclass
class CapturePaymentJob:
    """
    Capture of one payment. Implements HasIdempotencyKey: one capture per payment id.
    """
    payment_id: str
    amount: int
    session_factory: Optional[Callable] = field(default=None, compare=False, repr=False)

    def idempotency_key(self) -> Optional[str]:
        return f"capture:{self.payment_id}"

    def handle(self) -> dict:
        """
        Mark the payment captured.

        Raises:
            ValueError: payment missing or amount differs (permanent)
        """
        from app.models.payment import Payment

        session_factory = self.session_factory
        if session_factory is None:
            from app.database import SessionLocal
            session_factory = SessionLocal

        db = session_factory()
        try:
            payment = db.query(Payment).filter(Payment.id == self.payment_id).first()
            if payment is None:
                raise ValueError(f"Payment {self.payment_id} not found")
            if payment.amount != self.amount:
                raise ValueError(
                    f"Capture amount {self.amount} does not match payment amount {payment.amount}"
                )

            payment.status = "captured"
            payment.captured_at = datetime.now(timezone.utc)
            db.commit()

            logger.info("payment_captured", payment_id=self.payment_id, amount=self.amount)
            return {"payment_id": self.payment_id, "status": payment.status}

        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


@dramatiq.actor(
    max_retries=5,
    min_backoff=15000,  # 15 seconds
    max_backoff=300000,  # 5 minutes
    retry_when=should_retry,
    queue_name="payment_capture"
)
def capture_payment(payment_id: str, amount: int, correlation_id: Optional[str] = None) -> None:
    """
    Capture a payment asynchronously, at most once.

    A redelivered or re-dispatched message for an already captured payment is
    skipped. A failed capture leaves no completion marker, so Dramatiq's retry
    re-executes it.

    Args:
        payment_id: Payment.id to capture
        amount: Expected amount in minor units
        correlation_id: Request correlation ID (async context is lost in workers)

    Raises:
        Re-raises capture failures to trigger Dramatiq retry logic
    """
    # Lazy import to avoid circular dependencies and import-time side effects
    from app.services.idempotency import get_coordinator

    with correlation_context(correlation_id):
        log = logger.bind(payment_id=payment_id)
        log.info("capture_payment_start", amount=amount)

        job = CapturePaymentJob(payment_id=payment_id, amount=amount)
        job_type = type(job).__name__
        set_job_context(job_type, job.idempotency_key(), correlation_id)
        with idempotency_log_context(job.idempotency_key(), "capture_payment", job_type=job_type):
            outcome = get_coordinator().run_keyed_job(job, job.handle)

        log.info("capture_payment_finished", outcome=outcome.kind.value, reason=outcome.reason)
