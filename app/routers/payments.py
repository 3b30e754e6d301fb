"""
Payments API Router
Sample write endpoints protected by IdempotencyMiddleware
"""

import secrets
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import structlog

from app.database import get_db
from app.middleware.correlation_id import get_correlation_id
from app.models.payment import Payment
from app.models.payment_schemas import PaymentCreate, PaymentResponse, RefundCreate, RefundResponse

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


def _to_response(payment: Payment) -> PaymentResponse:
    created_at = payment.created_at or datetime.now(timezone.utc)
    return PaymentResponse(
        id=payment.id,
        amount=payment.amount,
        currency=payment.currency,
        customer_id=payment.customer_id,
        description=payment.description,
        status=payment.status,
        refunded_amount=payment.refunded_amount or 0,
        created_at=created_at.isoformat(),
    )


@router.post("", status_code=201, response_model=PaymentResponse)
async def create_payment(
    payment_in: PaymentCreate,
    db: Session = Depends(get_db)
):
    """
    Create a payment and dispatch its asynchronous capture

    Requires an Idempotency-Key header (enforced by middleware). Retries with
    the same key replay this response instead of creating a second payment.

    Returns:
        The created payment (201)

    Raises:
        503: Database not configured
    """
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")

    payment = Payment(
        id=f"pay_{secrets.token_hex(12)}",
        amount=payment_in.amount,
        currency=payment_in.currency.upper(),
        customer_id=payment_in.customer_id,
        description=payment_in.description,
        status="pending",
        refunded_amount=0,
        created_at=datetime.now(timezone.utc),
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    logger.info("payment_created", payment_id=payment.id, amount=payment.amount, currency=payment.currency)

    # Enqueue capture (idempotent per payment id)
    try:
        from app.actors.payment_capture import capture_payment
        capture_payment.send(payment.id, payment.amount, correlation_id=get_correlation_id())
    except Exception as e:
        # Payment row exists; capture can be re-dispatched, do not fail the request
        logger.error("payment_capture_enqueue_failed", payment_id=payment.id, error=str(e))

    return _to_response(payment)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    db: Session = Depends(get_db)
):
    """
    Get a single payment

    Raises:
        404: Payment not found
    """
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")

    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    return _to_response(payment)


@router.post("/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: str,
    refund_in: RefundCreate,
    db: Session = Depends(get_db)
):
    """
    Refund a payment fully or partially

    Args:
        payment_id: Payment ID
        refund_in: Optional amount (defaults to the unrefunded remainder) and reason

    Returns:
        Refund confirmation

    Raises:
        404: Payment not found
        422: Refund amount exceeds the refundable remainder
    """
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")

    payment = db.query(Payment).filter(Payment.id == payment_id).first()
    if not payment:
        raise HTTPException(status_code=404, detail="Payment not found")

    refundable = payment.amount - (payment.refunded_amount or 0)
    refund_amount = refund_in.amount if refund_in.amount is not None else refundable

    if refund_amount <= 0 or refund_amount > refundable:
        raise HTTPException(
            status_code=422,
            detail="Refund amount cannot exceed payment amount"
        )

    payment.refunded_amount = (payment.refunded_amount or 0) + refund_amount
    payment.status = "refunded" if payment.refunded_amount == payment.amount else "partially_refunded"
    db.commit()

    logger.info(
        "payment_refunded",
        payment_id=payment.id,
        refund_amount=refund_amount,
        payment_status=payment.status
    )

    return RefundResponse(
        id=f"re_{secrets.token_hex(12)}",
        payment_id=payment.id,
        amount=refund_amount,
        reason=refund_in.reason,
        status="succeeded",
        payment_status=payment.status,
    )
