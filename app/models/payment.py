"""
Payment Model
Sample write-side resource protected by the idempotency middleware
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from app.database import Base


class Payment(Base):
    """
    A payment created through the public API.

    Capture happens asynchronously in the capture_payment actor.
    """
    __tablename__ = "payments"

    # Primary Key
    id = Column(String(32), primary_key=True)
    # 'pay_' + 24 random characters

    # Money
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    refunded_amount = Column(Integer, default=0, nullable=False)

    customer_id = Column(String(255), nullable=False, index=True)
    description = Column(String(255), nullable=True)

    # Status: pending -> captured -> (partially_)refunded
    status = Column(String(50), default="pending", nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    captured_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Payment(id='{self.id}', amount={self.amount}, currency='{self.currency}', status='{self.status}')>"
