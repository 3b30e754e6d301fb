"""
Pydantic schemas for the payments API
"""

from pydantic import BaseModel, Field
from typing import Optional


class PaymentCreate(BaseModel):
    """
    Request body for creating a payment
    """
    amount: int = Field(..., ge=1, description="Amount in minor units (cents)")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217 currency code")
    customer_id: str = Field(..., min_length=1, max_length=255, description="Customer reference")
    description: Optional[str] = Field(None, max_length=255, description="Free-text description")


class RefundCreate(BaseModel):
    """
    Request body for refunding a payment. Omitted amount refunds the remainder.
    """
    amount: Optional[int] = Field(None, ge=1, description="Refund amount in minor units")
    reason: Optional[str] = Field(None, max_length=255, description="Refund reason")


class PaymentResponse(BaseModel):
    """
    Payment as returned by the API
    """
    id: str
    amount: int
    currency: str
    customer_id: str
    description: Optional[str] = None
    status: str
    refunded_amount: int = 0
    created_at: Optional[str] = None


class RefundResponse(BaseModel):
    """
    Refund confirmation
    """
    id: str
    payment_id: str
    amount: int
    reason: Optional[str] = None
    status: str
    payment_status: str
