"""
Database Models
"""

from app.models.idempotency_record import IdempotencyRecord
from app.models.payment import Payment

__all__ = [
    "IdempotencyRecord",
    "Payment",
]
