"""
Database Models Package

Contains all SQLAlchemy models for the payment core.
"""

from models.payment_method import PaymentMethod, PaymentType, mask_number
from models.transaction import (
    Transaction,
    TransactionItem,
    TransactionStatus,
    TransactionType,
    FailureKind,
    ALLOWED_TRANSITIONS,
)
from models.base import generate_uuid, utcnow, to_money, TimestampMixin

__all__ = [
    "PaymentMethod",
    "PaymentType",
    "mask_number",
    "Transaction",
    "TransactionItem",
    "TransactionStatus",
    "TransactionType",
    "FailureKind",
    "ALLOWED_TRANSITIONS",
    "generate_uuid",
    "utcnow",
    "to_money",
    "TimestampMixin",
]
