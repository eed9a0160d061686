"""
Base utilities for database models.

Centralized functions and mixins used across all models.
"""

import uuid
from sqlalchemy import Column, DateTime
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

CENTS = Decimal("0.01")


def generate_uuid() -> str:
    """
    Generate a UUID string.

    Returns:
        str: UUID string
    """
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """
    Normalize a monetary value to a two-decimal Decimal.

    Floats go through str() so 4.99 stays 4.99 instead of its binary expansion.
    Rounding is half-up, the rule used for tax.

    Args:
        value: Amount in any numeric form (None is treated as zero)

    Returns:
        Decimal: Amount quantized to cents
    """
    if value is None:
        return Decimal("0.00")
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def format_utc_datetime(dt: Optional[datetime]) -> Optional[str]:
    """
    Format a UTC datetime to ISO format with 'Z' suffix.

    Args:
        dt: Datetime object (assumed to be UTC)

    Returns:
        ISO format string with 'Z' suffix (e.g., "2025-11-15T09:33:00Z") or None
    """
    if dt is None:
        return None
    iso_str = dt.isoformat()
    # Only append 'Z' if it doesn't already have timezone info
    if not iso_str.endswith('Z') and '+' not in iso_str and iso_str.count('-') <= 2:
        return iso_str + 'Z'
    return iso_str


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
