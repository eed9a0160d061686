"""
Payment Method Model

Represents a saved, masked payment method for a marketplace user.
Supports credit/debit cards, digital wallets, bank transfers and cash on delivery.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Text, Enum as SQLEnum, Index
from sqlalchemy.orm import validates
from datetime import datetime, date
from typing import Optional
import enum
import re

from core.database import Base
from core.exceptions import ValidationError
from models.base import generate_uuid, utcnow, format_utc_datetime

# Four digits is the most a masked number may reveal
_UNMASKED_DIGITS = re.compile(r"\d{5,}")


class PaymentType(enum.Enum):
    """Payment method type enumeration."""
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    PAYPAL = "paypal"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"

    @property
    def display_name(self) -> str:
        return _TYPE_DISPLAY_NAMES[self]

    @property
    def is_card(self) -> bool:
        return self in (PaymentType.CREDIT_CARD, PaymentType.DEBIT_CARD)

    @property
    def is_wallet(self) -> bool:
        return self in (PaymentType.PAYPAL, PaymentType.APPLE_PAY, PaymentType.GOOGLE_PAY)


_TYPE_DISPLAY_NAMES = {
    PaymentType.CREDIT_CARD: "Credit Card",
    PaymentType.DEBIT_CARD: "Debit Card",
    PaymentType.PAYPAL: "PayPal",
    PaymentType.APPLE_PAY: "Apple Pay",
    PaymentType.GOOGLE_PAY: "Google Pay",
    PaymentType.BANK_TRANSFER: "Bank Transfer",
    PaymentType.CASH_ON_DELIVERY: "Cash on Delivery",
}

_SECURITY_INFO = {
    PaymentType.CREDIT_CARD: "Card details are encrypted and tokenized",
    PaymentType.DEBIT_CARD: "Card details are encrypted and tokenized",
    PaymentType.PAYPAL: "PayPal handles payment security",
    PaymentType.APPLE_PAY: "Apple Pay uses biometric authentication",
    PaymentType.GOOGLE_PAY: "Google Pay uses tokenized payments",
    PaymentType.BANK_TRANSFER: "Bank transfer details are encrypted",
    PaymentType.CASH_ON_DELIVERY: "Pay when you receive your order",
}


def mask_number(raw: str) -> str:
    """
    Mask a card or account number, keeping only the last four digits.

    Args:
        raw: Raw number, spaces and dashes allowed

    Returns:
        str: Display-safe form such as "•••• 1234"

    Raises:
        ValidationError: If the input holds fewer than four digits
    """
    digits = re.sub(r"\D", "", raw or "")
    if len(digits) < 4:
        raise ValidationError("Number must contain at least 4 digits")
    return f"•••• {digits[-4:]}"


class PaymentMethod(Base):
    """
    Payment method model. Only masked numbers are stored; anything sensitive
    lives in the opaque encrypted_data blob produced by the tokenizer.

    Attributes:
        id: Unique payment method identifier (UUID)
        user_id: Owner of the payment method
        type: Payment type (card, wallet, bank transfer, cash on delivery)
        display_name: Label shown at checkout (e.g. "VISA •••• 1234")
        encrypted_data: Opaque encrypted payload, never returned by to_dict()
        is_default: Whether this is the user's default method
        is_active: False once soft-deleted
        created_at: Creation timestamp
        last_updated: Last modification timestamp
        last_used: Last successful authorization (nullable)
    """

    __tablename__ = "payment_methods"

    __table_args__ = (
        Index('ix_payment_methods_user_active', 'user_id', 'is_active'),
    )

    # Primary Key
    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(String(36), nullable=False, index=True)
    type = Column(SQLEnum(PaymentType), nullable=False)
    display_name = Column(String(100), nullable=False)
    encrypted_data = Column(Text, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    last_updated = Column(DateTime, default=utcnow, nullable=False)
    last_used = Column(DateTime, nullable=True)

    # Card fields
    card_holder_name = Column(String(100), nullable=True)
    masked_card_number = Column(String(20), nullable=True)
    card_type = Column(String(20), nullable=True)  # VISA, MASTERCARD, AMEX, ...
    expiry_month = Column(String(2), nullable=True)
    expiry_year = Column(String(4), nullable=True)

    # Digital wallet fields
    wallet_provider = Column(String(50), nullable=True)
    wallet_account_id = Column(String(100), nullable=True)

    # Bank transfer fields
    bank_name = Column(String(100), nullable=True)
    account_holder_name = Column(String(100), nullable=True)
    masked_account_number = Column(String(20), nullable=True)

    def __repr__(self):
        return f"<PaymentMethod(id={self.id}, type={self.type.value}, is_default={self.is_default})>"

    @validates("masked_card_number", "masked_account_number")
    def _reject_raw_numbers(self, key, value):
        if value is not None and _UNMASKED_DIGITS.search(re.sub(r"\D", "", value)):
            raise ValidationError(f"{key} must be masked, got an unmasked number")
        return value

    @classmethod
    def _new(cls, user_id: str, type: PaymentType, display_name: str, **fields) -> "PaymentMethod":
        if not user_id:
            raise ValidationError("user_id is required")
        now = utcnow()
        return cls(
            id=generate_uuid(),
            user_id=user_id,
            type=type,
            display_name=display_name,
            is_default=False,
            is_active=True,
            created_at=now,
            last_updated=now,
            **fields
        )

    @classmethod
    def for_card(
        cls,
        user_id: str,
        type: PaymentType,
        card_holder_name: str,
        masked_card_number: str,
        card_type: str,
        expiry_month: str,
        expiry_year: str,
        encrypted_data: Optional[str] = None
    ) -> "PaymentMethod":
        """Create a credit or debit card method."""
        if not type.is_card:
            raise ValidationError(f"{type.display_name} is not a card type")
        return cls._new(
            user_id, type, f"{card_type} {masked_card_number}",
            card_holder_name=card_holder_name,
            masked_card_number=masked_card_number,
            card_type=card_type,
            expiry_month=expiry_month,
            expiry_year=expiry_year,
            encrypted_data=encrypted_data,
        )

    @classmethod
    def for_wallet(
        cls,
        user_id: str,
        type: PaymentType,
        wallet_provider: str,
        wallet_account_id: str,
        encrypted_data: Optional[str] = None
    ) -> "PaymentMethod":
        """Create a PayPal, Apple Pay or Google Pay method."""
        if not type.is_wallet:
            raise ValidationError(f"{type.display_name} is not a wallet type")
        return cls._new(
            user_id, type, f"{wallet_provider} Account",
            wallet_provider=wallet_provider,
            wallet_account_id=wallet_account_id,
            encrypted_data=encrypted_data,
        )

    @classmethod
    def for_bank(
        cls,
        user_id: str,
        bank_name: str,
        account_holder_name: str,
        masked_account_number: str,
        encrypted_data: Optional[str] = None
    ) -> "PaymentMethod":
        """Create a bank transfer method."""
        return cls._new(
            user_id, PaymentType.BANK_TRANSFER, f"{bank_name} {masked_account_number}",
            bank_name=bank_name,
            account_holder_name=account_holder_name,
            masked_account_number=masked_account_number,
            encrypted_data=encrypted_data,
        )

    @classmethod
    def for_cash_on_delivery(cls, user_id: str) -> "PaymentMethod":
        """Create a cash-on-delivery method."""
        return cls._new(user_id, PaymentType.CASH_ON_DELIVERY, PaymentType.CASH_ON_DELIVERY.display_name)

    def touch(self) -> None:
        """Stamp last_updated after an explicit edit."""
        self.last_updated = utcnow()

    def mark_as_used(self, when: Optional[datetime] = None) -> None:
        """Record a successful authorization."""
        now = when or utcnow()
        self.last_used = now
        self.last_updated = now

    def is_expired(self, today: Optional[date] = None) -> bool:
        """
        Check card expiry. Non-card types never expire; a missing or
        unparseable expiry is treated as not expired.

        Args:
            today: Reference date (defaults to the current UTC date)

        Returns:
            bool: True when the expiry month/year is in the past
        """
        if not self.type or not self.type.is_card:
            return False
        if not self.expiry_month or not self.expiry_year:
            return False
        try:
            exp_month = int(self.expiry_month)
            exp_year = int(self.expiry_year)
        except ValueError:
            return False
        today = today or utcnow().date()
        return exp_year < today.year or (exp_year == today.year and exp_month < today.month)

    @property
    def formatted_expiry(self) -> Optional[str]:
        if self.expiry_month and self.expiry_year:
            return f"{self.expiry_month}/{self.expiry_year}"
        return None

    @property
    def security_info(self) -> str:
        return _SECURITY_INFO.get(self.type, "Payment details are securely stored")

    def to_dict(self):
        """
        Convert payment method to dictionary.

        Never includes encrypted_data.

        Returns:
            dict: Payment method data
        """
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "type_display": self.type.display_name,
            "display_name": self.display_name,
            "is_default": self.is_default,
            "is_active": self.is_active,
            "is_expired": self.is_expired(),
            "card_holder_name": self.card_holder_name,
            "masked_card_number": self.masked_card_number,
            "card_type": self.card_type,
            "expiry": self.formatted_expiry,
            "wallet_provider": self.wallet_provider,
            "wallet_account_id": self.wallet_account_id,
            "bank_name": self.bank_name,
            "account_holder_name": self.account_holder_name,
            "masked_account_number": self.masked_account_number,
            "security_info": self.security_info,
            "created_at": format_utc_datetime(self.created_at),
            "last_updated": format_utc_datetime(self.last_updated),
            "last_used": format_utc_datetime(self.last_used),
        }
