"""
Transaction Model

Represents a checkout payment transaction, its line items and the status
state machine that the transaction engine drives.
"""

from sqlalchemy import Column, String, Integer, Numeric, DateTime, Text, ForeignKey, Enum as SQLEnum, CheckConstraint, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Sequence
import enum

from core.config import get_settings
from core.database import Base
from core.exceptions import ValidationError, InvalidTransitionError
from models.base import generate_uuid, utcnow, to_money, format_utc_datetime, TimestampMixin

settings = get_settings()

DEFAULT_MAX_RETRIES = 3
STALE_AFTER = timedelta(minutes=30)


class TransactionType(enum.Enum):
    """Transaction type enumeration."""
    PURCHASE = "purchase"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"
    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    VOID = "void"


class TransactionStatus(enum.Enum):
    """Transaction status enumeration."""
    PENDING = "pending"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    DISPUTED = "disputed"
    EXPIRED = "expired"

    def is_successful(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.AUTHORIZED)

    def is_final(self) -> bool:
        return self in (
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
            TransactionStatus.REFUNDED,
            TransactionStatus.EXPIRED,
        )


class FailureKind(enum.Enum):
    """Why a transaction ended up FAILED; decides whether retry is allowed."""
    PAYMENT_METHOD = "payment_method"
    GATEWAY = "gateway"
    TIMEOUT = "timeout"
    SYSTEM = "system"


# FAILED -> PROCESSING is only taken through the retry rule (see can_be_retried).
# PARTIALLY_REFUNDED -> REFUNDED is a model-level edge for settling the balance
# outside the engine; TransactionEngine.refund() only starts from COMPLETED.
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: {
        TransactionStatus.PROCESSING,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
        TransactionStatus.EXPIRED,
    },
    TransactionStatus.PROCESSING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.AUTHORIZED,
        TransactionStatus.FAILED,
    },
    TransactionStatus.AUTHORIZED: {TransactionStatus.COMPLETED, TransactionStatus.CANCELLED},
    TransactionStatus.FAILED: {TransactionStatus.PROCESSING},
    TransactionStatus.COMPLETED: {
        TransactionStatus.REFUNDED,
        TransactionStatus.PARTIALLY_REFUNDED,
        TransactionStatus.DISPUTED,
    },
    TransactionStatus.PARTIALLY_REFUNDED: {TransactionStatus.REFUNDED},
}


class TransactionItem(Base):
    """
    Line item of a transaction. Owned by its transaction.

    Attributes:
        id: Unique item identifier (UUID)
        transaction_id: Foreign key to Transaction
        position: Order of the line in the cart
        product_id: Catalog product id (nullable for ad-hoc lines)
        product_name: Product name at the time of purchase
        quantity: Units bought (> 0)
        unit_price: Price per unit (>= 0)
        total_price: quantity * unit_price
        category: Product category
    """

    __tablename__ = "transaction_items"

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_item_quantity_positive'),
        CheckConstraint('unit_price >= 0', name='check_item_unit_price_non_negative'),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    transaction_id = Column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String(36), nullable=True)
    product_name = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    category = Column(String(50), nullable=True)

    transaction = relationship("Transaction", back_populates="items")

    @classmethod
    def create(
        cls,
        product_name: str,
        unit_price,
        quantity: int,
        product_id: Optional[str] = None,
        category: Optional[str] = None
    ) -> "TransactionItem":
        """
        Create a line item, validating quantity and price.

        Raises:
            ValidationError: On empty name, non-positive quantity or negative price
        """
        if not product_name:
            raise ValidationError("product_name is required")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValidationError(f"quantity must be a positive integer, got {quantity!r}")
        try:
            price = to_money(unit_price)
        except (ArithmeticError, ValueError, TypeError):
            raise ValidationError(f"unit_price is not a number: {unit_price!r}")
        if price < 0:
            raise ValidationError(f"unit_price must not be negative, got {price}")
        return cls(
            id=generate_uuid(),
            product_id=product_id,
            product_name=product_name,
            quantity=quantity,
            unit_price=price,
            total_price=to_money(price * quantity),
            category=category,
        )

    def to_dict(self):
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "total_price": str(self.total_price),
            "category": self.category,
        }


class Transaction(Base, TimestampMixin):
    """
    Transaction model for checkout payments.

    total_amount is derived: amount + tax_amount + shipping_amount - discount_amount.
    Status changes go through transition_to() so the state machine in
    ALLOWED_TRANSITIONS is the only way forward.

    Attributes:
        id: Unique transaction identifier (UUID)
        order_id: Order this payment belongs to
        user_id: Paying customer
        payment_method_id: Saved payment method used
        type: Transaction type (purchase, refund, ...)
        status: Current status
        amount: Subtotal of the items
        tax_amount, shipping_amount, discount_amount: Components of the total
        total_amount: Amount charged
        processor_transaction_id: Provider reference of the authorization
        failure_reason: Human readable reason when FAILED
        failure_kind: Category of the failure (payment_method, gateway, ...)
        retry_count: Retries performed so far

    Relationships:
        items: Line items, in cart order
    """

    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint('total_amount >= 0', name='check_transaction_total_non_negative'),
        CheckConstraint('retry_count >= 0', name='check_transaction_retry_count_non_negative'),
        Index('ix_transactions_user_created', 'user_id', 'created_at'),
    )

    # Primary Key
    id = Column(String(36), primary_key=True, default=generate_uuid)

    order_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    payment_method_id = Column(String(36), nullable=True)
    type = Column(SQLEnum(TransactionType), nullable=False, default=TransactionType.PURCHASE)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING, index=True)

    # Amounts
    amount = Column(Numeric(10, 2), nullable=False)
    tax_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    shipping_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    discount_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default=lambda: settings.DEFAULT_CURRENCY)
    description = Column(Text, nullable=True)

    # Processing
    processed_at = Column(DateTime, nullable=True)
    processor_transaction_id = Column(String(100), nullable=True)
    processor_response = Column(Text, nullable=True)
    processor_name = Column(String(100), nullable=True)
    authorization_code = Column(String(50), nullable=True)
    authorization_time = Column(DateTime, nullable=True)
    card_last4 = Column(String(4), nullable=True)
    card_type = Column(String(20), nullable=True)
    failure_reason = Column(Text, nullable=True)
    failure_kind = Column(SQLEnum(FailureKind), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    # Refunds
    refund_reason = Column(Text, nullable=True)
    refund_transaction_id = Column(String(100), nullable=True)
    refunded_amount = Column(Numeric(10, 2), nullable=True)

    items = relationship(
        "TransactionItem",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionItem.position",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<Transaction(id={self.id}, order_id={self.order_id}, status={self.status.value}, total={self.total_amount})>"

    @classmethod
    def from_cart(
        cls,
        order_id: str,
        user_id: str,
        payment_method_id: Optional[str],
        lines: Iterable[Sequence],
        currency: Optional[str] = None,
        discount=None,
        description: Optional[str] = None
    ) -> "Transaction":
        """
        Build an unpersisted PENDING purchase from cart lines.

        Args:
            order_id: Order identifier
            user_id: Paying customer
            payment_method_id: Saved payment method to charge
            lines: (product_name, unit_price, quantity[, product_id]) tuples
            currency: ISO currency code (defaults to DEFAULT_CURRENCY)
            discount: Discount applied to the order (defaults to zero)
            description: Free-form description

        Returns:
            Transaction: New transaction with subtotal and total set

        Raises:
            ValidationError: On malformed lines or missing identifiers
        """
        if not order_id or not user_id:
            raise ValidationError("order_id and user_id are required")

        items = []
        for position, line in enumerate(lines):
            if not isinstance(line, (tuple, list)) or len(line) not in (3, 4):
                raise ValidationError(f"Cart line {position} must be (name, unit_price, quantity[, product_id])")
            product_id = line[3] if len(line) == 4 else None
            item = TransactionItem.create(line[0], line[1], line[2], product_id=product_id)
            item.position = position
            items.append(item)
        if not items:
            raise ValidationError("Cannot build a transaction from an empty cart")

        now = utcnow()
        subtotal = to_money(sum((item.total_price for item in items), Decimal("0")))
        transaction = cls(
            id=generate_uuid(),
            order_id=order_id,
            user_id=user_id,
            payment_method_id=payment_method_id,
            type=TransactionType.PURCHASE,
            status=TransactionStatus.PENDING,
            amount=subtotal,
            tax_amount=Decimal("0.00"),
            shipping_amount=Decimal("0.00"),
            discount_amount=to_money(discount),
            total_amount=subtotal,
            currency=(currency or settings.DEFAULT_CURRENCY).upper(),
            description=description,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        transaction.items = items
        transaction.recalculate_total()
        return transaction

    def recalculate_total(self) -> Decimal:
        """
        Recompute total_amount from its components.

        Raises:
            ValidationError: If the discount would make the total negative
        """
        total = (
            to_money(self.amount)
            + to_money(self.tax_amount)
            + to_money(self.shipping_amount)
            - to_money(self.discount_amount)
        )
        if total < 0:
            raise ValidationError(f"Discount {self.discount_amount} exceeds the order total")
        self.total_amount = to_money(total)
        self.updated_at = utcnow()
        return self.total_amount

    def apply_amounts(self, tax=None, shipping=None, discount=None) -> None:
        """Set any of tax/shipping/discount and recompute the total."""
        previous = (self.tax_amount, self.shipping_amount, self.discount_amount)
        if tax is not None:
            self.tax_amount = to_money(tax)
        if shipping is not None:
            self.shipping_amount = to_money(shipping)
        if discount is not None:
            self.discount_amount = to_money(discount)
        try:
            self.recalculate_total()
        except ValidationError:
            self.tax_amount, self.shipping_amount, self.discount_amount = previous
            raise

    def can_transition_to(self, target: TransactionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.status, set())

    def transition_to(self, target: TransactionStatus) -> None:
        """
        Move to a new status.

        Raises:
            InvalidTransitionError: If the state machine forbids the move
        """
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.status.value, target.value)
        now = utcnow()
        if target.is_successful():
            self.processed_at = now
        self.updated_at = now
        self.status = target

    def start_processing(self) -> None:
        """PENDING (or a retried FAILED) -> PROCESSING; clears the previous failure."""
        self.transition_to(TransactionStatus.PROCESSING)
        self.failure_reason = None
        self.failure_kind = None

    def mark_completed(
        self,
        processor_transaction_id: str,
        processor_name: str,
        authorization_code: str,
        processor_response: str = "SUCCESS",
        card_last4: Optional[str] = None,
        card_type: Optional[str] = None
    ) -> None:
        """Record a successful authorization. Status is assigned last."""
        if not self.can_transition_to(TransactionStatus.COMPLETED):
            raise InvalidTransitionError(self.status.value, TransactionStatus.COMPLETED.value)
        now = utcnow()
        self.processor_transaction_id = processor_transaction_id
        self.processor_name = processor_name
        self.authorization_code = authorization_code
        self.authorization_time = now
        self.processor_response = processor_response
        self.card_last4 = card_last4
        self.card_type = card_type
        self.transition_to(TransactionStatus.COMPLETED)

    def mark_failed(self, reason: str, kind: FailureKind = FailureKind.GATEWAY) -> None:
        """Record a failure. Status is assigned last."""
        if not self.can_transition_to(TransactionStatus.FAILED):
            raise InvalidTransitionError(self.status.value, TransactionStatus.FAILED.value)
        self.failure_reason = reason
        self.failure_kind = kind
        self.transition_to(TransactionStatus.FAILED)

    def mark_refunded(self, refund_reference: str, reason: str, refunded_amount: Decimal) -> None:
        """Record a full or partial refund against a completed purchase."""
        refunded_amount = to_money(refunded_amount)
        target = (
            TransactionStatus.REFUNDED
            if refunded_amount >= to_money(self.total_amount)
            else TransactionStatus.PARTIALLY_REFUNDED
        )
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self.status.value, target.value)
        self.refund_transaction_id = refund_reference
        self.refund_reason = reason
        self.refunded_amount = refunded_amount
        self.transition_to(target)

    def increment_retry_count(self) -> None:
        self.retry_count = (self.retry_count or 0) + 1
        self.updated_at = utcnow()

    def can_be_retried(self, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
        """FAILED, retries left, and not a payment-method failure."""
        return (
            self.status == TransactionStatus.FAILED
            and (self.retry_count or 0) < max_retries
            and self.failure_kind != FailureKind.PAYMENT_METHOD
        )

    def can_be_refunded(self) -> bool:
        return (
            self.status == TransactionStatus.COMPLETED
            and self.type == TransactionType.PURCHASE
            and self.refund_transaction_id is None
        )

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """PENDING/PROCESSING transactions older than 30 minutes are considered abandoned."""
        if self.status not in (TransactionStatus.PENDING, TransactionStatus.PROCESSING):
            return False
        return (now or utcnow()) > self.created_at + STALE_AFTER

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def formatted_amount(self) -> str:
        return f"${to_money(self.total_amount):.2f} {self.currency}"

    @property
    def summary(self) -> str:
        return f"{self.type.value.replace('_', ' ').title()} - {self.formatted_amount} ({self.item_count} items) - {self.status.value}"

    def to_dict(self):
        """
        Convert transaction to dictionary.

        Returns:
            dict: Transaction data with amounts as decimal strings
        """
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "payment_method_id": self.payment_method_id,
            "type": self.type.value,
            "status": self.status.value,
            "amount": str(to_money(self.amount)),
            "tax_amount": str(to_money(self.tax_amount)),
            "shipping_amount": str(to_money(self.shipping_amount)),
            "discount_amount": str(to_money(self.discount_amount)),
            "total_amount": str(to_money(self.total_amount)),
            "formatted_amount": self.formatted_amount,
            "currency": self.currency,
            "description": self.description,
            "items": [item.to_dict() for item in self.items],
            "processor_transaction_id": self.processor_transaction_id,
            "processor_name": self.processor_name,
            "authorization_code": self.authorization_code,
            "card_last4": self.card_last4,
            "card_type": self.card_type,
            "failure_reason": self.failure_reason,
            "retry_count": self.retry_count,
            "refund_reason": self.refund_reason,
            "refund_transaction_id": self.refund_transaction_id,
            "refunded_amount": str(to_money(self.refunded_amount)) if self.refunded_amount is not None else None,
            "created_at": format_utc_datetime(self.created_at),
            "updated_at": format_utc_datetime(self.updated_at),
            "processed_at": format_utc_datetime(self.processed_at),
        }
