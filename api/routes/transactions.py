"""
Transaction Routes

Checkout quotes, payment processing, retry and refund.
Processing runs on the engine's worker pool; handlers await the result.
"""

from decimal import Decimal
from typing import List, Optional
import asyncio

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from core.logger import get_logger
from api.dependencies import get_transaction_engine
from models.transaction import Transaction
from services.transaction_engine import TransactionEngine

logger = get_logger(__name__)

router = APIRouter()


# Request/Response Models
class QuoteRequest(BaseModel):
    """Checkout quote request model."""
    subtotal: Decimal
    express_shipping: bool = False
    discount: Decimal = Decimal("0.00")

    class Config:
        json_schema_extra = {
            "example": {
                "subtotal": "14.97",
                "express_shipping": False,
                "discount": "0.00"
            }
        }


class CartLine(BaseModel):
    """A cart line as sent by the storefront."""
    product_name: str
    unit_price: Decimal
    quantity: int
    product_id: Optional[str] = None
    category: Optional[str] = None


class TransactionCreate(BaseModel):
    """Checkout request model."""
    order_id: str
    user_id: str
    payment_method_id: str
    items: List[CartLine] = Field(default_factory=list)
    currency: Optional[str] = None  # Defaults to DEFAULT_CURRENCY
    discount: Decimal = Decimal("0.00")
    express_shipping: bool = False
    description: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "order_id": "ORD-1001",
                "user_id": "u-1",
                "payment_method_id": "pm-1",
                "items": [
                    {"product_name": "Tomatoes", "unit_price": "4.99", "quantity": 3, "category": "Vegetables"}
                ],
                "currency": "USD"
            }
        }


class RefundRequest(BaseModel):
    """Refund request model."""
    reason: str
    amount: Optional[Decimal] = None  # Defaults to the full total


def _get_or_404(engine: TransactionEngine, transaction_id: str) -> Transaction:
    transaction = engine.get_transaction(transaction_id)
    if transaction is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": f"Transaction {transaction_id} not found",
                "error_code": "transaction_not_found"
            }
        )
    return transaction


@router.post("/checkout/quote")
async def quote_checkout(
    data: QuoteRequest,
    engine: TransactionEngine = Depends(get_transaction_engine)
):
    """
    Compute tax, shipping and total for a subtotal without creating anything.

    **Response 200**: subtotal, tax, shipping, discount, total (decimal strings)
    **Response 400**: Negative amounts or a discount above the total
    """
    breakdown = engine.quote(data.subtotal, data.express_shipping, data.discount)
    return {key: str(value) for key, value in breakdown.items()}


@router.post("/transactions", status_code=status.HTTP_201_CREATED)
async def create_transaction(
    data: TransactionCreate,
    engine: TransactionEngine = Depends(get_transaction_engine)
):
    """
    Build a transaction from the cart, calculate amounts and process the payment.

    Declines and invalid payment methods are not errors: the transaction is
    returned with status "failed" and a failure_reason.

    **Response 201**: The processed transaction
    **Response 400**: Malformed cart
    **Response 503**: Storage unavailable
    """
    transaction = Transaction.from_cart(
        order_id=data.order_id,
        user_id=data.user_id,
        payment_method_id=data.payment_method_id,
        lines=[(line.product_name, line.unit_price, line.quantity, line.product_id) for line in data.items],
        currency=data.currency,
        discount=data.discount,
        description=data.description,
    )
    for item, line in zip(transaction.items, data.items):
        item.category = line.category

    engine.calculate_amounts(transaction, express_shipping=data.express_shipping)
    processed = await asyncio.wrap_future(engine.process(transaction))
    return processed.to_dict()


@router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    engine: TransactionEngine = Depends(get_transaction_engine)
):
    """Get a transaction with its items."""
    return _get_or_404(engine, transaction_id).to_dict()


@router.get("/users/{user_id}/transactions")
async def list_user_transactions(
    user_id: str,
    engine: TransactionEngine = Depends(get_transaction_engine)
):
    """List a user's transactions, newest first."""
    return [transaction.to_dict() for transaction in engine.list_transactions(user_id)]


@router.post("/transactions/{transaction_id}/retry")
async def retry_transaction(
    transaction_id: str,
    engine: TransactionEngine = Depends(get_transaction_engine)
):
    """
    Retry a failed transaction.

    **Response 200**: The transaction after the new attempt
    **Response 404**: Unknown transaction
    **Response 409**: Not retryable or retries used up
    """
    transaction = _get_or_404(engine, transaction_id)
    retried = await asyncio.wrap_future(engine.retry(transaction))
    return retried.to_dict()


@router.post("/transactions/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: str,
    data: RefundRequest,
    engine: TransactionEngine = Depends(get_transaction_engine)
):
    """
    Refund a completed purchase, fully or partially.

    **Response 200**: The refunded transaction
    **Response 400**: Refund amount out of range
    **Response 404**: Unknown transaction
    **Response 409**: Transaction cannot be refunded
    **Response 502**: Provider refused the refund
    """
    transaction = _get_or_404(engine, transaction_id)
    refunded = await asyncio.wrap_future(engine.refund(transaction, data.reason, data.amount))
    return refunded.to_dict()
