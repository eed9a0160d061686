"""
Payment Method Routes

Handles saved payment methods of a customer: add, list, set default, remove.
Raw card and account numbers are masked before anything is stored.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from typing import Optional

from core.exceptions import PaymentMethodError, ValidationError
from core.logger import get_logger
from api.dependencies import get_payment_method_store
from models.payment_method import PaymentMethod, PaymentType, mask_number
from services.payment_method_store import PaymentMethodStore

logger = get_logger(__name__)

router = APIRouter()


# Request/Response Models
class PaymentMethodCreate(BaseModel):
    """Payment method creation request model."""
    type: str  # credit_card, debit_card, paypal, apple_pay, google_pay, bank_transfer, cash_on_delivery
    is_default: bool = False

    # Cards
    card_holder_name: Optional[str] = None
    card_number: Optional[str] = None  # Raw number, masked before storage
    card_type: Optional[str] = None
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None

    # Wallets
    wallet_provider: Optional[str] = None
    wallet_account_id: Optional[str] = None

    # Bank transfer
    bank_name: Optional[str] = None
    account_holder_name: Optional[str] = None
    account_number: Optional[str] = None  # Raw number, masked before storage

    class Config:
        json_schema_extra = {
            "example": {
                "type": "credit_card",
                "card_holder_name": "Jane Farmer",
                "card_number": "4242424242424242",
                "card_type": "Visa",
                "expiry_month": "12",
                "expiry_year": "2030",
                "is_default": True
            }
        }


def _build_payment_method(user_id: str, data: PaymentMethodCreate) -> PaymentMethod:
    """
    Turn a request into an unsaved PaymentMethod.

    Raises:
        ValidationError: On an unknown type or missing fields
    """
    try:
        payment_type = PaymentType(data.type)
    except ValueError:
        raise ValidationError(f"Unknown payment method type: {data.type}")

    if payment_type.is_card:
        if not (data.card_holder_name and data.card_number and data.card_type
                and data.expiry_month and data.expiry_year):
            raise ValidationError("Card holder, number, type and expiry are required for cards")
        return PaymentMethod.for_card(
            user_id,
            payment_type,
            card_holder_name=data.card_holder_name,
            masked_card_number=mask_number(data.card_number),
            card_type=data.card_type,
            expiry_month=data.expiry_month,
            expiry_year=data.expiry_year,
        )
    if payment_type.is_wallet:
        if not data.wallet_account_id:
            raise ValidationError("wallet_account_id is required for wallets")
        return PaymentMethod.for_wallet(
            user_id,
            payment_type,
            wallet_provider=data.wallet_provider or payment_type.display_name,
            wallet_account_id=data.wallet_account_id,
        )
    if payment_type == PaymentType.BANK_TRANSFER:
        if not (data.bank_name and data.account_holder_name and data.account_number):
            raise ValidationError("Bank name, account holder and account number are required for bank transfers")
        return PaymentMethod.for_bank(
            user_id,
            bank_name=data.bank_name,
            account_holder_name=data.account_holder_name,
            masked_account_number=mask_number(data.account_number),
        )
    return PaymentMethod.for_cash_on_delivery(user_id)


@router.post("/{user_id}/payment-methods", status_code=status.HTTP_201_CREATED)
async def add_payment_method(
    user_id: str,
    data: PaymentMethodCreate,
    store: PaymentMethodStore = Depends(get_payment_method_store)
):
    """
    Save a payment method for a user.

    **Response 201**: The stored payment method (masked)
    **Response 400**: Unknown type or missing fields
    **Response 503**: Storage unavailable
    """
    payment_method = _build_payment_method(user_id, data)
    payment_method.is_default = data.is_default
    saved = store.save(payment_method)
    return saved.to_dict()


@router.get("/{user_id}/payment-methods")
async def list_payment_methods(
    user_id: str,
    store: PaymentMethodStore = Depends(get_payment_method_store)
):
    """List a user's active payment methods, default first."""
    return [payment_method.to_dict() for payment_method in store.find_by_user(user_id)]


@router.put("/{user_id}/payment-methods/{payment_method_id}/default")
async def set_default_payment_method(
    user_id: str,
    payment_method_id: str,
    store: PaymentMethodStore = Depends(get_payment_method_store)
):
    """
    Make a payment method the user's only default.

    **Response 200**: The new default
    **Response 404**: Payment method not found for this user
    """
    try:
        payment_method = store.set_default(user_id, payment_method_id)
    except PaymentMethodError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": str(e),
                "error_code": "payment_method_not_found"
            }
        )
    return payment_method.to_dict()


@router.delete("/{user_id}/payment-methods/{payment_method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_method(
    user_id: str,
    payment_method_id: str,
    store: PaymentMethodStore = Depends(get_payment_method_store)
):
    """
    Remove (soft delete) a payment method.

    **Response 204**: Removed
    **Response 404**: Payment method not found for this user
    """
    payment_method = store.find_by_id(payment_method_id)
    if payment_method is None or payment_method.user_id != user_id or not store.delete(payment_method_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": f"Payment method {payment_method_id} not found",
                "error_code": "payment_method_not_found"
            }
        )
    logger.info(f"User {user_id} removed payment method {payment_method_id}")
