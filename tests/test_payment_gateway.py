"""
Payment Gateway Tests

Tests for adapter routing, validation, outcome policies, fees and refunds.
"""

import asyncio
import random
from decimal import Decimal

import pytest

from conftest import FUTURE_YEAR, USER_ID
from core.exceptions import ConfigurationError
from models.payment_method import PaymentMethod, PaymentType, mask_number
from services.payment_gateway import (
    BankTransferGatewayAdapter,
    CardGatewayAdapter,
    CashOnDeliveryAdapter,
    Decision,
    FixedOutcomePolicy,
    GatewayRegistry,
    MockGatewayAdapter,
    PaymentProvider,
    PayPalGatewayAdapter,
    RandomOutcomePolicy,
    provider_fee,
    supported_currencies,
)

APPROVE = FixedOutcomePolicy(approved=True)


def _card():
    return PaymentMethod.for_card(
        USER_ID, PaymentType.CREDIT_CARD, "Jane Farmer", mask_number("4242424242424242"),
        "Visa", "12", FUTURE_YEAR,
    )


def _paypal():
    return PaymentMethod.for_wallet(USER_ID, PaymentType.PAYPAL, "PayPal", "jane@example.com")


def _bank():
    return PaymentMethod.for_bank(USER_ID, "Farmers Bank", "Jane Farmer", mask_number("000123456789"))


def _authorize(adapter, payment_method, amount="22.23", currency="USD"):
    return asyncio.run(adapter.authorize(payment_method, Decimal(amount), currency, "Order ORD-1001"))


def test_default_registry_routing():
    registry = GatewayRegistry.default(decide=APPROVE, latency=0)

    for payment_type in (PaymentType.CREDIT_CARD, PaymentType.DEBIT_CARD, PaymentType.APPLE_PAY, PaymentType.GOOGLE_PAY):
        assert isinstance(registry.adapter_for(payment_type), CardGatewayAdapter)
    assert isinstance(registry.adapter_for(PaymentType.PAYPAL), PayPalGatewayAdapter)
    assert isinstance(registry.adapter_for(PaymentType.BANK_TRANSFER), BankTransferGatewayAdapter)
    assert isinstance(registry.adapter_for(PaymentType.CASH_ON_DELIVERY), CashOnDeliveryAdapter)


def test_registry_requires_every_type():
    with pytest.raises(ConfigurationError):
        GatewayRegistry({PaymentType.CREDIT_CARD: MockGatewayAdapter()})


def test_card_authorization_success():
    result = _authorize(CardGatewayAdapter(decide=APPROVE, latency=0), _card())

    assert result.success is True
    assert result.provider == PaymentProvider.STRIPE
    assert result.provider_reference.startswith("ch_")
    assert result.transaction_id.startswith("TXN_")
    assert result.processed_amount == Decimal("22.23")
    assert result.message == "Payment successful via Stripe"


def test_card_adapter_rejects_wrong_method():
    result = _authorize(CardGatewayAdapter(decide=APPROVE, latency=0), _paypal())

    assert result.success is False
    assert result.message == "Invalid payment method for Stripe"


def test_wallet_on_card_processor_needs_account():
    wallet = PaymentMethod.for_wallet(USER_ID, PaymentType.APPLE_PAY, "Apple", "")

    result = _authorize(CardGatewayAdapter(decide=APPROVE, latency=0), wallet)

    assert result.success is False


def test_paypal_and_bank_references():
    paypal = _authorize(PayPalGatewayAdapter(decide=APPROVE, latency=0), _paypal())
    bank = _authorize(BankTransferGatewayAdapter(decide=APPROVE, latency=0), _bank())

    assert paypal.provider_reference.startswith("PAYID-")
    assert bank.provider_reference.startswith("pay_")


def test_unsupported_currency():
    result = _authorize(PayPalGatewayAdapter(decide=APPROVE, latency=0), _paypal(), currency="INR")

    assert result.success is False
    assert result.message == "Currency INR not supported by PayPal"


def test_decline_reason_from_policy():
    adapter = CardGatewayAdapter(decide=FixedOutcomePolicy(approved=False, reason="card declined"), latency=0)

    result = _authorize(adapter, _card())

    assert result.success is False
    assert result.message == "card declined"
    assert result.provider_reference is None


def test_plain_bool_policy_uses_default_message():
    adapter = MockGatewayAdapter(decide=lambda payment_method, amount: False)

    result = _authorize(adapter, _card())

    assert result.success is False
    assert result.message == "Mock payment failed - insufficient funds"


def test_cash_on_delivery_always_approves():
    adapter = CashOnDeliveryAdapter()

    results = [_authorize(adapter, PaymentMethod.for_cash_on_delivery(USER_ID)) for _ in range(20)]

    assert all(result.success for result in results)
    assert all(result.provider_reference.startswith("cod_") for result in results)


def test_random_policy_rates():
    policy = RandomOutcomePolicy(large_threshold=Decimal("10000"), large_factor=0.8)

    assert policy.success_rate(_card(), Decimal("100")) == pytest.approx(0.92)
    assert policy.success_rate(_card(), Decimal("20000")) == pytest.approx(0.736)
    assert policy.success_rate(_paypal(), Decimal("100")) == pytest.approx(0.96)
    assert policy.success_rate(_bank(), Decimal("100")) == pytest.approx(0.88)


def test_random_policy_is_deterministic_with_certain_rates():
    always = RandomOutcomePolicy(rng=random.Random(7), rates={PaymentType.CREDIT_CARD: 1.0})
    never = RandomOutcomePolicy(rng=random.Random(7), rates={PaymentType.CREDIT_CARD: 0.0})

    assert always(_card(), Decimal("10")) == Decision(True)
    assert never(_card(), Decimal("10")) == Decision(False)


@pytest.mark.parametrize("provider,fee", [
    (PaymentProvider.STRIPE, Decimal("3.20")),
    (PaymentProvider.PAYPAL, Decimal("3.98")),
    (PaymentProvider.RAZORPAY, Decimal("2.00")),
    (PaymentProvider.CASH_ON_DELIVERY, Decimal("0.00")),
])
def test_provider_fees(provider, fee):
    assert provider_fee(provider, Decimal("100.00")) == fee


def test_supported_currencies():
    assert "INR" in supported_currencies(PaymentProvider.RAZORPAY)
    assert supported_currencies(PaymentProvider.CASH_ON_DELIVERY) == ("USD",)
    assert MockGatewayAdapter().fee(Decimal("100.00")) == Decimal("0.00")


def test_refund():
    adapter = CardGatewayAdapter(decide=APPROVE, latency=0)

    result = asyncio.run(adapter.refund("ch_abc", Decimal("4.99"), "Damaged"))
    missing = asyncio.run(adapter.refund("", Decimal("4.99"), "Damaged"))

    assert result.success is True
    assert result.provider_reference.startswith("rf_")
    assert result.processed_amount == Decimal("4.99")
    assert missing.success is False
