"""
Payment Gateway Adapters

Provider adapters that authorize and refund charges against a saved
payment method:
- Card processor (Stripe-like): credit/debit cards, Apple Pay, Google Pay
- PayPal
- Bank transfer (Razorpay-like)
- Cash on delivery (always approved)
- Mock (tests and demos)

Whether an authorization is approved is decided by an injectable outcome
policy. Production wiring uses RandomOutcomePolicy (simulated providers);
tests inject FixedOutcomePolicy or any callable.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
import asyncio
import enum
import random
import secrets
import time

from core.config import get_settings
from core.exceptions import ConfigurationError
from core.logger import get_logger
from models.base import to_money
from models.payment_method import PaymentMethod, PaymentType

settings = get_settings()
logger = get_logger(__name__)


class PaymentProvider(enum.Enum):
    """Payment provider enumeration."""
    STRIPE = "stripe"
    PAYPAL = "paypal"
    RAZORPAY = "razorpay"
    CASH_ON_DELIVERY = "cash_on_delivery"
    MOCK = "mock"


SUPPORTED_CURRENCIES: Dict[PaymentProvider, Tuple[str, ...]] = {
    PaymentProvider.STRIPE: ("USD", "EUR", "GBP", "CAD", "AUD", "JPY", "INR"),
    PaymentProvider.PAYPAL: ("USD", "EUR", "GBP", "CAD", "AUD", "JPY"),
    PaymentProvider.RAZORPAY: ("INR", "USD"),
    PaymentProvider.CASH_ON_DELIVERY: ("USD",),
    PaymentProvider.MOCK: ("USD",),
}

# (percentage, fixed) per provider
PROVIDER_FEES: Dict[PaymentProvider, Tuple[Decimal, Decimal]] = {
    PaymentProvider.STRIPE: (Decimal("0.029"), Decimal("0.30")),
    PaymentProvider.PAYPAL: (Decimal("0.0349"), Decimal("0.49")),
    PaymentProvider.RAZORPAY: (Decimal("0.02"), Decimal("0.00")),
}


def supported_currencies(provider: PaymentProvider) -> Tuple[str, ...]:
    """Currencies a provider accepts."""
    return SUPPORTED_CURRENCIES.get(provider, ("USD",))


def provider_fee(provider: PaymentProvider, amount) -> Decimal:
    """
    Processing fee a provider charges for an amount.

    Args:
        provider: Payment provider
        amount: Charged amount

    Returns:
        Decimal: Fee rounded to cents (zero for providers without fees)
    """
    rate, fixed = PROVIDER_FEES.get(provider, (Decimal("0"), Decimal("0")))
    if rate == 0 and fixed == 0:
        return Decimal("0.00")
    return to_money(to_money(amount) * rate + fixed)


def generate_random_id() -> str:
    """URL-safe random id used in provider references."""
    return secrets.token_urlsafe(8)


def generate_transaction_id() -> str:
    """Gateway-side transaction id (TXN_<millis>_<random>)."""
    return f"TXN_{int(time.time() * 1000)}_{generate_random_id()}"


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of an authorization or refund attempt."""
    success: bool
    transaction_id: Optional[str]
    provider_reference: Optional[str]
    message: str
    provider: PaymentProvider
    processed_amount: Decimal = Decimal("0.00")
    currency: str = "USD"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Decision:
    """Approve/decline verdict of an outcome policy."""
    approved: bool
    reason: Optional[str] = None


OutcomeDecision = Callable[[PaymentMethod, Decimal], Union[bool, Decision]]


class RandomOutcomePolicy:
    """
    Simulated provider behaviour: approve with a per-type success rate,
    scaled down for large transactions.
    """

    SUCCESS_RATES = {
        PaymentType.CREDIT_CARD: 0.92,
        PaymentType.DEBIT_CARD: 0.92,
        PaymentType.PAYPAL: 0.96,
        PaymentType.APPLE_PAY: 0.96,
        PaymentType.GOOGLE_PAY: 0.96,
        PaymentType.BANK_TRANSFER: 0.88,
        PaymentType.CASH_ON_DELIVERY: 0.99,
    }
    DEFAULT_RATE = 0.85

    def __init__(
        self,
        large_threshold: Optional[Decimal] = None,
        large_factor: Optional[float] = None,
        rng: Optional[random.Random] = None,
        rates: Optional[Mapping[PaymentType, float]] = None
    ):
        self.large_threshold = large_threshold if large_threshold is not None else settings.LARGE_TRANSACTION_THRESHOLD
        self.large_factor = large_factor if large_factor is not None else settings.LARGE_TRANSACTION_FACTOR
        self.rng = rng or random.SystemRandom()
        self.rates = dict(rates) if rates is not None else dict(self.SUCCESS_RATES)

    def success_rate(self, payment_method: PaymentMethod, amount: Decimal) -> float:
        rate = self.rates.get(payment_method.type, self.DEFAULT_RATE)
        if to_money(amount) > self.large_threshold:
            rate *= self.large_factor
        return rate

    def __call__(self, payment_method: PaymentMethod, amount: Decimal) -> Decision:
        return Decision(self.rng.random() < self.success_rate(payment_method, amount))


class FixedOutcomePolicy:
    """Always approve, or always decline with a given reason."""

    def __init__(self, approved: bool = True, reason: Optional[str] = None):
        self.approved = approved
        self.reason = reason

    def __call__(self, payment_method: PaymentMethod, amount: Decimal) -> Decision:
        return Decision(self.approved, None if self.approved else self.reason)


class PaymentGatewayAdapter(ABC):
    """
    Base class for provider adapters.

    Subclasses declare the provider, the reference prefix and which payment
    methods they can charge; the authorization flow itself is shared.
    """

    provider: PaymentProvider = PaymentProvider.MOCK
    display_name: str = "Mock"
    reference_prefix: str = "mock_"
    decline_message: str = "Payment declined by processor"

    def __init__(
        self,
        decide: Optional[OutcomeDecision] = None,
        latency: Optional[float] = None
    ):
        self._decide = decide or RandomOutcomePolicy()
        self.latency = settings.SIMULATED_LATENCY_SECONDS if latency is None else latency

    @abstractmethod
    def validate(self, payment_method: PaymentMethod) -> bool:
        """Whether the payment method carries the fields this provider needs."""

    def decide(self, payment_method: PaymentMethod, amount: Decimal) -> Decision:
        verdict = self._decide(payment_method, amount)
        if isinstance(verdict, Decision):
            return verdict
        return Decision(bool(verdict))

    async def _simulate_latency(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(random.uniform(self.latency / 2, self.latency))

    def _failure(self, message: str, currency: str, metadata: Dict[str, Any]) -> PaymentResult:
        return PaymentResult(
            success=False,
            transaction_id=None,
            provider_reference=None,
            message=message,
            provider=self.provider,
            currency=currency,
            metadata=metadata,
        )

    async def authorize(
        self,
        payment_method: PaymentMethod,
        amount: Decimal,
        currency: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> PaymentResult:
        """
        Attempt to authorize a charge.

        Args:
            payment_method: Saved payment method to charge
            amount: Amount to charge
            currency: ISO currency code
            description: Statement description
            metadata: Extra data echoed back in the result

        Returns:
            PaymentResult: success flag, references and provider message
        """
        metadata = dict(metadata or {})
        currency = (currency or "USD").upper()

        if payment_method is None or not self.validate(payment_method):
            return self._failure(f"Invalid payment method for {self.display_name}", currency, metadata)

        if currency not in supported_currencies(self.provider):
            return self._failure(f"Currency {currency} not supported by {self.display_name}", currency, metadata)

        await self._simulate_latency()

        decision = self.decide(payment_method, amount)
        if not decision.approved:
            logger.info(f"{self.display_name} declined {amount} {currency} for payment method {payment_method.id}")
            return self._failure(decision.reason or self.decline_message, currency, metadata)

        metadata.setdefault("description", description)
        return PaymentResult(
            success=True,
            transaction_id=generate_transaction_id(),
            provider_reference=f"{self.reference_prefix}{generate_random_id()}",
            message=f"Payment successful via {self.display_name}",
            provider=self.provider,
            processed_amount=to_money(amount),
            currency=currency,
            metadata=metadata,
        )

    async def refund(self, provider_reference: str, amount: Decimal, reason: str) -> PaymentResult:
        """
        Refund a previous charge.

        Args:
            provider_reference: Reference returned by authorize()
            amount: Amount to refund
            reason: Refund reason

        Returns:
            PaymentResult: success flag and refund reference
        """
        if not provider_reference:
            return self._failure("Refund failed: missing provider reference", "USD", {})
        await self._simulate_latency()
        return PaymentResult(
            success=True,
            transaction_id=generate_transaction_id(),
            provider_reference=f"rf_{generate_random_id()}",
            message=f"Refund successful: {reason}",
            provider=self.provider,
            processed_amount=to_money(amount),
            metadata={"refund_reason": reason, "original_transaction": provider_reference},
        )

    def fee(self, amount) -> Decimal:
        return provider_fee(self.provider, amount)


class CardGatewayAdapter(PaymentGatewayAdapter):
    """Stripe-like processor for cards and tokenized wallets."""

    provider = PaymentProvider.STRIPE
    display_name = "Stripe"
    reference_prefix = "ch_"

    def validate(self, payment_method: PaymentMethod) -> bool:
        if payment_method.type.is_card:
            return bool(
                payment_method.masked_card_number
                and payment_method.expiry_month
                and payment_method.expiry_year
            )
        if payment_method.type in (PaymentType.APPLE_PAY, PaymentType.GOOGLE_PAY):
            return bool(payment_method.wallet_account_id)
        return False


class PayPalGatewayAdapter(PaymentGatewayAdapter):
    """PayPal wallet payments."""

    provider = PaymentProvider.PAYPAL
    display_name = "PayPal"
    reference_prefix = "PAYID-"

    def validate(self, payment_method: PaymentMethod) -> bool:
        return payment_method.type == PaymentType.PAYPAL and bool(payment_method.wallet_account_id)


class BankTransferGatewayAdapter(PaymentGatewayAdapter):
    """Bank transfers (Razorpay-like provider)."""

    provider = PaymentProvider.RAZORPAY
    display_name = "Razorpay"
    reference_prefix = "pay_"

    def validate(self, payment_method: PaymentMethod) -> bool:
        return payment_method.type == PaymentType.BANK_TRANSFER and bool(payment_method.masked_account_number)


class CashOnDeliveryAdapter(PaymentGatewayAdapter):
    """Cash on delivery: nothing to charge now, always approved."""

    provider = PaymentProvider.CASH_ON_DELIVERY
    display_name = "Cash on Delivery"
    reference_prefix = "cod_"

    def __init__(self, latency: Optional[float] = None):
        super().__init__(decide=FixedOutcomePolicy(approved=True), latency=0.0 if latency is None else latency)

    def validate(self, payment_method: PaymentMethod) -> bool:
        return payment_method.type == PaymentType.CASH_ON_DELIVERY


class MockGatewayAdapter(PaymentGatewayAdapter):
    """Accepts any payment method; outcome entirely up to the injected policy."""

    provider = PaymentProvider.MOCK
    display_name = "Mock"
    reference_prefix = "mock_"
    decline_message = "Mock payment failed - insufficient funds"

    def __init__(self, decide: Optional[OutcomeDecision] = None, latency: float = 0.0):
        super().__init__(
            decide=decide or RandomOutcomePolicy(rates={t: 0.9 for t in PaymentType}),
            latency=latency
        )

    def validate(self, payment_method: PaymentMethod) -> bool:
        return True

    def fee(self, amount) -> Decimal:
        return Decimal("0.00")


class GatewayRegistry:
    """
    Lookup table from payment type to adapter, fixed at construction.

    Raises:
        ConfigurationError: If any payment type has no adapter
    """

    def __init__(self, adapters: Mapping[PaymentType, PaymentGatewayAdapter]):
        missing = [t.value for t in PaymentType if t not in adapters]
        if missing:
            raise ConfigurationError(f"No gateway adapter configured for: {', '.join(missing)}")
        self._adapters = dict(adapters)

    @classmethod
    def default(
        cls,
        decide: Optional[OutcomeDecision] = None,
        latency: Optional[float] = None
    ) -> "GatewayRegistry":
        """Standard routing: cards and Apple/Google Pay to the card processor, and so on."""
        card = CardGatewayAdapter(decide=decide, latency=latency)
        paypal = PayPalGatewayAdapter(decide=decide, latency=latency)
        bank = BankTransferGatewayAdapter(decide=decide, latency=latency)
        cash = CashOnDeliveryAdapter()
        return cls({
            PaymentType.CREDIT_CARD: card,
            PaymentType.DEBIT_CARD: card,
            PaymentType.APPLE_PAY: card,
            PaymentType.GOOGLE_PAY: card,
            PaymentType.PAYPAL: paypal,
            PaymentType.BANK_TRANSFER: bank,
            PaymentType.CASH_ON_DELIVERY: cash,
        })

    @classmethod
    def single(cls, adapter: PaymentGatewayAdapter) -> "GatewayRegistry":
        """Route every payment type to one adapter (mock setups)."""
        return cls({payment_type: adapter for payment_type in PaymentType})

    def adapter_for(self, payment_type: PaymentType) -> PaymentGatewayAdapter:
        return self._adapters[payment_type]
