"""
Transaction Engine

Drives checkout payments:
- Amount calculation (tax, shipping, discount)
- Authorization through the gateway adapter matching the payment type
- Status state machine and bounded retry
- Refunds of completed purchases

process(), retry() and refund() run on the engine's worker pool and hand
back a concurrent.futures.Future, so they can be called from any thread.
"""

from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional
import asyncio
import secrets
import threading

from core.config import get_settings
from core.exceptions import (
    GatewayError,
    GatewayTimeoutError,
    InvalidTransitionError,
    MaxRetriesExceededError,
    StorageError,
    ValidationError,
)
from core.logger import get_logger
from models.base import to_money, CENTS
from models.payment_method import PaymentMethod
from models.transaction import Transaction, TransactionStatus, FailureKind
from services.notification_service import Notifier, transaction_outcome_message
from services.payment_gateway import GatewayRegistry, PaymentGatewayAdapter, PaymentResult
from services.payment_method_store import PaymentMethodStore
from services.transaction_repository import TransactionRepository

settings = get_settings()
logger = get_logger(__name__)


class TransactionEngine:
    """Service for computing totals and processing payment transactions."""

    def __init__(
        self,
        payment_methods: PaymentMethodStore,
        transactions: TransactionRepository,
        gateways: GatewayRegistry,
        notifier: Optional[Notifier] = None,
        max_retries: Optional[int] = None,
        gateway_timeout: Optional[float] = None,
        max_workers: Optional[int] = None
    ):
        self._payment_methods = payment_methods
        self._transactions = transactions
        self._gateways = gateways
        self._notifier = notifier
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.gateway_timeout = settings.GATEWAY_TIMEOUT_SECONDS if gateway_timeout is None else gateway_timeout

        self.tax_rate = settings.TAX_RATE
        self.standard_shipping = settings.STANDARD_SHIPPING
        self.express_shipping = settings.EXPRESS_SHIPPING
        self.free_shipping_threshold = settings.FREE_SHIPPING_THRESHOLD

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or settings.PAYMENT_WORKERS,
            thread_name_prefix="payment-worker"
        )

        # transaction id -> [lock, number of holders/waiters]
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Amounts
    # ------------------------------------------------------------------

    def quote(self, subtotal, express_shipping: bool = False, discount=None) -> Dict[str, Decimal]:
        """
        Compute the amount breakdown for a subtotal.

        Args:
            subtotal: Sum of the cart items
            express_shipping: Use the express rate below the free-shipping threshold
            discount: Discount to subtract

        Returns:
            dict: subtotal, tax, shipping, discount and total

        Raises:
            ValidationError: On a negative subtotal or a discount above the total
        """
        subtotal = to_money(subtotal)
        discount = to_money(discount)
        if subtotal < 0 or discount < 0:
            raise ValidationError("Subtotal and discount must not be negative")

        tax = (subtotal * self.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        if subtotal >= self.free_shipping_threshold:
            shipping = Decimal("0.00")
        else:
            shipping = self.express_shipping if express_shipping else self.standard_shipping
        shipping = to_money(shipping)

        total = subtotal + tax + shipping - discount
        if total < 0:
            raise ValidationError(f"Discount {discount} exceeds the order total")
        return {
            "subtotal": subtotal,
            "tax": tax,
            "shipping": shipping,
            "discount": discount,
            "total": to_money(total),
        }

    def calculate_amounts(self, transaction: Transaction, express_shipping: bool = False) -> Transaction:
        """
        Set tax and shipping on a transaction and recompute its total.

        Tax is the subtotal times the tax rate, rounded half-up to cents.
        Shipping is free at or above the threshold, otherwise standard or express.

        Args:
            transaction: Transaction whose amount (subtotal) is set
            express_shipping: Use express shipping

        Returns:
            Transaction: The same transaction, updated
        """
        breakdown = self.quote(transaction.amount, express_shipping, transaction.discount_amount)
        transaction.apply_amounts(tax=breakdown["tax"], shipping=breakdown["shipping"])
        return transaction

    # ------------------------------------------------------------------
    # Public async operations
    # ------------------------------------------------------------------

    def process(self, transaction: Transaction) -> "Future[Transaction]":
        """
        Process a PENDING transaction on the worker pool.

        The future resolves to the transaction in its final state. Every
        expected failure becomes a FAILED status; only StorageError is
        raised through the future.

        Args:
            transaction: Transaction built from the cart, amounts calculated

        Returns:
            Future[Transaction]
        """
        return self._executor.submit(self._process, transaction)

    def retry(self, transaction: Transaction) -> "Future[Transaction]":
        """
        Retry a FAILED transaction.

        Args:
            transaction: Transaction that failed at the gateway

        Returns:
            Future[Transaction]

        Raises:
            MaxRetriesExceededError: If retry_count already reached max_retries
            InvalidTransitionError: If the transaction is not a retryable failure
        """
        self._check_retry(transaction)
        return self._executor.submit(self._retry, transaction)

    def refund(self, transaction: Transaction, reason: str, amount=None) -> "Future[Transaction]":
        """
        Refund a completed purchase, fully or partially.

        Args:
            transaction: COMPLETED purchase
            reason: Refund reason recorded on the transaction
            amount: Amount to refund (defaults to the full total)

        Returns:
            Future[Transaction] resolving to a REFUNDED or PARTIALLY_REFUNDED
            transaction; a declined refund raises GatewayError through it

        Raises:
            InvalidTransitionError: If the transaction cannot be refunded
            ValidationError: If the amount is not within (0, total]
        """
        if not transaction.can_be_refunded():
            raise InvalidTransitionError(transaction.status.value, TransactionStatus.REFUNDED.value)
        refund_amount = to_money(transaction.total_amount if amount is None else amount)
        if refund_amount <= 0 or refund_amount > to_money(transaction.total_amount):
            raise ValidationError(f"Refund amount must be between 0 and {transaction.total_amount}")
        return self._executor.submit(self._refund, transaction, reason, refund_amount)

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self._transactions.find_by_id(transaction_id)

    def list_transactions(self, user_id: str) -> List[Transaction]:
        return self._transactions.find_by_user(user_id)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool."""
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    @contextmanager
    def _serialized(self, transaction_id: str):
        """Hold the per-transaction lock; entries are dropped once unused."""
        with self._locks_guard:
            entry = self._locks.setdefault(transaction_id, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(transaction_id, None)

    def _check_retry(self, transaction: Transaction) -> None:
        if transaction.status != TransactionStatus.FAILED:
            raise InvalidTransitionError(transaction.status.value, TransactionStatus.PROCESSING.value)
        if (transaction.retry_count or 0) >= self.max_retries:
            raise MaxRetriesExceededError(transaction.id, self.max_retries)
        if not transaction.can_be_retried(self.max_retries):
            # Payment-method failures need a different payment method, not a retry
            raise InvalidTransitionError(transaction.status.value, TransactionStatus.PROCESSING.value)

    def _process(self, transaction: Transaction) -> Transaction:
        with self._serialized(transaction.id):
            persisted = self._transactions.find_by_id(transaction.id) if transaction.id else None
            if persisted is not None and persisted.status != TransactionStatus.PENDING:
                logger.info(f"Transaction {transaction.id} already {persisted.status.value}, not processing again")
                return persisted
            if transaction.status != TransactionStatus.PENDING:
                logger.info(f"Transaction {transaction.id} is {transaction.status.value}, not processing")
                return transaction
            return self._run(transaction)

    def _retry(self, transaction: Transaction) -> Transaction:
        with self._serialized(transaction.id):
            persisted = self._transactions.find_by_id(transaction.id)
            if persisted is not None and (
                persisted.status != transaction.status or persisted.retry_count != transaction.retry_count
            ):
                raise InvalidTransitionError(persisted.status.value, TransactionStatus.PROCESSING.value)
            self._check_retry(transaction)
            transaction.increment_retry_count()
            transaction.start_processing()
            logger.info(f"Retrying transaction {transaction.id} (attempt {transaction.retry_count}/{self.max_retries})")
            return self._run(transaction)

    def _run(self, transaction: Transaction) -> Transaction:
        try:
            payment_method = None
            if transaction.payment_method_id:
                payment_method = self._payment_methods.find_by_id(transaction.payment_method_id)

            if payment_method is None or payment_method.user_id != transaction.user_id:
                return self._fail(transaction, "Invalid payment method", FailureKind.PAYMENT_METHOD)
            if payment_method.is_expired():
                return self._fail(transaction, "Payment method has expired", FailureKind.PAYMENT_METHOD)

            if transaction.status == TransactionStatus.PENDING:
                transaction.start_processing()
            self._transactions.save(transaction)

            adapter = self._gateways.adapter_for(payment_method.type)
            try:
                result = self._authorize(adapter, payment_method, transaction)
            except GatewayTimeoutError:
                logger.warning(f"Gateway {adapter.display_name} timed out for transaction {transaction.id}")
                return self._fail(transaction, "gateway timeout", FailureKind.TIMEOUT)
            except GatewayError as e:
                return self._fail(transaction, str(e), FailureKind.GATEWAY)

            if not result.success:
                return self._fail(transaction, result.message, FailureKind.GATEWAY)
            return self._complete(transaction, payment_method, adapter, result)

        except StorageError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error processing transaction {transaction.id}: {str(e)}", exc_info=True)
            if transaction.can_transition_to(TransactionStatus.FAILED):
                return self._fail(transaction, f"System error: {str(e)}", FailureKind.SYSTEM)
            return transaction

    def _authorize(
        self,
        adapter: PaymentGatewayAdapter,
        payment_method: PaymentMethod,
        transaction: Transaction
    ) -> PaymentResult:
        """Call the adapter on a private event loop, bounded by gateway_timeout."""
        metadata = {"transaction_id": transaction.id, "order_id": transaction.order_id}

        async def _call():
            return await asyncio.wait_for(
                adapter.authorize(
                    payment_method,
                    to_money(transaction.total_amount),
                    transaction.currency,
                    transaction.description,
                    metadata
                ),
                timeout=self.gateway_timeout
            )

        try:
            result = asyncio.run(_call())
        except asyncio.TimeoutError:
            raise GatewayTimeoutError(adapter.provider.value)
        if not isinstance(result, PaymentResult):
            raise GatewayError("Malformed gateway response", adapter.provider.value)
        return result

    def _complete(
        self,
        transaction: Transaction,
        payment_method: PaymentMethod,
        adapter: PaymentGatewayAdapter,
        result: PaymentResult
    ) -> Transaction:
        card_last4 = None
        card_type = None
        if payment_method.type.is_card and payment_method.masked_card_number:
            card_last4 = payment_method.masked_card_number[-4:]
            card_type = payment_method.card_type

        transaction.mark_completed(
            processor_transaction_id=result.provider_reference or result.transaction_id,
            processor_name=adapter.display_name,
            authorization_code=f"AUTH_{100000 + secrets.randbelow(900000)}",
            processor_response=result.message,
            card_last4=card_last4,
            card_type=card_type,
        )
        self._transactions.save(transaction)
        self._payment_methods.mark_used(payment_method.id, transaction.processed_at)
        logger.info(
            f"Transaction {transaction.id} completed via {adapter.display_name}: "
            f"{transaction.formatted_amount}, reference={transaction.processor_transaction_id}"
        )
        self._notify(transaction)
        return transaction

    def _fail(self, transaction: Transaction, reason: str, kind: FailureKind) -> Transaction:
        transaction.mark_failed(reason, kind)
        self._transactions.save(transaction)
        logger.info(f"Transaction {transaction.id} failed ({kind.value}): {reason}")
        if not transaction.can_be_retried(self.max_retries):
            self._notify(transaction)
        return transaction

    def _refund(self, transaction: Transaction, reason: str, amount: Decimal) -> Transaction:
        with self._serialized(transaction.id):
            persisted = self._transactions.find_by_id(transaction.id)
            if persisted is not None and (
                not persisted.can_be_refunded()
                or persisted.status != transaction.status
                or persisted.refund_transaction_id != transaction.refund_transaction_id
            ):
                raise InvalidTransitionError(persisted.status.value, TransactionStatus.REFUNDED.value)
            if not transaction.can_be_refunded():
                raise InvalidTransitionError(transaction.status.value, TransactionStatus.REFUNDED.value)
            payment_method = self._payment_methods.find_by_id(transaction.payment_method_id, include_inactive=True)
            if payment_method is None:
                raise GatewayError(f"Cannot route refund: payment method {transaction.payment_method_id} not found")
            adapter = self._gateways.adapter_for(payment_method.type)

            async def _call():
                return await asyncio.wait_for(
                    adapter.refund(transaction.processor_transaction_id, amount, reason),
                    timeout=self.gateway_timeout
                )

            try:
                result = asyncio.run(_call())
            except asyncio.TimeoutError:
                raise GatewayTimeoutError(adapter.provider.value)
            if not result.success:
                raise GatewayError(result.message, adapter.provider.value)

            transaction.mark_refunded(result.provider_reference, reason, amount)
            self._transactions.save(transaction)
            logger.info(f"Transaction {transaction.id} refunded {amount} ({transaction.status.value})")
            self._notify(transaction)
            return transaction

    def _notify(self, transaction: Transaction) -> None:
        """Queue an outcome notification; failures are logged and dropped."""
        if self._notifier is None:
            return
        subject, body = transaction_outcome_message(transaction)
        try:
            self._executor.submit(self._send_notification, transaction.user_id, subject, body)
        except RuntimeError:
            logger.warning(f"Worker pool shut down, notification for transaction {transaction.id} dropped")

    def _send_notification(self, user_id: str, subject: str, body: str) -> None:
        try:
            self._notifier.send(user_id, subject, body)
        except Exception as e:
            logger.warning(f"Notification to user {user_id} failed: {str(e)}")
