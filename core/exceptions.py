"""Custom exceptions for the payment core."""

from typing import Optional


class PaymentError(Exception):
    """Base exception for all payment core errors."""


class ConfigurationError(PaymentError):
    """Raised when the gateway registry or settings are inconsistent."""


class ValidationError(PaymentError):
    """Raised when transaction or payment-method fields are malformed or missing."""


class NotFoundError(PaymentError):
    """Raised when a requested record does not exist."""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class PaymentMethodError(PaymentError):
    """Raised when a payment method is invalid, inactive or expired."""


class GatewayError(PaymentError):
    """Raised when a provider declines, times out or answers garbage."""

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message)
        self.provider = provider


class GatewayTimeoutError(GatewayError):
    """Raised when the provider does not answer within the configured timeout."""

    def __init__(self, provider: Optional[str] = None) -> None:
        super().__init__("gateway timeout", provider)


class StorageError(PaymentError):
    """Raised when the persistence layer is unavailable."""


class InvalidTransitionError(PaymentError):
    """Raised when a transaction status change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move transaction from {current} to {target}")
        self.current = current
        self.target = target


class MaxRetriesExceededError(PaymentError):
    """Raised when retry() is called on a transaction that used up its retries."""

    def __init__(self, transaction_id: str, max_retries: int) -> None:
        super().__init__(f"max retries exceeded for transaction {transaction_id} (limit {max_retries})")
        self.transaction_id = transaction_id
        self.max_retries = max_retries
