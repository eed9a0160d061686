"""
API Dependencies

Shared dependencies for FastAPI routes.
Provides the payment method store, transaction repository, notifier and
the process-wide transaction engine.
"""

from functools import lru_cache
from typing import Optional

from core.config import get_settings
from core.database import SessionLocal
from core.logger import get_logger
from services.notification_service import EmailNotifier, LoggingNotifier, Notifier
from services.payment_gateway import GatewayRegistry
from services.payment_method_store import PaymentMethodStore
from services.transaction_engine import TransactionEngine
from services.transaction_repository import TransactionRepository

settings = get_settings()
logger = get_logger(__name__)


def get_payment_method_store() -> PaymentMethodStore:
    """Dependency returning the payment method store."""
    return PaymentMethodStore(SessionLocal)


def get_transaction_repository() -> TransactionRepository:
    """Dependency returning the transaction repository."""
    return TransactionRepository(SessionLocal)


def _no_address(user_id: str) -> Optional[str]:
    # Customer profiles live outside the payment core
    return None


def get_notifier() -> Notifier:
    """
    Dependency returning the outcome notifier.

    Email is used only when NOTIFICATIONS_ENABLED is set; otherwise
    notifications go to the log.
    """
    if settings.NOTIFICATIONS_ENABLED:
        return EmailNotifier(address_lookup=_no_address)
    return LoggingNotifier()


@lru_cache()
def get_transaction_engine() -> TransactionEngine:
    """
    Dependency returning the transaction engine.

    One engine (and one worker pool) per process, created on first use.
    """
    logger.info(f"Creating transaction engine with {settings.PAYMENT_WORKERS} payment workers")
    return TransactionEngine(
        payment_methods=get_payment_method_store(),
        transactions=get_transaction_repository(),
        gateways=GatewayRegistry.default(),
        notifier=get_notifier(),
    )


def shutdown_transaction_engine() -> None:
    """Stop the worker pool if the engine was ever created."""
    if get_transaction_engine.cache_info().currsize:
        get_transaction_engine().shutdown(wait=True)
        get_transaction_engine.cache_clear()
