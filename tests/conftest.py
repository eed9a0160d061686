"""
Pytest Configuration and Fixtures

Provides shared test fixtures for all tests.
"""

import os
import sys
import threading
from datetime import date
from decimal import Decimal

# Keep the application's own engine and log file out of the working tree
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from api.main import app
from api.dependencies import get_payment_method_store, get_transaction_engine
from core.database import Base
from models.payment_method import PaymentMethod, PaymentType, mask_number
from models.transaction import Transaction
from services.notification_service import Notifier
from services.payment_gateway import FixedOutcomePolicy, GatewayRegistry, MockGatewayAdapter
from services.payment_method_store import PaymentMethodStore
from services.transaction_engine import TransactionEngine
from services.transaction_repository import TransactionRepository

# Use in-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

USER_ID = "farmer-1"
FUTURE_YEAR = str(date.today().year + 5)


class RecordingNotifier(Notifier):
    """Notifier that remembers what it was asked to send."""

    def __init__(self):
        self.sent = []
        self.delivered = threading.Event()

    def send(self, user_id, subject, body):
        self.sent.append((user_id, subject, body))
        self.delivered.set()
        return True


class SpyGatewayAdapter(MockGatewayAdapter):
    """Mock adapter that counts authorize() and refund() calls."""

    def __init__(self, decide=None, latency=0.0):
        super().__init__(decide=decide or FixedOutcomePolicy(approved=True), latency=latency)
        self.calls = 0
        self.refund_calls = 0

    async def authorize(self, payment_method, amount, currency, description=None, metadata=None):
        self.calls += 1
        return await super().authorize(payment_method, amount, currency, description, metadata)

    async def refund(self, provider_reference, amount, reason):
        self.refund_calls += 1
        return await super().refund(provider_reference, amount, reason)


def sequence_policy(*verdicts):
    """Outcome policy returning the given verdicts in order, repeating the last one."""
    remaining = list(verdicts)

    def decide(payment_method, amount):
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return decide


@pytest.fixture(scope="function")
def session_factory():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def payment_method_store(session_factory) -> PaymentMethodStore:
    return PaymentMethodStore(session_factory)


@pytest.fixture(scope="function")
def transaction_repository(session_factory) -> TransactionRepository:
    return TransactionRepository(session_factory)


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def spy_adapter() -> SpyGatewayAdapter:
    return SpyGatewayAdapter()


@pytest.fixture(scope="function")
def make_engine(payment_method_store, transaction_repository, notifier):
    """Factory building engines around a given adapter; all are shut down after the test."""
    engines = []

    def _make(adapter=None, transactions=None, notifier=notifier, **kwargs):
        kwargs.setdefault("max_workers", 4)
        txn_engine = TransactionEngine(
            payment_methods=payment_method_store,
            transactions=transactions or transaction_repository,
            gateways=GatewayRegistry.single(adapter or SpyGatewayAdapter()),
            notifier=notifier,
            **kwargs
        )
        engines.append(txn_engine)
        return txn_engine

    yield _make
    for txn_engine in engines:
        txn_engine.shutdown(wait=True)


@pytest.fixture(scope="function")
def txn_engine(make_engine, spy_adapter) -> TransactionEngine:
    """Engine routing every payment type to the spy adapter, which approves."""
    return make_engine(spy_adapter)


@pytest.fixture(scope="function")
def card_method(payment_method_store) -> PaymentMethod:
    """A saved, unexpired Visa card."""
    payment_method = PaymentMethod.for_card(
        USER_ID,
        PaymentType.CREDIT_CARD,
        card_holder_name="Jane Farmer",
        masked_card_number=mask_number("4242 4242 4242 4242"),
        card_type="Visa",
        expiry_month="12",
        expiry_year=FUTURE_YEAR,
    )
    return payment_method_store.save(payment_method)


@pytest.fixture(scope="function")
def expired_card(payment_method_store) -> PaymentMethod:
    payment_method = PaymentMethod.for_card(
        USER_ID,
        PaymentType.DEBIT_CARD,
        card_holder_name="Jane Farmer",
        masked_card_number=mask_number("5555555555554444"),
        card_type="Mastercard",
        expiry_month="01",
        expiry_year="2020",
    )
    return payment_method_store.save(payment_method)


@pytest.fixture(scope="function")
def make_transaction(txn_engine):
    """Factory for calculated PENDING transactions (defaults to 3 x tomatoes at 4.99)."""

    def _make(payment_method_id, lines=None, user_id=USER_ID, order_id="ORD-1001", **kwargs):
        transaction = Transaction.from_cart(
            order_id=order_id,
            user_id=user_id,
            payment_method_id=payment_method_id,
            lines=lines or [("Tomatoes", Decimal("4.99"), 3)],
            **kwargs
        )
        return txn_engine.calculate_amounts(transaction)

    return _make


@pytest.fixture(scope="function")
def client(payment_method_store, txn_engine):
    """Create a test client with store and engine overrides."""
    app.dependency_overrides[get_payment_method_store] = lambda: payment_method_store
    app.dependency_overrides[get_transaction_engine] = lambda: txn_engine

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
