"""
Payment Method Store Tests

Tests for saving, ordering, the single-default rule and soft delete.
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import FUTURE_YEAR, USER_ID
from core.database import Base
from core.exceptions import PaymentMethodError, StorageError
from models.base import utcnow
from models.payment_method import PaymentMethod, PaymentType, mask_number
from services.payment_method_store import PaymentMethodStore


def _card(last_digits="4242", user_id=USER_ID):
    return PaymentMethod.for_card(
        user_id, PaymentType.CREDIT_CARD, "Jane Farmer", mask_number(f"4000 0000 0000 {last_digits}"),
        "Visa", "12", FUTURE_YEAR, encrypted_data="tok_secret",
    )


def _defaults(store, user_id=USER_ID):
    return [payment_method.id for payment_method in store.find_by_user(user_id) if payment_method.is_default]


def test_save_and_find(payment_method_store):
    saved = payment_method_store.save(_card())

    found = payment_method_store.find_by_id(saved.id)

    assert found is not None
    assert found.masked_card_number == "•••• 4242"
    assert found.display_name == "Visa •••• 4242"
    assert "encrypted_data" not in found.to_dict()


def test_saving_default_clears_previous_default(payment_method_store):
    first = _card("1111")
    first.is_default = True
    payment_method_store.save(first)

    second = _card("2222")
    second.is_default = True
    payment_method_store.save(second)

    assert _defaults(payment_method_store) == [second.id]
    assert payment_method_store.get_default(USER_ID).id == second.id


def test_find_by_user_ordering(payment_method_store):
    """Default first, then most recently used, never-used last."""
    now = utcnow()
    unused = payment_method_store.save(_card("1111"))
    used_long_ago = payment_method_store.save(_card("2222"))
    used_recently = payment_method_store.save(_card("3333"))
    default = _card("4444")
    default.is_default = True
    payment_method_store.save(default)
    payment_method_store.save(_card("5555", user_id="someone-else"))

    payment_method_store.mark_used(used_long_ago.id, now - timedelta(days=30))
    payment_method_store.mark_used(used_recently.id, now - timedelta(hours=1))

    ordered = [payment_method.id for payment_method in payment_method_store.find_by_user(USER_ID)]

    assert ordered == [default.id, used_recently.id, used_long_ago.id, unused.id]


def test_set_default(payment_method_store):
    first = _card("1111")
    first.is_default = True
    payment_method_store.save(first)
    second = payment_method_store.save(_card("2222"))

    new_default = payment_method_store.set_default(USER_ID, second.id)

    assert new_default.id == second.id
    assert new_default.is_default is True
    assert _defaults(payment_method_store) == [second.id]


def test_set_default_unknown_keeps_old_default(payment_method_store):
    first = _card("1111")
    first.is_default = True
    payment_method_store.save(first)

    with pytest.raises(PaymentMethodError):
        payment_method_store.set_default(USER_ID, "no-such-method")

    assert _defaults(payment_method_store) == [first.id]


def test_set_default_of_other_user_rejected(payment_method_store):
    foreign = payment_method_store.save(_card("9999", user_id="someone-else"))

    with pytest.raises(PaymentMethodError):
        payment_method_store.set_default(USER_ID, foreign.id)


def test_soft_delete(payment_method_store):
    saved = _card()
    saved.is_default = True
    payment_method_store.save(saved)

    assert payment_method_store.delete(saved.id) is True
    assert payment_method_store.delete(saved.id) is False

    assert payment_method_store.find_by_id(saved.id) is None
    assert payment_method_store.find_by_user(USER_ID) == []
    assert payment_method_store.get_default(USER_ID) is None

    inactive = payment_method_store.find_by_id(saved.id, include_inactive=True)
    assert inactive.is_active is False
    assert inactive.is_default is False


def test_mark_used(payment_method_store):
    saved = payment_method_store.save(_card())
    when = utcnow()

    payment_method_store.mark_used(saved.id, when)

    found = payment_method_store.find_by_id(saved.id)
    assert found.last_used == when
    assert found.last_updated == when


def test_storage_unavailable_raises_storage_error():
    """A database without the schema surfaces as StorageError, not a driver error."""
    broken_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = PaymentMethodStore(sessionmaker(bind=broken_engine, expire_on_commit=False))

    with pytest.raises(StorageError):
        store.find_by_user(USER_ID)
    with pytest.raises(StorageError):
        store.save(_card())


def test_concurrent_set_default_leaves_single_default(tmp_path):
    file_engine = create_engine(
        f"sqlite:///{tmp_path / 'payment_methods.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=file_engine)
    file_sessions = sessionmaker(bind=file_engine, expire_on_commit=False)
    store = PaymentMethodStore(file_sessions)
    methods = [store.save(_card(f"{i:04d}")) for i in range(6)]

    errors = []

    def make_default(payment_method_id):
        # One store per caller, as the routes build them per request
        request_store = PaymentMethodStore(file_sessions)
        try:
            for _ in range(5):
                request_store.set_default(USER_ID, payment_method_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=make_default, args=(pm.id,)) for pm in methods]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    defaults = _defaults(store)
    assert len(defaults) == 1
    assert defaults[0] in {pm.id for pm in methods}
    file_engine.dispose()


def test_stores_share_default_lock(session_factory):
    assert PaymentMethodStore(session_factory)._default_lock is PaymentMethodStore(session_factory)._default_lock
