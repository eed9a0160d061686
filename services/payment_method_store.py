"""
Payment Method Store

Persistence for saved payment methods:
- Upsert and lookup of active methods
- At most one default method per user
- Soft delete
- Last-used bookkeeping after a completed authorization
"""

from typing import List, Optional
from datetime import datetime
import threading

from core.database import SessionLocal, session_scope
from core.exceptions import PaymentMethodError
from core.logger import get_logger
from models.base import generate_uuid, utcnow
from models.payment_method import PaymentMethod

logger = get_logger(__name__)

# Shared by every store instance in the process (routes build one per request)
_default_lock = threading.Lock()


class PaymentMethodStore:
    """Repository over the payment_methods table."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory
        self._default_lock = _default_lock

    def save(self, payment_method: PaymentMethod) -> PaymentMethod:
        """
        Insert or update a payment method.

        Saving a method flagged as default clears the flag on the user's
        other methods in the same unit of work.

        Args:
            payment_method: Payment method to persist

        Returns:
            PaymentMethod: The persisted record

        Raises:
            StorageError: If the database is unavailable
        """
        if not payment_method.id:
            payment_method.id = generate_uuid()
        payment_method.touch()

        with self._default_lock, session_scope(self._session_factory) as db:
            if payment_method.is_default:
                db.query(PaymentMethod.id).filter(
                    PaymentMethod.user_id == payment_method.user_id
                ).with_for_update().all()
                db.query(PaymentMethod).filter(
                    PaymentMethod.user_id == payment_method.user_id,
                    PaymentMethod.id != payment_method.id,
                    PaymentMethod.is_default.is_(True)
                ).update({PaymentMethod.is_default: False}, synchronize_session=False)
            saved = db.merge(payment_method)

        logger.info(f"Saved payment method {saved.id} ({saved.type.value}) for user {saved.user_id}")
        return saved

    def find_by_id(self, payment_method_id: str, include_inactive: bool = False) -> Optional[PaymentMethod]:
        """
        Get a payment method by ID.

        Args:
            payment_method_id: Payment method UUID
            include_inactive: Also return soft-deleted records (refund routing)

        Returns:
            PaymentMethod or None if missing (or soft-deleted, unless include_inactive)
        """
        with session_scope(self._session_factory) as db:
            query = db.query(PaymentMethod).filter(PaymentMethod.id == payment_method_id)
            if not include_inactive:
                query = query.filter(PaymentMethod.is_active.is_(True))
            return query.first()

    def find_by_user(self, user_id: str) -> List[PaymentMethod]:
        """
        Get a user's active payment methods, default first, then most recently used.

        Args:
            user_id: User UUID

        Returns:
            list: Active payment methods
        """
        with session_scope(self._session_factory) as db:
            return db.query(PaymentMethod).filter(
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_active.is_(True)
            ).order_by(
                PaymentMethod.is_default.desc(),
                PaymentMethod.last_used.is_(None),
                PaymentMethod.last_used.desc(),
                PaymentMethod.created_at.desc()
            ).all()

    def get_default(self, user_id: str) -> Optional[PaymentMethod]:
        """Get the user's default payment method, if any."""
        with session_scope(self._session_factory) as db:
            return db.query(PaymentMethod).filter(
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_active.is_(True),
                PaymentMethod.is_default.is_(True)
            ).first()

    def set_default(self, user_id: str, payment_method_id: str) -> PaymentMethod:
        """
        Make a payment method the user's only default.

        Clearing the old default and setting the new one happen in a single
        database transaction; if the target does not exist the clear is
        rolled back too.

        Args:
            user_id: User UUID
            payment_method_id: Payment method to make default

        Returns:
            PaymentMethod: The new default

        Raises:
            PaymentMethodError: If the method is unknown, inactive or owned by someone else
            StorageError: If the database is unavailable
        """
        now = utcnow()
        with self._default_lock, session_scope(self._session_factory) as db:
            # Row locks serialize writers in other processes (no-op on SQLite)
            db.query(PaymentMethod.id).filter(PaymentMethod.user_id == user_id).with_for_update().all()

            db.query(PaymentMethod).filter(
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_default.is_(True)
            ).update({PaymentMethod.is_default: False}, synchronize_session=False)

            updated = db.query(PaymentMethod).filter(
                PaymentMethod.id == payment_method_id,
                PaymentMethod.user_id == user_id,
                PaymentMethod.is_active.is_(True)
            ).update(
                {PaymentMethod.is_default: True, PaymentMethod.last_updated: now},
                synchronize_session=False
            )
            if updated != 1:
                raise PaymentMethodError(f"Payment method {payment_method_id} not found for user {user_id}")

            default = db.get(PaymentMethod, payment_method_id, populate_existing=True)

        logger.info(f"Default payment method for user {user_id} is now {payment_method_id}")
        return default

    def delete(self, payment_method_id: str) -> bool:
        """
        Soft delete a payment method (is_active = False). Rows are never removed.

        Args:
            payment_method_id: Payment method UUID

        Returns:
            bool: True if an active record was deactivated
        """
        with self._default_lock, session_scope(self._session_factory) as db:
            updated = db.query(PaymentMethod).filter(
                PaymentMethod.id == payment_method_id,
                PaymentMethod.is_active.is_(True)
            ).update(
                {
                    PaymentMethod.is_active: False,
                    PaymentMethod.is_default: False,
                    PaymentMethod.last_updated: utcnow(),
                },
                synchronize_session=False
            )

        if updated:
            logger.info(f"Soft-deleted payment method {payment_method_id}")
        return bool(updated)

    def mark_used(self, payment_method_id: str, when: Optional[datetime] = None) -> None:
        """
        Stamp last_used/last_updated after a completed authorization.

        Args:
            payment_method_id: Payment method UUID
            when: Timestamp to record (defaults to now)
        """
        when = when or utcnow()
        with session_scope(self._session_factory) as db:
            db.query(PaymentMethod).filter(
                PaymentMethod.id == payment_method_id
            ).update(
                {PaymentMethod.last_used: when, PaymentMethod.last_updated: when},
                synchronize_session=False
            )
