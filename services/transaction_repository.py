"""
Transaction Repository

Persistence for transactions and their line items.
"""

from typing import List, Optional

from core.database import SessionLocal, session_scope
from core.logger import get_logger
from models.base import generate_uuid
from models.transaction import Transaction

logger = get_logger(__name__)


class TransactionRepository:
    """Repository over the transactions and transaction_items tables."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    def save(self, transaction: Transaction) -> Transaction:
        """
        Insert or update a transaction together with its items.

        The caller keeps working with its own instance; the returned object
        is the persisted copy.

        Raises:
            StorageError: If the database is unavailable
        """
        if not transaction.id:
            transaction.id = generate_uuid()
        for position, item in enumerate(transaction.items):
            if not item.id:
                item.id = generate_uuid()
            item.position = position

        with session_scope(self._session_factory) as db:
            saved = db.merge(transaction)

        logger.debug(f"Saved transaction {saved.id} status={saved.status.value}")
        return saved

    def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        """Get a transaction (items loaded) by ID."""
        with session_scope(self._session_factory) as db:
            return db.query(Transaction).filter(Transaction.id == transaction_id).first()

    def find_by_user(self, user_id: str) -> List[Transaction]:
        """Get a user's transactions, newest first."""
        with session_scope(self._session_factory) as db:
            return db.query(Transaction).filter(
                Transaction.user_id == user_id
            ).order_by(Transaction.created_at.desc()).all()
