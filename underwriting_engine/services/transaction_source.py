# underwriting_engine/services/transaction_source.py

from typing import Dict, Protocol

from underwriting_engine.core.errors import TransactionNotFound
from underwriting_engine.schemas.transaction import TransactionProfile


class TransactionSource(Protocol):
    def fetch(self, transaction_id: str) -> TransactionProfile:
        ...


class InMemoryTransactionStore:
    """Process-local TransactionSource used by the API and tests."""

    def __init__(self):
        self._transactions: Dict[str, TransactionProfile] = {}

    def save(self, transaction: TransactionProfile) -> TransactionProfile:
        self._transactions[transaction.id] = transaction
        return transaction

    def fetch(self, transaction_id: str) -> TransactionProfile:
        try:
            return self._transactions[transaction_id]
        except KeyError:
            raise TransactionNotFound(transaction_id) from None
