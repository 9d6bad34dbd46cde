"""
Transaction Repository Module

Repository collaborator for loan transactions. Every query is scoped to a
single loan and returns transactions in stable (date, sequence) order.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set
import threading

from .exceptions import TransactionNotFoundError
from .transactions import LoanTransaction, LoanTransactionType


# Kinds that never move the reprocessing horizon
_NON_REPROCESSING_TYPES = frozenset({LoanTransactionType.ACCRUAL})


def chronological_key(transaction: LoanTransaction):
    return (transaction.transaction_date, transaction.created_sequence)


class LoanTransactionRepository(ABC):
    """Abstract interface for loan transaction lookups"""

    @abstractmethod
    def save(self, transaction: LoanTransaction) -> LoanTransaction:
        """Insert or update a transaction"""
        pass

    @abstractmethod
    def find_by_loan(self, loan_id: str) -> List[LoanTransaction]:
        """All transactions of a loan, reversed ones included"""
        pass

    def find_by_id_and_loan_id(self, transaction_id: str, loan_id: str) -> LoanTransaction:
        """
        Raises:
            TransactionNotFoundError: If the loan has no such transaction
        """
        for transaction in self.find_by_loan(loan_id):
            if transaction.id == transaction_id:
                return transaction
        raise TransactionNotFoundError(f"Transaction {transaction_id} not found on loan {loan_id}")

    def find_non_reversed_by_loan_and_types(self, loan_id: str,
                                            types: Iterable[LoanTransactionType]) -> List[LoanTransaction]:
        wanted = set(types)
        return [
            transaction for transaction in self.find_by_loan(loan_id)
            if not transaction.reversed and transaction.transaction_type in wanted
        ]

    def find_non_reversed_by_loan_and_types_and_on_or_after_date(
        self, loan_id: str, types: Iterable[LoanTransactionType], on_date: date
    ) -> List[LoanTransaction]:
        return [
            transaction for transaction in self.find_non_reversed_by_loan_and_types(loan_id, types)
            if transaction.transaction_date >= on_date
        ]

    def find_transaction_ids_by_loan(self, loan_id: str) -> Set[str]:
        return {transaction.id for transaction in self.find_by_loan(loan_id)}

    def find_reversed_transaction_ids_by_loan(self, loan_id: str) -> Set[str]:
        return {transaction.id for transaction in self.find_by_loan(loan_id) if transaction.reversed}

    def find_transactions_for_accounting_bridge(
        self,
        loan_id: str,
        existing_transaction_ids: Set[str],
        existing_reversed_transaction_ids: Optional[Set[str]] = None
    ) -> List[LoanTransaction]:
        """
        Transactions the accounting bridge has not seen yet

        These are transactions created since the ids snapshot plus
        transactions that were already known but have been reversed since.
        """
        known_reversed = existing_reversed_transaction_ids or set()
        result = []
        for transaction in self.find_by_loan(loan_id):
            if transaction.id not in existing_transaction_ids:
                result.append(transaction)
            elif transaction.reversed and transaction.id not in known_reversed:
                result.append(transaction)
        return result

    def find_last_transaction_date_for_reprocessing(self, loan_id: str) -> Optional[date]:
        dates = [
            transaction.transaction_date for transaction in self.find_by_loan(loan_id)
            if not transaction.reversed and transaction.transaction_type not in _NON_REPROCESSING_TYPES
        ]
        return max(dates) if dates else None


class InMemoryLoanTransactionRepository(LoanTransactionRepository):
    """In-memory repository implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, LoanTransaction]] = {}
        self._lock = threading.RLock()

    def save(self, transaction: LoanTransaction) -> LoanTransaction:
        if transaction.loan_id is None:
            raise TransactionNotFoundError(f"Transaction {transaction.id} is not attached to a loan")
        with self._lock:
            self._data.setdefault(transaction.loan_id, {})[transaction.id] = transaction
        return transaction

    def save_all(self, transactions: Iterable[LoanTransaction]) -> None:
        with self._lock:
            for transaction in transactions:
                self.save(transaction)

    def find_by_loan(self, loan_id: str) -> List[LoanTransaction]:
        with self._lock:
            transactions = list(self._data.get(loan_id, {}).values())
        return sorted(transactions, key=chronological_key)

    def export_loan(self, loan_id: str) -> List[Dict[str, Any]]:
        """Persisted shape of a loan's transactions"""
        return [transaction.to_dict() for transaction in self.find_by_loan(loan_id)]

    def count(self, loan_id: str) -> int:
        with self._lock:
            return len(self._data.get(loan_id, {}))
