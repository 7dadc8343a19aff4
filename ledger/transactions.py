from datetime import datetime, timezone

from .errors import NotFoundError
from .ids import IdAllocator
from .models import Transaction
from .storage import LedgerStorage


class TransactionLog:
    """Append-only id -> Transaction map.

    ``append`` does no validation; the transfer engine checks amount and
    participants before calling it.
    """

    def __init__(self, storage: LedgerStorage, ids: IdAllocator):
        self._transactions = storage.transactions
        self._ids = ids

    def append(self, from_user_id: int, to_user_id: int, amount: int) -> Transaction:
        transaction = Transaction(
            id=self._ids.next_id(),
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            created_at=datetime.now(timezone.utc),
        )
        self._transactions.insert(transaction.id, transaction.to_record())
        return transaction

    def discard(self, transaction_id: int) -> None:
        # Only for undoing the append of a transfer that failed before committing.
        self._transactions.remove(transaction_id)

    def get(self, transaction_id: int) -> Transaction:
        record = self._transactions.get(transaction_id)
        if record is None:
            raise NotFoundError("Transaction not found")
        return Transaction.model_validate(record)

    def history(self, user_id: int) -> list[Transaction]:
        transactions = [
            t for t in (Transaction.model_validate(r) for r in self._transactions.values())
            if t.involves(user_id)
        ]
        if not transactions:
            raise NotFoundError("No transactions found")
        return transactions

    def __len__(self) -> int:
        return len(self._transactions)
