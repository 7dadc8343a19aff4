"""
Points Ledger

This module provides:
- Users with a currency balance and reward points
- Balance transfers that conserve total balance
- An append-only transaction log with per-user history
- Deposits and points redemption
- Pluggable storage: in-memory or SQLite
"""

from .models import (
    CreateUserRequest,
    DepositRequest,
    MessageResponse,
    PointsRequest,
    Transaction,
    TransactionRequest,
    TransferState,
    User,
)
from .service import LedgerService
from .storage import InMemoryStorage, LedgerStorage, SQLiteStorage

__all__ = [
    "CreateUserRequest",
    "DepositRequest",
    "MessageResponse",
    "PointsRequest",
    "Transaction",
    "TransactionRequest",
    "TransferState",
    "User",
    "LedgerService",
    "InMemoryStorage",
    "LedgerStorage",
    "SQLiteStorage",
]
