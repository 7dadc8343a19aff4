import threading
from functools import wraps
from typing import Optional

from .config import Settings, get_settings
from .errors import InvalidPayloadError, RewardsDisabledError
from .ids import IdAllocator
from .logging import get_logger
from .models import (
    CreateUserRequest,
    DepositRequest,
    MessageResponse,
    PointsRequest,
    Transaction,
    TransactionRequest,
    User,
)
from .storage import LedgerStorage, open_storage
from .transactions import TransactionLog
from .transfer import TransferEngine
from .users import UserLedger

log = get_logger(__name__)


def _serialized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class LedgerService:
    """Entry point for every ledger operation.

    Each public method runs to completion under one lock, so multi-step
    operations are atomic with respect to each other even when the HTTP layer
    calls in from a thread pool. Results are copies; mutating them never
    touches the store.
    """

    def __init__(self, storage: Optional[LedgerStorage] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.storage = storage or open_storage(self.settings)
        self._lock = threading.RLock()

        if self.settings.id_namespace == "per_entity":
            user_ids = IdAllocator(self.storage, "user_ids")
            transaction_ids = IdAllocator(self.storage, "transaction_ids")
        else:
            user_ids = transaction_ids = IdAllocator(self.storage, "ids")

        self.users = UserLedger(self.storage, user_ids, self.settings)
        self.transactions = TransactionLog(self.storage, transaction_ids)
        self.transfers = TransferEngine(self.users, self.transactions, self.settings)

    @_serialized
    def create_user(self, request: CreateUserRequest) -> User:
        return self.users.create(request)

    @_serialized
    def get_user(self, user_id: int) -> User:
        return self.users.get(user_id)

    @_serialized
    def list_users(self) -> list[User]:
        return self.users.list_all()

    @_serialized
    def deposit_funds(self, user_id: int, request: DepositRequest) -> MessageResponse:
        if request.amount == 0:
            raise InvalidPayloadError("Amount must be greater than 0.")
        self.users.credit(user_id, request.amount)
        log.info("deposit", user_id=user_id, amount=request.amount)
        return MessageResponse(
            message=f"Deposited {request.amount} units of currency to user {user_id}"
        )

    @_serialized
    def send_transaction(self, request: TransactionRequest) -> Transaction:
        return self.transfers.transfer(request)

    @_serialized
    def get_transaction(self, transaction_id: int) -> Transaction:
        return self.transactions.get(transaction_id)

    @_serialized
    def redeem_points(self, user_id: int, request: PointsRequest) -> MessageResponse:
        self._require_rewards()
        self.users.spend_points(user_id, request.points)
        log.info("points_redeemed", user_id=user_id, points=request.points)
        return MessageResponse(message=f"Redeemed {request.points} points from user {user_id}")

    @_serialized
    def get_transaction_history(self, user_id: int) -> list[Transaction]:
        return self.transactions.history(user_id)

    @_serialized
    def get_user_balance(self, user_id: int) -> int:
        return self.users.get_balance(user_id)

    @_serialized
    def get_user_points(self, user_id: int) -> int:
        self._require_rewards()
        return self.users.get_points(user_id)

    def close(self) -> None:
        self.storage.close()

    def _require_rewards(self) -> None:
        if not self.settings.rewards_enabled:
            raise RewardsDisabledError("Rewards are disabled")
