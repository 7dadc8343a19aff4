"""Balance transfer between two users.

One transfer walks VALIDATING -> DEBITING -> CREDITING -> LOGGING ->
REWARDING -> COMMITTED. Rejections happen only in VALIDATING or DEBITING,
before anything is written. A failure after the first write (storage or id
allocation) restores both user records and drops the log entry of this
transfer before re-raising, so total balance is conserved either way.
"""

from dataclasses import dataclass, field
from typing import Optional

from .config import Settings
from .errors import (
    BalanceOverflowError,
    InsufficientBalanceError,
    InvalidPayloadError,
    LedgerServiceError,
    NotFoundError,
)
from .logging import get_logger
from .models import U64_MAX, Transaction, TransactionRequest, TransferState, User
from .transactions import TransactionLog
from .users import UserLedger

log = get_logger(__name__)


@dataclass
class TransferAttempt:
    request: TransactionRequest
    state: TransferState = TransferState.VALIDATING
    trail: list[TransferState] = field(default_factory=lambda: [TransferState.VALIDATING])
    transaction: Optional[Transaction] = None
    error: Optional[Exception] = None

    def advance(self, state: TransferState) -> None:
        log.debug(
            "transfer_state",
            from_user_id=self.request.from_user_id,
            to_user_id=self.request.to_user_id,
            previous=self.state.value,
            state=state.value,
        )
        self.state = state
        self.trail.append(state)


class TransferEngine:
    def __init__(self, users: UserLedger, transactions: TransactionLog, settings: Settings):
        self.users = users
        self.transactions = transactions
        self.settings = settings
        self.last_attempt: Optional[TransferAttempt] = None

    def transfer(self, request: TransactionRequest) -> Transaction:
        attempt = TransferAttempt(request=request)
        self.last_attempt = attempt
        try:
            sender, recipient = self._validate(attempt)
            self._debit(attempt, sender)
            self._check_credit(attempt, recipient)
        except LedgerServiceError as e:
            attempt.error = e
            attempt.advance(TransferState.REJECTED)
            log.info(
                "transfer_rejected",
                from_user_id=request.from_user_id,
                to_user_id=request.to_user_id,
                amount=request.amount,
                kind=e.kind.value,
                reason=e.message,
            )
            raise

        return self._commit(attempt, sender, recipient)

    def _validate(self, attempt: TransferAttempt) -> tuple[User, User]:
        request = attempt.request
        if request.amount == 0:
            raise InvalidPayloadError("Amount must be greater than 0.")
        try:
            sender = self.users.get(request.from_user_id)
        except NotFoundError:
            raise NotFoundError("Sender not found") from None
        try:
            recipient = self.users.get(request.to_user_id)
        except NotFoundError:
            raise NotFoundError("Recipient not found") from None
        if sender.id == recipient.id:
            raise InvalidPayloadError("Sender and recipient must be different users.")
        return sender, recipient

    def _debit(self, attempt: TransferAttempt, sender: User) -> None:
        attempt.advance(TransferState.DEBITING)
        if sender.balance < attempt.request.amount:
            raise InsufficientBalanceError("Insufficient balance")

    def _check_credit(self, attempt: TransferAttempt, recipient: User) -> None:
        if recipient.balance + attempt.request.amount > U64_MAX:
            raise BalanceOverflowError("Recipient balance overflow")

    def _commit(self, attempt: TransferAttempt, sender: User, recipient: User) -> Transaction:
        amount = attempt.request.amount
        debited = sender.model_copy(update={"balance": sender.balance - amount})
        credited = recipient.model_copy(update={"balance": recipient.balance + amount})

        try:
            attempt.advance(TransferState.CREDITING)
            self.users.put(debited)
            self.users.put(credited)

            attempt.advance(TransferState.LOGGING)
            attempt.transaction = self.transactions.append(sender.id, recipient.id, amount)

            if self.settings.rewards_enabled:
                attempt.advance(TransferState.REWARDING)
                self.users.add_points(sender.id, amount // self.settings.points_divisor)
        except Exception as e:
            attempt.error = e
            self._restore(attempt, sender, recipient)
            raise

        attempt.advance(TransferState.COMMITTED)
        log.info(
            "transfer_committed",
            transaction_id=attempt.transaction.id,
            from_user_id=sender.id,
            to_user_id=recipient.id,
            amount=amount,
        )
        return attempt.transaction

    def _restore(self, attempt: TransferAttempt, sender: User, recipient: User) -> None:
        log.warning("transfer_rollback", state=attempt.state.value, error=str(attempt.error))
        try:
            self.users.put(sender)
            self.users.put(recipient)
            if attempt.transaction is not None:
                self.transactions.discard(attempt.transaction.id)
                attempt.transaction = None
        except Exception:
            log.exception("transfer_rollback_failed", from_user_id=sender.id, to_user_id=recipient.id)
