"""
Unit Tests for the Ledger Service

Tests cover:
1. User creation and validation
2. Deposits
3. Transfer flow and balance conservation
4. Points award and redemption
5. Transaction history
6. Rollback when storage fails mid-transfer
"""

import pytest

from ledger.config import Settings
from ledger.errors import (
    BalanceOverflowError,
    IdAllocationError,
    InsufficientBalanceError,
    InsufficientPointsError,
    InvalidPayloadError,
    NotFoundError,
    RewardsDisabledError,
    StorageError,
)
from ledger.models import (
    U64_MAX,
    CreateUserRequest,
    DepositRequest,
    MessageKind,
    PointsRequest,
    TransactionRequest,
    TransferState,
)
from ledger.service import LedgerService
from ledger.storage import CounterCell, InMemoryStorage, KeyedMap


def make_service(storage=None, **overrides) -> LedgerService:
    return LedgerService(storage=storage or InMemoryStorage(), settings=Settings(**overrides))


def create(service: LedgerService, username: str, email: str):
    return service.create_user(CreateUserRequest(username=username, email=email))


def alice_and_bob(service: LedgerService, alice_funds: int = 100):
    alice = create(service, "alice", "alice@x.com")
    bob = create(service, "bob", "bob@x.com")
    if alice_funds:
        service.deposit_funds(alice.id, DepositRequest(amount=alice_funds))
    return alice, bob


class FlakyCounter(CounterCell):
    def __init__(self, storage: "FlakyStorage", inner: CounterCell):
        self._storage = storage
        self._inner = inner

    def get(self) -> int:
        if self._storage.fail_counter:
            raise StorageError("counter unreadable")
        return self._inner.get()

    def set(self, value: int) -> None:
        if self._storage.fail_counter:
            raise StorageError("counter unwritable")
        self._inner.set(value)


class FlakyMap(KeyedMap):
    def __init__(self, storage: "FlakyStorage", name: str, inner: KeyedMap):
        self._storage = storage
        self._name = name
        self._inner = inner

    def get(self, key):
        return self._inner.get(key)

    def insert(self, key, value):
        if self._name in self._storage.failing_maps:
            raise StorageError(f"{self._name} unwritable")
        return self._inner.insert(key, value)

    def remove(self, key):
        return self._inner.remove(key)

    def iterate(self):
        return self._inner.iterate()

    def __len__(self):
        return len(self._inner)


class FlakyStorage(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.fail_counter = False
        self.failing_maps: set[str] = set()

    def counter(self, name):
        return FlakyCounter(self, super().counter(name))

    def map(self, name):
        return FlakyMap(self, name, super().map(name))


class TestCreateUser:
    """Tests for user creation."""

    def test_new_user_starts_empty(self):
        """Test that a new user has zero balance and points."""
        service = make_service()

        user = create(service, "alice", "alice@x.com")

        assert user.username == "alice"
        assert user.balance == 0
        assert user.points == 0
        assert user.created_at is not None
        assert service.get_user_balance(user.id) == 0
        assert service.get_user_points(user.id) == 0

    def test_duplicate_email_rejected(self):
        """Test that a second user with the same email fails."""
        service = make_service()
        create(service, "alice", "alice@x.com")

        with pytest.raises(InvalidPayloadError, match="Email already exists"):
            create(service, "alice2", "alice@x.com")

        assert len(service.list_users()) == 1

    def test_duplicate_email_rejected_across_services_sharing_storage(self):
        """Test that an email written by another service on the same storage is still seen."""
        storage = InMemoryStorage()
        first = make_service(storage)
        second = make_service(storage)

        create(first, "alice", "alice@x.com")

        with pytest.raises(InvalidPayloadError, match="Email already exists"):
            create(second, "alice2", "alice@x.com")

        emails = [user.email for user in second.list_users()]
        assert emails == ["alice@x.com"]

    def test_error_kinds(self):
        """Test that each error category carries its message kind."""
        assert InvalidPayloadError("x").kind == MessageKind.INVALID_PAYLOAD
        assert InsufficientBalanceError("x").kind == MessageKind.ERROR
        assert InsufficientPointsError("x").kind.value == "Error"

    def test_duplicate_email_rejected_without_index(self):
        """Test the full-scan duplicate check."""
        service = make_service(email_index_enabled=False)
        create(service, "alice", "alice@x.com")

        with pytest.raises(InvalidPayloadError):
            create(service, "other", "alice@x.com")

    @pytest.mark.parametrize("email", ["alice", "alice@x", "al ice@x.com", "@x.com", "alice@@x.com"])
    def test_malformed_email_rejected(self, email):
        service = make_service()

        with pytest.raises(InvalidPayloadError, match="Invalid email"):
            create(service, "alice", email)

    def test_empty_fields_rejected(self):
        service = make_service()

        with pytest.raises(InvalidPayloadError):
            create(service, "alice", "")
        with pytest.raises(InvalidPayloadError):
            service.create_user(CreateUserRequest(email="alice@x.com"))

    def test_username_derived_from_names(self):
        """Test that the username is built from first and last name."""
        service = make_service()

        user = service.create_user(CreateUserRequest(
            first_name="Alice",
            last_name="Liddell",
            email="alice@x.com",
        ))

        assert user.username == "alicelidde"
        assert user.first_name == "Alice"

    def test_phone_number_required_when_configured(self):
        service = make_service(require_phone_number=True)

        with pytest.raises(InvalidPayloadError):
            service.create_user(CreateUserRequest(first_name="Alice", last_name="L", email="alice@x.com"))
        with pytest.raises(InvalidPayloadError, match="phone"):
            service.create_user(CreateUserRequest(
                first_name="Alice", last_name="L", email="alice@x.com", phone_number="0123",
            ))

        user = service.create_user(CreateUserRequest(
            first_name="Alice", last_name="L", email="alice@x.com", phone_number="+14155550100",
        ))
        assert user.phone_number == "+14155550100"

    def test_returned_user_is_a_copy(self):
        """Test that mutating a returned record does not touch the store."""
        service = make_service()
        user = create(service, "alice", "alice@x.com")

        user.balance = 1_000_000

        assert service.get_user_balance(user.id) == 0

    def test_unknown_user(self):
        service = make_service()

        with pytest.raises(NotFoundError):
            service.get_user_balance(42)
        with pytest.raises(NotFoundError):
            service.get_user_points(42)


class TestIdentifiers:
    """Tests for id allocation across users and transactions."""

    def test_shared_counter(self):
        service = make_service()
        alice, bob = alice_and_bob(service)

        tx = service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=10))

        assert (alice.id, bob.id, tx.id) == (0, 1, 2)

    def test_per_entity_counters(self):
        service = make_service(id_namespace="per_entity")
        alice, bob = alice_and_bob(service)

        tx = service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=10))

        assert (alice.id, bob.id, tx.id) == (0, 1, 0)

    def test_counter_failure_aborts_user_creation(self):
        storage = FlakyStorage()
        service = make_service(storage)
        storage.fail_counter = True

        with pytest.raises(IdAllocationError):
            create(service, "alice", "alice@x.com")

        storage.fail_counter = False
        assert service.list_users() == []


class TestUserLedgerPrimitives:
    """Tests for the single-record balance primitives."""

    def test_debit_and_credit(self):
        service = make_service()
        alice = create(service, "alice", "alice@x.com")

        service.users.credit(alice.id, 50)
        service.users.debit(alice.id, 20)

        assert service.get_user_balance(alice.id) == 30
        assert service.users.exists(alice.id)
        assert not service.users.exists(alice.id + 1)

    def test_debit_checks_balance_first(self):
        service = make_service()
        alice = create(service, "alice", "alice@x.com")
        service.users.credit(alice.id, 10)

        with pytest.raises(InsufficientBalanceError):
            service.users.debit(alice.id, 11)

        assert service.get_user_balance(alice.id) == 10


class TestDeposit:
    """Tests for deposits."""

    def test_deposit_increases_balance(self):
        service = make_service()
        alice = create(service, "alice", "alice@x.com")

        response = service.deposit_funds(alice.id, DepositRequest(amount=100))

        assert response.message == f"Deposited 100 units of currency to user {alice.id}"
        assert service.get_user_balance(alice.id) == 100

    def test_zero_deposit_rejected(self):
        service = make_service()
        alice = create(service, "alice", "alice@x.com")

        with pytest.raises(InvalidPayloadError):
            service.deposit_funds(alice.id, DepositRequest(amount=0))

    def test_deposit_to_unknown_user(self):
        service = make_service()

        with pytest.raises(NotFoundError):
            service.deposit_funds(7, DepositRequest(amount=5))

    def test_deposit_overflow_rejected(self):
        service = make_service()
        alice = create(service, "alice", "alice@x.com")
        service.deposit_funds(alice.id, DepositRequest(amount=U64_MAX))

        with pytest.raises(BalanceOverflowError):
            service.deposit_funds(alice.id, DepositRequest(amount=1))

        assert service.get_user_balance(alice.id) == U64_MAX


class TestTransferFlow:
    """Tests for the transfer flow."""

    def test_worked_example(self):
        """Test alice sends 30 of her 100 to bob."""
        service = make_service()
        alice, bob = alice_and_bob(service, alice_funds=100)

        tx = service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        assert service.get_user_balance(alice.id) == 70
        assert service.get_user_balance(bob.id) == 30
        assert service.get_user_points(alice.id) == 3
        assert service.get_user_points(bob.id) == 0
        assert len(service.transactions) == 1
        assert tx.amount == 30
        assert tx.from_user_id == alice.id
        assert tx.to_user_id == bob.id
        assert service.get_transaction(tx.id) == tx

    def test_transfer_conserves_total(self):
        service = make_service()
        alice, bob = alice_and_bob(service, alice_funds=500)
        service.deposit_funds(bob.id, DepositRequest(amount=40))

        for amount in (1, 9, 10, 99, 381):
            before = service.get_user_balance(alice.id) + service.get_user_balance(bob.id)
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=amount))
            after = service.get_user_balance(alice.id) + service.get_user_balance(bob.id)
            assert before == after == 540

        assert service.get_user_balance(alice.id) == 0

    def test_state_trail(self):
        service = make_service()
        alice, bob = alice_and_bob(service)

        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        assert service.transfers.last_attempt.trail == [
            TransferState.VALIDATING,
            TransferState.DEBITING,
            TransferState.CREDITING,
            TransferState.LOGGING,
            TransferState.REWARDING,
            TransferState.COMMITTED,
        ]

    def test_zero_amount_rejected(self):
        service = make_service()
        alice, bob = alice_and_bob(service)

        with pytest.raises(InvalidPayloadError):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=0))

        assert service.get_user_balance(alice.id) == 100
        assert service.get_user_balance(bob.id) == 0
        assert service.transfers.last_attempt.trail == [TransferState.VALIDATING, TransferState.REJECTED]

    def test_insufficient_balance_rejected(self):
        service = make_service()
        alice, bob = alice_and_bob(service, alice_funds=20)

        with pytest.raises(InsufficientBalanceError, match="Insufficient balance"):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=21))

        assert service.get_user_balance(alice.id) == 20
        assert service.get_user_balance(bob.id) == 0
        assert service.get_user_points(alice.id) == 0
        assert len(service.transactions) == 0
        assert service.transfers.last_attempt.state == TransferState.REJECTED

    def test_unknown_participants(self):
        service = make_service()
        alice, _ = alice_and_bob(service)

        with pytest.raises(NotFoundError, match="Sender not found"):
            service.send_transaction(TransactionRequest(from_user_id=99, to_user_id=alice.id, amount=1))
        with pytest.raises(NotFoundError, match="Recipient not found"):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=99, amount=1))

        assert service.get_user_balance(alice.id) == 100

    def test_self_transfer_rejected(self):
        service = make_service()
        alice, _ = alice_and_bob(service)

        with pytest.raises(InvalidPayloadError):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=alice.id, amount=10))

        assert service.get_user_balance(alice.id) == 100

    def test_recipient_overflow_rejected(self):
        service = make_service()
        alice, bob = alice_and_bob(service)
        service.deposit_funds(bob.id, DepositRequest(amount=U64_MAX))

        with pytest.raises(BalanceOverflowError):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=1))

        assert service.get_user_balance(alice.id) == 100
        assert service.get_user_balance(bob.id) == U64_MAX
        assert len(service.transactions) == 0


class TestTransferRollback:
    """Tests that a storage failure mid-transfer leaves everything unchanged."""

    def test_log_write_failure_restores_balances(self):
        storage = FlakyStorage()
        service = make_service(storage)
        alice, bob = alice_and_bob(service)
        storage.failing_maps.add("transactions")

        with pytest.raises(StorageError):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        assert service.get_user_balance(alice.id) == 100
        assert service.get_user_balance(bob.id) == 0
        assert len(service.transactions) == 0

    def test_id_allocation_failure_restores_balances(self):
        storage = FlakyStorage()
        service = make_service(storage)
        alice, bob = alice_and_bob(service)
        storage.fail_counter = True

        with pytest.raises(IdAllocationError):
            service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        storage.fail_counter = False
        assert service.get_user_balance(alice.id) == 100
        assert service.get_user_balance(bob.id) == 0
        assert service.get_user_points(alice.id) == 0
        assert len(service.transactions) == 0


class TestPoints:
    """Tests for points award and redemption."""

    def test_points_use_integer_division(self):
        service = make_service()
        alice, bob = alice_and_bob(service, alice_funds=100)

        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=9))
        assert service.get_user_points(alice.id) == 0

        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=29))
        assert service.get_user_points(alice.id) == 2

    def test_custom_divisor(self):
        service = make_service(points_divisor=5)
        alice, bob = alice_and_bob(service)

        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        assert service.get_user_points(alice.id) == 6

    def test_redeem_points(self):
        service = make_service()
        alice, bob = alice_and_bob(service)
        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        response = service.redeem_points(alice.id, PointsRequest(points=2))

        assert response.message == f"Redeemed 2 points from user {alice.id}"
        assert service.get_user_points(alice.id) == 1

    def test_redeem_more_than_held(self):
        service = make_service()
        alice, bob = alice_and_bob(service)
        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        with pytest.raises(InsufficientPointsError, match="Insufficient points"):
            service.redeem_points(alice.id, PointsRequest(points=4))

        assert service.get_user_points(alice.id) == 3
        assert service.get_user_balance(alice.id) == 70

    def test_redeem_unknown_user(self):
        service = make_service()

        with pytest.raises(NotFoundError):
            service.redeem_points(3, PointsRequest(points=1))

    def test_rewards_disabled(self):
        service = make_service(rewards_enabled=False)
        alice, bob = alice_and_bob(service)

        service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=30))

        assert service.users.get_points(alice.id) == 0
        assert TransferState.REWARDING not in service.transfers.last_attempt.trail
        with pytest.raises(RewardsDisabledError):
            service.get_user_points(alice.id)
        with pytest.raises(RewardsDisabledError):
            service.redeem_points(alice.id, PointsRequest(points=0))


class TestTransactionHistory:
    """Tests for transaction history retrieval."""

    def test_history_lists_both_directions_in_id_order(self):
        service = make_service()
        alice, bob = alice_and_bob(service)
        carol = create(service, "carol", "carol@x.com")

        t1 = service.send_transaction(TransactionRequest(from_user_id=alice.id, to_user_id=bob.id, amount=50))
        t2 = service.send_transaction(TransactionRequest(from_user_id=bob.id, to_user_id=carol.id, amount=20))
        t3 = service.send_transaction(TransactionRequest(from_user_id=bob.id, to_user_id=alice.id, amount=5))

        assert [t.id for t in service.get_transaction_history(bob.id)] == [t1.id, t2.id, t3.id]
        assert [t.id for t in service.get_transaction_history(alice.id)] == [t1.id, t3.id]
        assert [t.id for t in service.get_transaction_history(carol.id)] == [t2.id]

    def test_empty_history_not_found(self):
        service = make_service()
        alice, _ = alice_and_bob(service)

        with pytest.raises(NotFoundError, match="No transactions found"):
            service.get_transaction_history(alice.id)

    def test_unknown_transaction(self):
        service = make_service()

        with pytest.raises(NotFoundError):
            service.get_transaction(12)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
