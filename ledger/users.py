import re
from datetime import datetime, timezone
from typing import Optional

from .config import Settings
from .errors import (
    BalanceOverflowError,
    InsufficientBalanceError,
    InsufficientPointsError,
    InvalidPayloadError,
    NotFoundError,
)
from .ids import IdAllocator
from .logging import get_logger
from .models import U64_MAX, CreateUserRequest, User
from .storage import LedgerStorage

log = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
USERNAME_MAX_LENGTH = 10


def derive_username(first_name: str, last_name: str) -> str:
    return f"{first_name.lower()}{last_name.lower()}"[:USERNAME_MAX_LENGTH]


class UserLedger:
    """Durable id -> User map. Records are replaced whole on every write."""

    def __init__(self, storage: LedgerStorage, ids: IdAllocator, settings: Settings):
        self._users = storage.users
        self._ids = ids
        self._settings = settings
        self._email_index: Optional[dict[str, int]] = None
        if settings.email_index_enabled:
            self._email_index = {
                record["email"]: key for key, record in self._users.iterate()
            }

    def create(self, request: CreateUserRequest) -> User:
        username = self._validate(request)

        user = User(
            id=self._ids.next_id(),
            username=username,
            first_name=request.first_name,
            last_name=request.last_name,
            email=request.email,
            phone_number=request.phone_number,
            created_at=datetime.now(timezone.utc),
            balance=0,
            points=0,
        )
        self._users.insert(user.id, user.to_record())
        if self._email_index is not None:
            self._email_index[user.email] = user.id
        log.info("user_created", user_id=user.id, username=user.username)
        return user.model_copy()

    def _validate(self, request: CreateUserRequest) -> str:
        if self._settings.require_phone_number:
            if not (request.first_name and request.last_name and request.email and request.phone_number):
                raise InvalidPayloadError(
                    "Ensure 'first_name', 'last_name', 'email', and 'phone_number' are provided."
                )
        if not request.email:
            raise InvalidPayloadError("Ensure 'email' is provided.")

        username = request.username
        if not username:
            if not (request.first_name and request.last_name):
                raise InvalidPayloadError(
                    "Ensure 'username' or both 'first_name' and 'last_name' are provided."
                )
            username = derive_username(request.first_name, request.last_name)

        if not EMAIL_PATTERN.match(request.email):
            raise InvalidPayloadError("Invalid email address format")
        if request.phone_number and not PHONE_PATTERN.match(request.phone_number):
            raise InvalidPayloadError("Invalid phone number format")
        if self.email_exists(request.email):
            raise InvalidPayloadError("Email already exists")
        return username

    def email_exists(self, email: str) -> bool:
        if self._email_index is not None and email in self._email_index:
            return True
        # the index only knows what this process wrote; a miss is confirmed against storage
        for key, record in self._users.iterate():
            if record["email"] == email:
                if self._email_index is not None:
                    self._email_index[email] = key
                return True
        return False

    def get(self, user_id: int) -> User:
        record = self._users.get(user_id)
        if record is None:
            raise NotFoundError("User not found")
        return User.model_validate(record)

    def exists(self, user_id: int) -> bool:
        return self._users.get(user_id) is not None

    def list_all(self) -> list[User]:
        return [User.model_validate(record) for record in self._users.values()]

    def put(self, user: User) -> None:
        self._users.insert(user.id, user.to_record())

    def get_balance(self, user_id: int) -> int:
        return self.get(user_id).balance

    def get_points(self, user_id: int) -> int:
        return self.get(user_id).points

    def credit(self, user_id: int, amount: int) -> User:
        user = self.get(user_id)
        if user.balance + amount > U64_MAX:
            raise BalanceOverflowError("Balance overflow")
        user.balance += amount
        self.put(user)
        return user

    def debit(self, user_id: int, amount: int) -> User:
        user = self.get(user_id)
        if user.balance < amount:
            raise InsufficientBalanceError("Insufficient balance")
        user.balance -= amount
        self.put(user)
        return user

    def add_points(self, user_id: int, points: int) -> User:
        user = self.get(user_id)
        user.points = min(user.points + points, U64_MAX)
        self.put(user)
        return user

    def spend_points(self, user_id: int, points: int) -> User:
        user = self.get(user_id)
        if user.points < points:
            # no-op write of the unchanged record
            self.put(user)
            raise InsufficientPointsError("Insufficient points")
        user.points -= points
        self.put(user)
        return user
