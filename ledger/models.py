from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict

U64_MAX = 2**64 - 1


class MessageKind(str, Enum):
    SUCCESS = "Success"
    ERROR = "Error"
    NOT_FOUND = "NotFound"
    INVALID_PAYLOAD = "InvalidPayload"
    UNAUTHORIZED = "Unauthorized"


class TransferState(str, Enum):
    VALIDATING = "VALIDATING"
    DEBITING = "DEBITING"
    CREDITING = "CREDITING"
    LOGGING = "LOGGING"
    REWARDING = "REWARDING"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class CreateUserRequest(BaseModel):
    username: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone_number: str = ""

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "first_name": "Alice",
            "last_name": "Liddell",
            "email": "alice@example.com",
            "phone_number": "+14155550100",
        }
    })


class DepositRequest(BaseModel):
    amount: int = Field(..., ge=0, le=U64_MAX)


class TransactionRequest(BaseModel):
    from_user_id: int = Field(..., ge=0, le=U64_MAX)
    to_user_id: int = Field(..., ge=0, le=U64_MAX)
    amount: int = Field(..., ge=0, le=U64_MAX)

    model_config = ConfigDict(json_schema_extra={
        "example": {"from_user_id": 0, "to_user_id": 1, "amount": 30}
    })


class PointsRequest(BaseModel):
    points: int = Field(..., ge=0, le=U64_MAX)


class User(BaseModel):
    id: int = Field(..., ge=0, le=U64_MAX)
    username: str
    first_name: str = ""
    last_name: str = ""
    email: str
    phone_number: str = ""
    created_at: datetime
    balance: int = Field(default=0, ge=0, le=U64_MAX)
    points: int = Field(default=0, ge=0, le=U64_MAX)

    model_config = ConfigDict(from_attributes=True)

    def to_record(self) -> dict:
        return self.model_dump(mode="json")


class Transaction(BaseModel):
    id: int = Field(..., ge=0, le=U64_MAX)
    from_user_id: int = Field(..., ge=0, le=U64_MAX)
    to_user_id: int = Field(..., ge=0, le=U64_MAX)
    amount: int = Field(..., gt=0, le=U64_MAX)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)

    def involves(self, user_id: int) -> bool:
        return user_id in (self.from_user_id, self.to_user_id)

    def to_record(self) -> dict:
        return self.model_dump(mode="json")


class MessageResponse(BaseModel):
    kind: MessageKind = MessageKind.SUCCESS
    message: str


class BalanceResponse(BaseModel):
    user_id: int
    balance: int


class PointsResponse(BaseModel):
    user_id: int
    points: int
