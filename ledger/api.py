import time
import uuid

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .errors import (
    LedgerServiceError,
    NotFoundError,
    RewardsDisabledError,
    StorageError,
    UnauthorizedError,
)
from .logging import bind_request_id, clear_request_context, configure_logging, get_logger
from .models import (
    BalanceResponse,
    MessageKind,
    CreateUserRequest,
    DepositRequest,
    MessageResponse,
    PointsRequest,
    PointsResponse,
    Transaction,
    TransactionRequest,
    User,
)
from .service import LedgerService

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Points Ledger API",
    description="User balances, balance transfers with an append-only transaction log, and reward points",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService(settings=settings)


def get_ledger_service() -> LedgerService:
    return ledger_service


def error_status(exc: LedgerServiceError) -> int:
    if isinstance(exc, (NotFoundError, RewardsDisabledError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, UnauthorizedError):
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_400_BAD_REQUEST


def _error_body(request: Request, kind: str, message: str) -> dict:
    body = {"error": {"kind": kind, "message": message}}
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return body


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    clear_request_context()
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(LedgerServiceError)
async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    return JSONResponse(status_code=error_status(exc), content=_error_body(request, exc.kind.value, exc.message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, MessageKind.INVALID_PAYLOAD.value, problems or "Invalid payload"),
    )


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    log.error("storage_failure", error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, "StorageError", "Ledger storage unavailable"),
    )


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "points-ledger"}


@app.post("/users", response_model=User, status_code=status.HTTP_201_CREATED, tags=["Users"])
def create_user(request: CreateUserRequest, service: LedgerService = Depends(get_ledger_service)) -> User:
    return service.create_user(request)


@app.get("/users", response_model=list[User], tags=["Users"])
def list_users(service: LedgerService = Depends(get_ledger_service)) -> list[User]:
    return service.list_users()


@app.get("/users/{user_id}", response_model=User, tags=["Users"])
def get_user(user_id: int, service: LedgerService = Depends(get_ledger_service)) -> User:
    return service.get_user(user_id)


@app.post("/users/{user_id}/deposit", response_model=MessageResponse, tags=["Users"])
def deposit_funds(
    user_id: int, request: DepositRequest, service: LedgerService = Depends(get_ledger_service)
) -> MessageResponse:
    return service.deposit_funds(user_id, request)


@app.get("/users/{user_id}/balance", response_model=BalanceResponse, tags=["Users"])
def get_user_balance(user_id: int, service: LedgerService = Depends(get_ledger_service)) -> BalanceResponse:
    return BalanceResponse(user_id=user_id, balance=service.get_user_balance(user_id))


@app.get("/users/{user_id}/points", response_model=PointsResponse, tags=["Rewards"])
def get_user_points(user_id: int, service: LedgerService = Depends(get_ledger_service)) -> PointsResponse:
    return PointsResponse(user_id=user_id, points=service.get_user_points(user_id))


@app.post("/users/{user_id}/redeem", response_model=MessageResponse, tags=["Rewards"])
def redeem_points(
    user_id: int, request: PointsRequest, service: LedgerService = Depends(get_ledger_service)
) -> MessageResponse:
    return service.redeem_points(user_id, request)


@app.get("/users/{user_id}/transactions", response_model=list[Transaction], tags=["Transactions"])
def get_transaction_history(
    user_id: int, service: LedgerService = Depends(get_ledger_service)
) -> list[Transaction]:
    return service.get_transaction_history(user_id)


@app.post("/transactions", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Transactions"])
def send_transaction(
    request: TransactionRequest, service: LedgerService = Depends(get_ledger_service)
) -> Transaction:
    return service.send_transaction(request)


@app.get("/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(transaction_id: int, service: LedgerService = Depends(get_ledger_service)) -> Transaction:
    return service.get_transaction(transaction_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
