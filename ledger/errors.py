"""Error taxonomy for ledger operations.

Every business outcome other than success is one of these exceptions. The
``kind`` attribute names the failure category callers switch on
(``InvalidPayload``, ``NotFound``, ``Error``, ``Unauthorized``).
``StorageError`` and its subclasses are not business outcomes: they mean the
durable store could not be trusted and the operation was aborted.
"""

from .models import MessageKind


class LedgerServiceError(Exception):
    kind = MessageKind.ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidPayloadError(LedgerServiceError):
    kind = MessageKind.INVALID_PAYLOAD


class NotFoundError(LedgerServiceError):
    kind = MessageKind.NOT_FOUND


class UnauthorizedError(LedgerServiceError):
    kind = MessageKind.UNAUTHORIZED


class BusinessRuleError(LedgerServiceError):
    kind = MessageKind.ERROR


class InsufficientBalanceError(BusinessRuleError):
    pass


class InsufficientPointsError(BusinessRuleError):
    pass


class BalanceOverflowError(BusinessRuleError):
    pass


class RewardsDisabledError(BusinessRuleError):
    pass


class StorageError(Exception):
    pass


class IdAllocationError(StorageError):
    pass
