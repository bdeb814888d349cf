from typing import Optional, Union

from pymongo.errors import PyMongoError

# Server error code MongoDB uses for write conflicts inside transactions
WRITE_CONFLICT_CODE = 112


class TransferError(Exception):
    """Base class for errors raised by the transfer layer."""


class InvalidTransfer(TransferError, ValueError):
    """Raised when transfer arguments are rejected before any write."""


class AccountNotFound(TransferError):
    def __init__(self, account: str):
        self.account = account
        super().__init__(f"Account not found: {account}")


class InsufficientFunds(TransferError):
    """Raised when a debit leaves the balance field negative.

    ``balance`` is the value before the debit was applied.
    """

    def __init__(self, account: str, field: str, balance: Union[int, float]):
        self.account = account
        self.field = field
        self.balance = balance
        super().__init__(f"Insufficient funds: {balance}")


class DuplicateAccount(TransferError):
    def __init__(self, account: Optional[str] = None):
        self.account = account
        detail = f": {account}" if account else ""
        super().__init__(f"Account already exists{detail}")


class StoreError(Exception):
    """Base class for errors raised by the in-memory store."""


class WriteConflict(StoreError):
    """Raised on commit when another transaction already changed a written document."""

    def __init__(self, collection: str, document_id):
        self.collection = collection
        self.document_id = document_id
        super().__init__("WriteConflict")


class InvalidTransactionState(StoreError):
    pass


def is_write_conflict(exc: BaseException) -> bool:
    """Check whether an error raised by either store backend is a write conflict.

    Other transient transaction errors (network errors, primary stepdowns)
    are not conflicts.
    """
    if isinstance(exc, WriteConflict):
        return True
    if isinstance(exc, PyMongoError):
        if getattr(exc, "code", None) == WRITE_CONFLICT_CODE:
            return True
        details = getattr(exc, "details", None) or {}
        return details.get("codeName") == "WriteConflict"
    return False
