"""
Ledger Error Types

Closed set of failure kinds raised by the balance engine and the ledger
stores. Each error carries a kind, a human-readable message and structured
context; mapping kinds onto transport status codes is left to the caller.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Kinds of ledger failures"""
    USER_NOT_FOUND = "USER_NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    SELF_TRANSFER = "SELF_TRANSFER"
    STORAGE_FAILURE = "STORAGE_FAILURE"


class LedgerError(Exception):
    """Base class for all ledger failures"""

    kind: ErrorKind

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": self.context,
        }


class UserNotFound(LedgerError):
    """Referenced user does not exist"""

    kind = ErrorKind.USER_NOT_FOUND

    _MESSAGES = {
        None: "User not found.",
        "sender": "Sender not found.",
        "recipient": "Recipient not found.",
    }

    def __init__(self, user_id: int, role: Optional[str] = None):
        if role not in self._MESSAGES:
            raise ValueError(f"Unknown user role: {role}")
        self.user_id = user_id
        self.role = role
        context = {"user_id": user_id}
        if role:
            context["role"] = role
        super().__init__(self._MESSAGES[role], context)


class InsufficientFunds(LedgerError):
    """Requested withdrawal or transfer exceeds the current balance"""

    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, user_id: int, available: Decimal, requested: Decimal, message: Optional[str] = None):
        self.user_id = user_id
        self.available = available
        self.requested = requested
        super().__init__(
            message or "Insufficient funds.",
            {"user_id": user_id, "available": str(available), "requested": str(requested)}
        )


class SelfTransfer(LedgerError):
    """Transfer with identical sender and recipient"""

    kind = ErrorKind.SELF_TRANSFER

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__("Cannot transfer funds to yourself.", {"user_id": user_id})


class StorageFailure(LedgerError):
    """The unit of work could not be committed; nothing took effect"""

    kind = ErrorKind.STORAGE_FAILURE

    def __init__(self, message: str = "The operation did not take effect.",
                 original_error: Optional[BaseException] = None):
        self.original_error = original_error
        context = {}
        if original_error is not None:
            context["original_error"] = f"{type(original_error).__name__}: {original_error}"
        super().__init__(message, context)
