"""
Transaction Records Module

Append-only records of balance-affecting events. A record is written once per
ledger event (two for a transfer, one per side) and never mutated afterwards.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Any
from enum import Enum

from .amounts import ZERO, apply_delta, format_amount, negate

COMMENT_MAX_LENGTH = 255


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "DEPOSIT"            # Money enters the ledger
    WITHDRAW = "WITHDRAW"          # Money leaves the ledger
    TRANSFER_OUT = "TRANSFER_OUT"  # Sender side of an internal transfer
    TRANSFER_IN = "TRANSFER_IN"    # Recipient side of an internal transfer

    @property
    def is_transfer(self) -> bool:
        return self in (TransactionType.TRANSFER_OUT, TransactionType.TRANSFER_IN)

    def signed_amount(self, amount: Decimal) -> Decimal:
        """Balance delta this type of record implies for its own user"""
        if self is TransactionType.DEPOSIT:
            return amount
        if self is TransactionType.TRANSFER_IN:
            return amount
        if self is TransactionType.WITHDRAW:
            return negate(amount)
        if self is TransactionType.TRANSFER_OUT:
            return negate(amount)
        raise ValueError(f"Unsupported transaction type: {self}")


@dataclass(frozen=True)
class TransactionRecord:
    """
    Immutable ledger transaction

    `id` is None until the store appends the record and assigns one.
    """
    user_id: int
    type: TransactionType
    amount: Decimal
    comment: Optional[str] = None
    related_user_id: Optional[int] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            raise TypeError("Transaction amount must be a Decimal")

        if self.amount <= 0:
            raise ValueError("Transaction amount must be positive")

        if self.comment is not None and len(self.comment) > COMMENT_MAX_LENGTH:
            raise ValueError(f"Comment cannot be longer than {COMMENT_MAX_LENGTH} characters")

        # Counterparty is present exactly for the two transfer sides
        if self.type.is_transfer and self.related_user_id is None:
            raise ValueError(f"{self.type.value} record requires related_user_id")
        if not self.type.is_transfer and self.related_user_id is not None:
            raise ValueError(f"{self.type.value} record cannot have related_user_id")

    @property
    def balance_effect(self) -> Decimal:
        return self.type.signed_amount(self.amount)

    def with_id(self, transaction_id: int) -> 'TransactionRecord':
        return TransactionRecord(
            user_id=self.user_id,
            type=self.type,
            amount=self.amount,
            comment=self.comment,
            related_user_id=self.related_user_id,
            id=transaction_id,
            created_at=self.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "amount": format_amount(self.amount),
            "comment": self.comment,
            "related_user_id": self.related_user_id,
            "created_at": self.created_at.isoformat(),
        }


def replay_balance(records: Iterable[TransactionRecord]) -> Decimal:
    """Rebuild a balance from zero by applying each record's signed effect"""
    balance = ZERO
    for record in records:
        balance = apply_delta(balance, record.balance_effect)
    return balance
