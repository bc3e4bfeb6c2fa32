"""
Balance Engine Module

Implements the four ledger operations: balance lookup, deposit, withdrawal
and transfer between users. Every mutating operation runs as one unit of work
on the ledger store, so the balance change and its transaction record(s)
commit together or not at all.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .amounts import AmountLike, to_amount, format_amount
from .errors import LedgerError, UserNotFound, InsufficientFunds, SelfTransfer, StorageFailure
from .storage import LedgerStore, UnitOfWork
from .transactions import TransactionRecord, TransactionType, COMMENT_MAX_LENGTH
from .users import UserDirectory, StoreUserDirectory
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class BalanceView:
    """Read-only balance of one user"""
    user_id: int
    balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "balance": format_amount(self.balance)}


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a deposit or withdrawal"""
    user_id: int
    new_balance: Decimal
    transaction_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "new_balance": format_amount(self.new_balance),
            "transaction_id": self.transaction_id,
        }


@dataclass(frozen=True)
class TransferResult:
    """Outcome of a transfer, with both resulting balances and both record ids"""
    from_user_id: int
    to_user_id: int
    amount: Decimal
    balance_from_user_id: Decimal
    balance_to_user_id: Decimal
    out_transaction_id: int
    in_transaction_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "amount": format_amount(self.amount),
            "balance_from_user_id": format_amount(self.balance_from_user_id),
            "balance_to_user_id": format_amount(self.balance_to_user_id),
            "out_transaction_id": self.out_transaction_id,
            "in_transaction_id": self.in_transaction_id,
        }


class BalanceEngine:
    """
    Stateless service applying balance operations through a ledger store.

    The engine holds no mutable state of its own; all coordination between
    concurrent callers is delegated to the store's units of work.
    """

    def __init__(self, store: LedgerStore, users: Optional[UserDirectory] = None):
        self.store = store
        self.users = users or StoreUserDirectory(store)
        self.logger = get_logger("balance_ledger.balance")

    def get_balance(self, user_id: int) -> BalanceView:
        """
        Get the current balance of a user

        Returns 0.00 for an existing user who has never had a balance
        operation. Never creates a balance record.

        Raises:
            UserNotFound: If the user does not exist
        """
        try:
            self.users.get(user_id)
            balance = self.store.get_balance(user_id)
        except LedgerError as e:
            self._log_failure("get_balance", user_id, e)
            raise

        return BalanceView(user_id=user_id, balance=balance)

    def deposit(self, user_id: int, amount: AmountLike, comment: Optional[str] = None) -> OperationResult:
        """
        Top up a user's balance

        Args:
            user_id: Receiving user
            amount: Positive amount
            comment: Optional note stored on the transaction record

        Returns:
            OperationResult with the new balance and the DEPOSIT record id
        """
        amount = to_amount(amount)
        self._check_comment(comment)

        def apply(uow: UnitOfWork) -> OperationResult:
            uow.get_or_create_balance(user_id)
            updated = uow.adjust_balance(user_id, TransactionType.DEPOSIT.signed_amount(amount))
            transaction_id = uow.append_transaction(
                TransactionRecord(user_id=user_id, type=TransactionType.DEPOSIT, amount=amount, comment=comment)
            )
            return OperationResult(user_id=user_id, new_balance=updated.amount, transaction_id=transaction_id)

        try:
            self.users.get(user_id)
            result = self.store.run_atomic(apply, [user_id])
        except LedgerError as e:
            self._log_failure("deposit", user_id, e, amount=amount)
            raise

        log_action(
            self.logger, "info", f"Deposit completed for user {user_id}",
            user_id=user_id, action="deposit", resource=f"transaction:{result.transaction_id}",
            extra={"amount": format_amount(amount), "new_balance": format_amount(result.new_balance)}
        )
        return result

    def withdraw(self, user_id: int, amount: AmountLike, comment: Optional[str] = None) -> OperationResult:
        """
        Withdraw funds from a user's balance

        Raises:
            UserNotFound: If the user does not exist
            InsufficientFunds: If the balance is lower than the amount; nothing is written
        """
        amount = to_amount(amount)
        self._check_comment(comment)

        def apply(uow: UnitOfWork) -> OperationResult:
            record = uow.get_or_create_balance(user_id)
            if record.amount < amount:
                raise InsufficientFunds(user_id, record.amount, amount, "Insufficient funds on balance.")

            updated = uow.adjust_balance(user_id, TransactionType.WITHDRAW.signed_amount(amount))
            transaction_id = uow.append_transaction(
                TransactionRecord(user_id=user_id, type=TransactionType.WITHDRAW, amount=amount, comment=comment)
            )
            return OperationResult(user_id=user_id, new_balance=updated.amount, transaction_id=transaction_id)

        try:
            self.users.get(user_id)
            result = self.store.run_atomic(apply, [user_id])
        except LedgerError as e:
            self._log_failure("withdraw", user_id, e, amount=amount)
            raise

        log_action(
            self.logger, "info", f"Withdrawal completed for user {user_id}",
            user_id=user_id, action="withdraw", resource=f"transaction:{result.transaction_id}",
            extra={"amount": format_amount(amount), "new_balance": format_amount(result.new_balance)}
        )
        return result

    def transfer(self, from_user_id: int, to_user_id: int, amount: AmountLike,
                 comment: Optional[str] = None) -> TransferResult:
        """
        Move funds from one user to another

        Checks run in order: sender exists, recipient exists, sender differs
        from recipient. The debit, the credit and both transaction records are
        written in one unit of work.

        Raises:
            UserNotFound: If the sender or the recipient does not exist
            SelfTransfer: If sender and recipient are the same user
            InsufficientFunds: If the sender's balance is lower than the amount
        """
        amount = to_amount(amount)
        self._check_comment(comment)

        def apply(uow: UnitOfWork) -> TransferResult:
            sender = uow.get_or_create_balance(from_user_id)
            uow.get_or_create_balance(to_user_id)
            if sender.amount < amount:
                raise InsufficientFunds(from_user_id, sender.amount, amount, "Insufficient funds for transfer.")

            debited = uow.adjust_balance(from_user_id, TransactionType.TRANSFER_OUT.signed_amount(amount))
            credited = uow.adjust_balance(to_user_id, TransactionType.TRANSFER_IN.signed_amount(amount))

            out_id = uow.append_transaction(TransactionRecord(
                user_id=from_user_id, type=TransactionType.TRANSFER_OUT, amount=amount,
                comment=comment, related_user_id=to_user_id
            ))
            in_id = uow.append_transaction(TransactionRecord(
                user_id=to_user_id, type=TransactionType.TRANSFER_IN, amount=amount,
                comment=comment, related_user_id=from_user_id
            ))

            return TransferResult(
                from_user_id=from_user_id,
                to_user_id=to_user_id,
                amount=amount,
                balance_from_user_id=debited.amount,
                balance_to_user_id=credited.amount,
                out_transaction_id=out_id,
                in_transaction_id=in_id
            )

        try:
            if not self.users.exists(from_user_id):
                raise UserNotFound(from_user_id, role="sender")
            if not self.users.exists(to_user_id):
                raise UserNotFound(to_user_id, role="recipient")
            if from_user_id == to_user_id:
                raise SelfTransfer(from_user_id)

            result = self.store.run_atomic(apply, [from_user_id, to_user_id])
        except LedgerError as e:
            self._log_failure("transfer", from_user_id, e, amount=amount, to_user_id=to_user_id)
            raise

        log_action(
            self.logger, "info", f"Transfer completed from user {from_user_id} to user {to_user_id}",
            user_id=from_user_id, action="transfer",
            resource=f"transaction:{result.out_transaction_id}",
            extra={
                "to_user_id": to_user_id,
                "amount": format_amount(amount),
                "balance_from_user_id": format_amount(result.balance_from_user_id),
                "balance_to_user_id": format_amount(result.balance_to_user_id),
                "in_transaction_id": result.in_transaction_id
            }
        )
        return result

    def _check_comment(self, comment: Optional[str]) -> None:
        if comment is not None and len(comment) > COMMENT_MAX_LENGTH:
            raise ValueError(f"Comment cannot be longer than {COMMENT_MAX_LENGTH} characters")

    def _log_failure(self, action: str, user_id: int, error: LedgerError, **extra: Any) -> None:
        level = "error" if isinstance(error, StorageFailure) else "warning"
        details = dict(error.to_dict())
        details.update({k: format_amount(v) if isinstance(v, Decimal) else v for k, v in extra.items()})
        log_action(
            self.logger, level, f"{action} failed: {error.message}",
            user_id=user_id, action=action, extra=details
        )
