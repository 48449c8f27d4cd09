"""
Account Ledger Module

The only code allowed to change an account balance. ``credit`` and ``debit``
run under the account's lock and inside a storage unit of work, and return
the balance snapshot the transaction recorder stores as ``balance_after``.
"""

from datetime import datetime, timezone
from dataclasses import dataclass

from .currency import Money
from .storage import StorageInterface
from .accounts import AccountManager, Account
from .errors import AccountNotActive, InsufficientFunds
from .logging_config import get_logger


@dataclass(frozen=True)
class BalanceSnapshot:
    """Account balance immediately after one ledger mutation"""
    account_id: str
    balance: Money
    sequence: int


class AccountLedger:
    """
    Per-account balance primitives
    """

    def __init__(self, storage: StorageInterface, account_manager: AccountManager):
        self.storage = storage
        self.account_manager = account_manager
        self.locks = account_manager.locks
        self.logger = get_logger("scms.ledger")

    def credit(self, account_id: str, amount: Money) -> BalanceSnapshot:
        """Add ``amount`` to the account balance"""
        return self._apply(account_id, amount, is_debit=False)

    def debit(self, account_id: str, amount: Money) -> BalanceSnapshot:
        """
        Subtract ``amount`` from the account balance

        Raises:
            InsufficientFunds: if the balance would drop below zero
        """
        return self._apply(account_id, amount, is_debit=True)

    def _apply(self, account_id: str, amount: Money, is_debit: bool) -> BalanceSnapshot:
        with self.locks.hold(account_id), self.storage.atomic():
            account = self.account_manager.require_account(account_id)
            self._validate(account, amount)

            if is_debit:
                if account.balance < amount:
                    raise InsufficientFunds(account.id, account.balance.to_string(), amount.to_string())
                account.balance = account.balance - amount
            else:
                account.balance = account.balance + amount

            account.sequence += 1
            account.updated_at = datetime.now(timezone.utc)
            self.account_manager._save_account(account)

        self.logger.debug(
            "%s %s on %s -> %s (seq %d)",
            "debit" if is_debit else "credit", amount.to_string(),
            account.account_number, account.balance.to_string(), account.sequence
        )
        return BalanceSnapshot(account.id, account.balance, account.sequence)

    @staticmethod
    def _validate(account: Account, amount: Money) -> None:
        if not account.is_active:
            raise AccountNotActive(account.id, account.status.value)
        if amount.currency != account.currency:
            raise ValueError(
                f"Amount currency {amount.currency.code} does not match account currency {account.currency.code}"
            )
        if not amount.is_positive():
            raise ValueError("Amount must be positive")
