"""
Tests for the account ledger balance primitives
"""

import pytest
import threading
from decimal import Decimal

from cooperative_core.currency import Money, Currency
from cooperative_core.storage import InMemoryStorage
from cooperative_core.audit import AuditTrail
from cooperative_core.accounts import AccountManager, AccountType
from cooperative_core.ledger import AccountLedger
from cooperative_core.errors import AccountNotActive, InsufficientFunds


def naira(amount: str) -> Money:
    return Money(Decimal(amount), Currency.NGN)


class TestAccountLedger:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.account_manager = AccountManager(self.storage, self.audit_trail)
        self.ledger = AccountLedger(self.storage, self.account_manager)
        self.account = self.account_manager.open_account("member-1", AccountType.SAVINGS)

    def test_credit_and_debit_return_snapshots(self):
        credited = self.ledger.credit(self.account.id, naira('1000'))
        debited = self.ledger.debit(self.account.id, naira('250.25'))

        assert credited.balance == naira('1000')
        assert credited.sequence == 1
        assert debited.balance == naira('749.75')
        assert debited.sequence == 2
        assert self.account_manager.require_account(self.account.id).balance == naira('749.75')

    def test_overdraft_rejected_and_balance_unchanged(self):
        self.ledger.credit(self.account.id, naira('200'))

        with pytest.raises(InsufficientFunds) as exc_info:
            self.ledger.debit(self.account.id, naira('500'))
        assert exc_info.value.account_id == self.account.id

        account = self.account_manager.require_account(self.account.id)
        assert account.balance == naira('200')
        assert account.sequence == 1

    def test_debit_of_exact_balance(self):
        self.ledger.credit(self.account.id, naira('75'))
        assert self.ledger.debit(self.account.id, naira('75')).balance.is_zero()

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_non_positive_amounts_rejected(self, amount):
        with pytest.raises(ValueError, match="must be positive"):
            self.ledger.credit(self.account.id, naira(amount))

    def test_currency_mismatch_rejected(self):
        with pytest.raises(ValueError, match="does not match account currency"):
            self.ledger.credit(self.account.id, Money(Decimal('10'), Currency.USD))

    def test_frozen_account_rejects_both_directions(self):
        self.ledger.credit(self.account.id, naira('100'))
        self.account_manager.freeze_account(self.account.id, "Investigation")

        with pytest.raises(AccountNotActive, match="frozen"):
            self.ledger.debit(self.account.id, naira('10'))
        with pytest.raises(AccountNotActive):
            self.ledger.credit(self.account.id, naira('10'))

    def test_concurrent_credits_are_not_lost(self):
        def credit_many():
            for _ in range(25):
                self.ledger.credit(self.account.id, naira('1'))

        threads = [threading.Thread(target=credit_many) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        account = self.account_manager.require_account(self.account.id)
        assert account.balance == naira('100')
        assert account.sequence == 100
