"""
Test suite for account management

Tests account opening, numbering, status changes and lookups.
"""

import re
import pytest
from decimal import Decimal

from cooperative_core.currency import Money, Currency
from cooperative_core.storage import InMemoryStorage
from cooperative_core.audit import AuditTrail, AuditEventType
from cooperative_core.accounts import AccountManager, AccountType
from cooperative_core.ledger import AccountLedger
from cooperative_core.lifecycle import AccountStatus
from cooperative_core.errors import AccountNotActive, AccountNotFound, CooperativeError, InvalidStateTransition


class TestAccountManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.account_manager = AccountManager(self.storage, self.audit_trail)
        self.ledger = AccountLedger(self.storage, self.account_manager)

    def test_open_account_defaults(self):
        account = self.account_manager.open_account("member-1", AccountType.SAVINGS, performed_by="admin")

        assert re.match(r"^ACC-\d{8}-00001$", account.account_number)
        assert account.currency == Currency.NGN
        assert account.balance == Money.zero(Currency.NGN)
        assert account.status == AccountStatus.ACTIVE
        assert account.name == "Savings"
        assert account.sequence == 0

        events = self.audit_trail.get_events_for_entity("account", account.id)
        assert events[0].event_type == AuditEventType.ACCOUNT_OPENED
        assert events[0].user_id == "admin"

    def test_account_numbers_are_sequential(self):
        first = self.account_manager.open_account("member-1", AccountType.SAVINGS)
        second = self.account_manager.open_account("member-1", AccountType.SHARE_CAPITAL)

        assert first.account_number.endswith("-00001")
        assert second.account_number.endswith("-00002")
        assert self.account_manager.get_account_by_number(second.account_number).id == second.id

    def test_opening_balance(self):
        account = self.account_manager.open_account(
            "member-1", AccountType.SAVINGS, opening_balance=Money(Decimal('2500'), Currency.NGN)
        )

        loaded = self.account_manager.require_account(account.id)
        assert loaded.balance == Money(Decimal('2500'), Currency.NGN)
        assert loaded.opening_balance == loaded.balance

    def test_invalid_opening_balance(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            self.account_manager.open_account(
                "member-1", AccountType.SAVINGS, opening_balance=Money(Decimal('-1'), Currency.NGN)
            )
        with pytest.raises(ValueError, match="must match account currency"):
            self.account_manager.open_account(
                "member-1", AccountType.SAVINGS, currency=Currency.NGN,
                opening_balance=Money(Decimal('10'), Currency.USD)
            )

    def test_require_missing_account(self):
        with pytest.raises(AccountNotFound, match="Account nope not found"):
            self.account_manager.require_account("nope")

    def test_freeze_and_unfreeze(self):
        account = self.account_manager.open_account("member-1", AccountType.SAVINGS)

        frozen = self.account_manager.freeze_account(account.id, "Suspicious activity", "admin")
        assert frozen.status == AccountStatus.FROZEN
        with pytest.raises(AccountNotActive):
            self.ledger.credit(account.id, Money(Decimal('10'), Currency.NGN))

        active = self.account_manager.unfreeze_account(account.id, "Cleared", "admin")
        assert active.status == AccountStatus.ACTIVE
        assert self.ledger.credit(account.id, Money(Decimal('10'), Currency.NGN)).sequence == 1

        event_types = [e.event_type for e in self.audit_trail.get_events_for_entity("account", account.id)]
        assert AuditEventType.ACCOUNT_FROZEN in event_types
        assert AuditEventType.ACCOUNT_UNFROZEN in event_types

    def test_close_requires_zero_balance(self):
        account = self.account_manager.open_account("member-1", AccountType.SAVINGS)
        self.ledger.credit(account.id, Money(Decimal('50'), Currency.NGN))

        with pytest.raises(CooperativeError, match="non-zero balance"):
            self.account_manager.close_account(account.id, "Member left")

        self.ledger.debit(account.id, Money(Decimal('50'), Currency.NGN))
        closed = self.account_manager.close_account(account.id, "Member left")
        assert closed.status == AccountStatus.CLOSED
        assert closed.closed_at is not None

    def test_closed_account_cannot_reopen(self):
        account = self.account_manager.open_account("member-1", AccountType.SAVINGS)
        self.account_manager.close_account(account.id, "Duplicate account")

        with pytest.raises(InvalidStateTransition):
            self.account_manager.unfreeze_account(account.id, "Reopen")

    def test_member_account_lookup_skips_closed_accounts(self):
        old = self.account_manager.open_account("member-1", AccountType.SAVINGS)
        self.account_manager.close_account(old.id, "Replaced")
        new = self.account_manager.open_account("member-1", AccountType.SAVINGS)
        self.account_manager.open_account("member-2", AccountType.SAVINGS)

        assert self.account_manager.get_member_account("member-1", AccountType.SAVINGS).id == new.id
        assert self.account_manager.get_member_account("member-1", AccountType.SHARE_CAPITAL) is None
        assert len(self.account_manager.get_member_accounts("member-1")) == 2
        assert len(self.account_manager.list_accounts(AccountType.SAVINGS, AccountStatus.ACTIVE)) == 2
