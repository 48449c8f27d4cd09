"""
Test suite for the transaction recorder

Tests record/reversal semantics, reference generation and the replay check
that every balance_after snapshot can be reproduced from the history.
"""

import re
import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from cooperative_core.currency import Money, Currency
from cooperative_core.storage import InMemoryStorage
from cooperative_core.audit import AuditTrail, AuditEventType
from cooperative_core.accounts import AccountManager, AccountType
from cooperative_core.ledger import AccountLedger
from cooperative_core.transactions import TransactionRecorder, TransactionType, TransactionStatus
from cooperative_core.errors import (
    CooperativeError, DuplicateReference, InsufficientFunds, TransactionAlreadyReversed,
    TransactionIntegrityViolation, TransactionNotFound
)


def naira(amount: str) -> Money:
    return Money(Decimal(amount), Currency.NGN)


class TestTransactionRecorder:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.account_manager = AccountManager(self.storage, self.audit_trail)
        self.ledger = AccountLedger(self.storage, self.account_manager)
        self.recorder = TransactionRecorder(self.storage, self.account_manager, self.ledger, self.audit_trail)
        self.account = self.account_manager.open_account("member-1", AccountType.SAVINGS)

    def test_record_deposit(self):
        transaction = self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('1500'), "teller-1")

        assert re.match(r"^TXN-\d+-[0-9A-F]{4}$", transaction.reference)
        assert transaction.balance_after == naira('1500')
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.sequence == 1
        assert transaction.description == "Deposit"
        assert self.recorder.get_by_reference(transaction.reference).id == transaction.id

        events = self.audit_trail.get_events_for_entity("transaction", transaction.id)
        assert events[0].event_type == AuditEventType.TRANSACTION_RECORDED

    def test_debit_types(self):
        assert TransactionType.WITHDRAWAL.is_debit
        assert TransactionType.LOAN_REPAYMENT.is_debit
        assert TransactionType.TRANSFER_OUT.is_debit
        assert not TransactionType.INTEREST.is_debit
        assert not TransactionType.LOAN_DISBURSEMENT.is_debit

    def test_failed_debit_writes_nothing(self):
        self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('200'), "teller-1")

        with pytest.raises(InsufficientFunds):
            self.recorder.record(self.account.id, TransactionType.WITHDRAWAL, naira('500'), "teller-1")

        assert len(self.recorder.get_account_history(self.account.id)) == 1
        assert self.account_manager.require_account(self.account.id).balance == naira('200')

    def test_reference_collision_is_retried(self, monkeypatch):
        references = iter(["TXN-1-AAAA", "TXN-1-AAAA", "TXN-1-BBBB"])
        monkeypatch.setattr(self.recorder, "_generate_reference", lambda: next(references))

        first = self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('10'), "teller-1")
        second = self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('10'), "teller-1")

        assert first.reference == "TXN-1-AAAA"
        assert second.reference == "TXN-1-BBBB"

    def test_exhausted_reference_retries_roll_back(self, monkeypatch):
        self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('10'), "teller-1")
        taken = self.recorder.get_account_history(self.account.id)[0].reference
        monkeypatch.setattr(self.recorder, "_generate_reference", lambda: taken)

        with pytest.raises(DuplicateReference):
            self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('90'), "teller-1")

        assert self.account_manager.require_account(self.account.id).balance == naira('10')
        assert self.recorder.replay_account(self.account.id) == []

    def test_reverse_creates_linked_record(self):
        deposit = self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('300'), "teller-1")

        reversal = self.recorder.reverse(deposit.id, "supervisor", "Posted to wrong account")

        assert reversal.reversal_of == deposit.id
        assert reversal.status == TransactionStatus.REVERSED
        assert reversal.transaction_type == TransactionType.DEPOSIT
        assert reversal.balance_after == naira('0')
        assert reversal.signed_amount == naira('-300')
        # The original record is untouched
        assert self.recorder.require_transaction(deposit.id).status == TransactionStatus.COMPLETED
        assert self.recorder.get_reversal(deposit.id).id == reversal.id

    def test_reverse_twice_rejected(self):
        deposit = self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('300'), "teller-1")
        reversal = self.recorder.reverse(deposit.id, "supervisor", "Error")

        with pytest.raises(TransactionAlreadyReversed):
            self.recorder.reverse(deposit.id, "supervisor", "Error again")
        with pytest.raises(CooperativeError, match="cannot be reversed"):
            self.recorder.reverse(reversal.id, "supervisor", "Undo the undo")

    def test_reversal_needs_funds(self):
        deposit = self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('300'), "teller-1")
        self.recorder.record(self.account.id, TransactionType.WITHDRAWAL, naira('250'), "teller-1")

        with pytest.raises(InsufficientFunds):
            self.recorder.reverse(deposit.id, "supervisor", "Bounced cheque")
        assert self.recorder.get_reversal(deposit.id) is None

    def test_unknown_transaction(self):
        with pytest.raises(TransactionNotFound):
            self.recorder.reverse("missing", "supervisor", "reason")

    def test_replay_matches_history(self):
        self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('1000'), "teller-1")
        withdrawal = self.recorder.record(self.account.id, TransactionType.WITHDRAWAL, naira('400'), "teller-1")
        self.recorder.record(self.account.id, TransactionType.INTEREST, naira('12.50'), "system")
        self.recorder.reverse(withdrawal.id, "supervisor", "Duplicate")

        assert self.recorder.replay_account(self.account.id) == []
        self.recorder.verify_account_history(self.account.id)

        history = self.recorder.get_account_history(self.account.id)
        total = sum((t.signed_amount.amount for t in history), Decimal('0'))
        account = self.account_manager.require_account(self.account.id)
        assert total == account.balance.amount - account.opening_balance.amount
        assert account.balance == naira('1012.50')

    def test_replay_detects_tampered_balance(self):
        self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira('1000'), "teller-1")
        stored = self.storage.load("accounts", self.account.id)
        stored["balance"] = "5000.00"
        self.storage.save("accounts", self.account.id, stored)

        assert self.recorder.replay_account(self.account.id)
        with pytest.raises(TransactionIntegrityViolation):
            self.recorder.verify_account_history(self.account.id)

    def test_account_transactions_newest_first(self):
        for amount in ('1', '2', '3', '4'):
            self.recorder.record(self.account.id, TransactionType.DEPOSIT, naira(amount), "teller-1")

        newest = self.recorder.get_account_transactions(self.account.id, limit=2)
        assert [t.amount for t in newest] == [naira('4'), naira('3')]
        page_two = self.recorder.get_account_transactions(self.account.id, limit=2, offset=2)
        assert [t.amount for t in page_two] == [naira('2'), naira('1')]

        tomorrow = datetime.now(timezone.utc) + timedelta(days=1)
        assert self.recorder.get_account_transactions(self.account.id, start_date=tomorrow) == []
        assert len(self.recorder.list_transactions(transaction_types=[TransactionType.DEPOSIT])) == 4
