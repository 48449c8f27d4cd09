"""
Test suite for bulk interest and dividend posting
"""

import pytest
from decimal import Decimal

from cooperative_core.currency import Money, Currency
from cooperative_core.storage import InMemoryStorage
from cooperative_core.system import CooperativeSystem
from cooperative_core.accounts import AccountType
from cooperative_core.transactions import TransactionType
from cooperative_core.interest import (
    PostingType, PostingLogStatus, PostingPreview, periods_per_year, project_posting
)
from cooperative_core.errors import (
    AccountNotActive, CooperativeError, DuplicatePosting, PartialPostingFailure
)


def naira(amount: str) -> Money:
    return Money(Decimal(amount), Currency.NGN)


class TestPeriods:

    @pytest.mark.parametrize("period,expected", [
        ("Monthly-2024-01", 12),
        ("Monthly-2024-12", 12),
        ("Quarterly-2024-Q3", 4),
        ("Half-2024-H2", 2),
        ("Annual-2024", 1),
        ("FY-2024", 1),
    ])
    def test_interest_periods(self, period, expected):
        assert periods_per_year(PostingType.INTEREST, period) == expected

    @pytest.mark.parametrize("period", ["Monthly-2024-13", "2024-01", "Weekly-2024-05", ""])
    def test_unrecognised_interest_period(self, period):
        with pytest.raises(ValueError):
            periods_per_year(PostingType.INTEREST, period)

    def test_dividends_are_not_prorated(self):
        assert periods_per_year(PostingType.DIVIDEND, "Q3 dividend 2024") == 1


class TestInterestPosting:

    def setup_method(self):
        self.system = CooperativeSystem(InMemoryStorage())
        self.engine = self.system.interest_engine
        self.savings = []
        self.share_capital = []
        for index, balance in enumerate(['1200', '2500.55', '333.33']):
            member = self.system.member_manager.register_member("Member", str(index), f"m{index}@example.com")
            savings, share_capital = self.system.registration_queue.approve(member.id, "admin").accounts
            self.system.posting_engine.deposit(savings.id, naira(balance), "teller-1")
            self.savings.append(savings)
            self.share_capital.append(share_capital)

    def balance(self, account_id: str) -> Money:
        return self.system.account_manager.require_account(account_id).balance

    def test_monthly_interest_posted_once(self):
        result = self.engine.run(PostingType.INTEREST, "Monthly-2024-01", Decimal('5'), "admin")

        assert result.succeeded
        assert self.balance(self.savings[0].id) == naira('1205')
        assert result.posting_log.status == PostingLogStatus.COMPLETED
        assert result.posting_log.beneficiary_count == 3
        assert all(t.transaction_type == TransactionType.INTEREST for t in result.posted)
        assert all(t.posting_log_id == result.posting_log.id for t in result.posted)

        balances = [self.balance(a.id) for a in self.savings]
        with pytest.raises(DuplicatePosting):
            self.engine.run(PostingType.INTEREST, "Monthly-2024-01", Decimal('5'), "admin")
        assert [self.balance(a.id) for a in self.savings] == balances

    def test_dry_run_matches_real_run(self):
        preview = self.engine.run(PostingType.INTEREST, "Quarterly-2024-Q1", Decimal('7.5'), "admin", dry_run=True)
        transaction_count = len(self.system.recorder.list_transactions())

        assert isinstance(preview, PostingPreview)
        assert not preview.already_posted
        assert self.engine.get_posting_log(PostingType.INTEREST, "Quarterly-2024-Q1") is None
        assert len(self.system.recorder.list_transactions()) == transaction_count

        result = self.engine.run(PostingType.INTEREST, "Quarterly-2024-Q1", Decimal('7.5'), "admin")

        assert result.posting_log.total_amount == preview.total_amount
        assert result.posting_log.beneficiary_count == preview.beneficiary_count
        posted = {t.account_id: t.amount for t in result.posted}
        assert {row.account_id: row.amount for row in preview.rows} == posted
        assert self.engine.preview(PostingType.INTEREST, "Quarterly-2024-Q1", Decimal('7.5')).already_posted

    def test_amounts_are_prorated_and_rounded(self):
        projection = project_posting(
            [self.system.account_manager.require_account(a.id) for a in self.savings],
            PostingType.INTEREST, "Monthly-2024-02", Decimal('5'), Currency.NGN
        )
        amounts = {line.account_id: line.amount for line in projection.lines}

        # 2500.55 * 5% / 12 = 10.41895...
        assert amounts[self.savings[1].id] == naira('10.42')
        # 333.33 * 5% / 12 = 1.38887...
        assert amounts[self.savings[2].id] == naira('1.39')

    def test_ineligible_accounts_are_skipped(self):
        self.system.account_manager.freeze_account(self.savings[2].id, "Dispute", "admin")
        member = self.system.member_manager.register_member("Empty", "Account", "empty@example.com")
        self.system.registration_queue.approve(member.id, "admin")

        preview = self.engine.preview(PostingType.INTEREST, "Annual-2024", Decimal('10'))

        assert {row.account_id for row in preview.rows} == {self.savings[0].id, self.savings[1].id}
        assert preview.total_amount == naira('120') + naira('250.06')

    def test_dividend_on_share_capital(self):
        self.system.posting_engine.deposit(self.share_capital[0].id, naira('10000'), "teller-1")

        result = self.engine.run(PostingType.DIVIDEND, "FY-2024", Decimal('10'), "admin")

        assert [t.account_id for t in result.posted] == [self.share_capital[0].id]
        assert result.posted[0].transaction_type == TransactionType.DIVIDEND
        assert self.balance(self.share_capital[0].id) == naira('11000')
        # Interest for the same label is a separate run
        assert self.engine.preview(PostingType.INTEREST, "FY-2024", Decimal('10')).beneficiary_count == 3

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError, match="rate must be positive"):
            self.engine.run(PostingType.INTEREST, "Monthly-2024-01", Decimal('0'), "admin")
        assert self.engine.get_posting_history() == []

    def test_failed_accounts_are_resumed(self, monkeypatch):
        failing_account = self.savings[1].id
        record = self.system.recorder.record

        def flaky_record(account_id, *args, **kwargs):
            if account_id == failing_account:
                raise AccountNotActive(account_id, "frozen")
            return record(account_id, *args, **kwargs)

        monkeypatch.setattr(self.system.recorder, "record", flaky_record)
        result = self.engine.run(PostingType.INTEREST, "Monthly-2024-03", Decimal('6'), "admin")

        assert not result.succeeded
        assert result.posting_log.status == PostingLogStatus.FAILED
        assert [f["account_id"] for f in result.failures] == [failing_account]
        assert self.balance(failing_account) == naira('2500.55')
        with pytest.raises(PartialPostingFailure):
            result.raise_for_failures()

        with pytest.raises(CooperativeError, match="same rate"):
            self.engine.run(PostingType.INTEREST, "Monthly-2024-03", Decimal('7'), "admin")

        monkeypatch.undo()
        resumed = self.engine.run(PostingType.INTEREST, "Monthly-2024-03", Decimal('6'), "admin")

        assert resumed.succeeded
        assert resumed.posting_log.id == result.posting_log.id
        assert [t.account_id for t in resumed.posted] == [failing_account]
        assert set(resumed.skipped_account_ids) == {self.savings[0].id, self.savings[2].id}
        assert resumed.posting_log.beneficiary_count == 3
        # 1200 -> 6.00, 2500.55 -> 12.50, 333.33 -> 1.67
        assert resumed.posting_log.total_amount == naira('20.17')
        assert self.balance(failing_account) == naira('2513.05')
        assert len(self.engine.get_posting_history(PostingType.INTEREST)) == 1

    def test_unexpected_error_marks_run_failed(self, monkeypatch):
        def broken_record(*args, **kwargs):
            raise RuntimeError("storage unavailable")

        monkeypatch.setattr(self.system.recorder, "record", broken_record)
        with pytest.raises(RuntimeError):
            self.engine.run(PostingType.INTEREST, "Monthly-2024-04", Decimal('6'), "admin")

        log = self.engine.get_posting_log(PostingType.INTEREST, "Monthly-2024-04")
        assert log.status == PostingLogStatus.FAILED
        assert log.failures[0]["error"] == "run aborted"

    def test_run_left_pending_can_be_abandoned_and_resumed(self, monkeypatch):
        class ProcessKilled(BaseException):
            pass

        post_line = self.engine._post_line
        posted_lines = []

        def post_one_then_die(log, line, performed_by, result):
            if posted_lines:
                raise ProcessKilled()
            posted_lines.append(line)
            post_line(log, line, performed_by, result)

        monkeypatch.setattr(self.engine, "_post_line", post_one_then_die)
        with pytest.raises(ProcessKilled):
            self.engine.run(PostingType.INTEREST, "Monthly-2024-05", Decimal('6'), "admin")
        monkeypatch.undo()

        stuck = self.engine.get_posting_log(PostingType.INTEREST, "Monthly-2024-05")
        assert stuck.status == PostingLogStatus.PENDING
        with pytest.raises(DuplicatePosting):
            self.engine.run(PostingType.INTEREST, "Monthly-2024-05", Decimal('6'), "admin")

        abandoned = self.engine.abandon_run(PostingType.INTEREST, "Monthly-2024-05", "admin", "worker crashed")
        assert abandoned.status == PostingLogStatus.FAILED
        assert abandoned.beneficiary_count == 1
        assert abandoned.total_amount == naira('6.00')

        resumed = self.engine.run(PostingType.INTEREST, "Monthly-2024-05", Decimal('6'), "admin")
        assert resumed.succeeded
        assert resumed.skipped_account_ids == [self.savings[0].id]
        assert resumed.posting_log.beneficiary_count == 3
        assert resumed.posting_log.total_amount == naira('20.17')
        assert self.balance(self.savings[0].id) == naira('1206.00')

    def test_only_pending_runs_can_be_abandoned(self):
        self.engine.run(PostingType.INTEREST, "Monthly-2024-06", Decimal('6'), "admin")

        with pytest.raises(CooperativeError, match="Only a pending run"):
            self.engine.abandon_run(PostingType.INTEREST, "Monthly-2024-06", "admin", "mistake")
        with pytest.raises(CooperativeError, match="No interest posting run"):
            self.engine.abandon_run(PostingType.INTEREST, "Monthly-2024-07", "admin", "mistake")

    def test_posting_stats(self):
        stats = self.engine.get_posting_stats(PostingType.INTEREST)

        assert stats["eligible_accounts"] == 3
        assert stats["total_balance"] == "4033.88"
        assert stats["currency"] == "NGN"
        assert self.engine.get_posting_stats(PostingType.DIVIDEND)["eligible_accounts"] == 0
