"""
Reporting Engine Module

Read-only aggregation over accounts, transactions and loans: balance sheet,
income statement, financial summary, account statements and ledger
reconciliation. Nothing here writes to storage.

Balance sheet identity::

    cash + loans receivable == member savings + share capital + retained earnings

where cash is opening balances plus deposits less withdrawals paid out, loans
receivable is principal not yet repaid, and retained earnings are loan
interest and early withdrawal penalties less interest and dividends credited.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union
from enum import Enum
import csv
import io

from .currency import Money, Currency
from .audit import AuditTrail
from .accounts import AccountManager, AccountType
from .members import MemberManager
from .loans import LoanManager, Loan, LoanRepayment
from .transactions import TransactionRecorder, Transaction, TransactionType
from .withdrawals import WithdrawalManager
from .lifecycle import LoanStatus, MemberStatus
from .config import get_config
from .logging_config import get_logger

PENALTY_CATEGORY = "penalty"


class ReportFormat(Enum):
    """Output formats for reports"""
    DICT = "dict"
    CSV = "csv"


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.metadata:
            self.metadata = {
                'row_count': len(self.data),
                'currency': get_config().default_currency
            }


def recognized_loan_interest(loan: Loan, repayments: Iterable[LoanRepayment]) -> List[tuple]:
    """
    Interest earned on each repayment of a loan as (created_at, Money)

    Principal allocated after the loan amount is fully recovered is
    counted as interest, so receivable plus earned interest always equals
    what was disbursed plus what was repaid.
    """
    recovered = Money.zero(loan.currency)
    earned = []
    for repayment in sorted(repayments, key=lambda r: r.created_at):
        room = loan.loan_amount - recovered
        principal = repayment.principal if repayment.principal <= room else room
        recovered = recovered + principal
        earned.append((repayment.created_at, repayment.amount - principal))
    return earned


class ReportingEngine:
    """
    Financial reports for the cooperative
    """

    def __init__(
        self,
        account_manager: AccountManager,
        recorder: TransactionRecorder,
        loan_manager: LoanManager,
        member_manager: MemberManager,
        withdrawal_manager: WithdrawalManager,
        audit_trail: AuditTrail
    ):
        self.account_manager = account_manager
        self.recorder = recorder
        self.loan_manager = loan_manager
        self.member_manager = member_manager
        self.withdrawal_manager = withdrawal_manager
        self.audit_trail = audit_trail
        self.logger = get_logger("scms.reporting")

    @property
    def currency(self) -> Currency:
        return Currency[get_config().default_currency]

    def balance_sheet(self) -> ReportResult:
        """Assets, liabilities and equity as of now"""
        currency = self.currency
        zero = Money.zero(currency)
        generated_at = datetime.now(timezone.utc)

        savings = share_capital = opening = zero
        for account in self.account_manager.list_accounts():
            if account.currency != currency:
                continue
            opening = opening + account.opening_balance
            if account.account_type == AccountType.SHARE_CAPITAL:
                share_capital = share_capital + account.balance
            else:
                savings = savings + account.balance

        flows = self._transaction_flows(self.recorder.list_transactions())
        cash = opening + flows['deposits'] - flows['withdrawals']

        loans_receivable = loan_interest = zero
        repayments = self._repayments_by_loan()
        for loan in self._disbursed_loans():
            loans_receivable = loans_receivable + loan.principal_outstanding
            for _, interest in recognized_loan_interest(loan, repayments.get(loan.id, [])):
                loan_interest = loan_interest + interest

        retained_earnings = (loan_interest + flows['penalties']
                             - flows['interest_paid'] - flows['dividends_paid'])
        total_assets = cash + loans_receivable
        total_liabilities = savings
        total_equity = share_capital + retained_earnings
        balanced = total_assets == total_liabilities + total_equity
        if not balanced:
            self.logger.error(
                "Balance sheet out of balance: assets %s, liabilities + equity %s",
                total_assets.to_string(), (total_liabilities + total_equity).to_string()
            )

        data = [
            {'section': 'assets', 'item': 'cash', 'amount': cash.amount},
            {'section': 'assets', 'item': 'loans_receivable', 'amount': loans_receivable.amount},
            {'section': 'liabilities', 'item': 'member_savings', 'amount': savings.amount},
            {'section': 'equity', 'item': 'share_capital', 'amount': share_capital.amount},
            {'section': 'equity', 'item': 'retained_earnings', 'amount': retained_earnings.amount},
        ]
        totals = {
            'total_assets': total_assets.amount,
            'total_liabilities': total_liabilities.amount,
            'total_equity': total_equity.amount,
            'balanced': balanced,
        }
        return ReportResult(
            report_id="balance_sheet",
            generated_at=generated_at,
            period_start=None,
            period_end=generated_at,
            data=data,
            totals=totals,
            metadata={'row_count': len(data), 'currency': currency.code}
        )

    def income_statement(self, period_start: Optional[datetime] = None,
                         period_end: Optional[datetime] = None) -> ReportResult:
        """Revenue and expenses recognised between ``period_start`` and ``period_end``"""
        currency = self.currency
        zero = Money.zero(currency)
        generated_at = datetime.now(timezone.utc)

        flows = self._transaction_flows(self.recorder.list_transactions(period_start, period_end))

        loan_interest = zero
        repayments = self._repayments_by_loan()
        for loan in self._disbursed_loans():
            for created_at, interest in recognized_loan_interest(loan, repayments.get(loan.id, [])):
                if period_start and created_at < period_start:
                    continue
                if period_end and created_at > period_end:
                    continue
                loan_interest = loan_interest + interest

        total_revenue = loan_interest + flows['penalties']
        total_expenses = flows['interest_paid'] + flows['dividends_paid']
        data = [
            {'category': 'revenue', 'item': 'loan_interest', 'amount': loan_interest.amount},
            {'category': 'revenue', 'item': 'penalty_income', 'amount': flows['penalties'].amount},
            {'category': 'expenses', 'item': 'interest_paid', 'amount': flows['interest_paid'].amount},
            {'category': 'expenses', 'item': 'dividends_paid', 'amount': flows['dividends_paid'].amount},
        ]
        totals = {
            'total_revenue': total_revenue.amount,
            'total_expenses': total_expenses.amount,
            'net_income': (total_revenue - total_expenses).amount,
        }
        return ReportResult(
            report_id="income_statement",
            generated_at=generated_at,
            period_start=period_start,
            period_end=period_end or generated_at,
            data=data,
            totals=totals,
            metadata={'row_count': len(data), 'currency': currency.code}
        )

    def financial_summary(self) -> ReportResult:
        """Member counts, balances per account type and the loan book"""
        currency = self.currency
        generated_at = datetime.now(timezone.utc)

        members: Dict[str, int] = {status.value: 0 for status in MemberStatus}
        for member in self.member_manager.list_members():
            members[member.status.value] += 1

        balances = {account_type.value: Money.zero(currency) for account_type in AccountType}
        account_counts = {account_type.value: 0 for account_type in AccountType}
        for account in self.account_manager.list_accounts():
            if account.currency != currency:
                continue
            balances[account.account_type.value] = balances[account.account_type.value] + account.balance
            account_counts[account.account_type.value] += 1

        loan_counts = {status.value: 0 for status in LoanStatus}
        outstanding = principal_outstanding = Money.zero(currency)
        for loan in self.loan_manager.list_loans():
            loan_counts[loan.status.value] += 1
            if loan.currency == currency and loan.status in (
                LoanStatus.DISBURSED, LoanStatus.REPAYING, LoanStatus.DEFAULTED
            ):
                outstanding = outstanding + loan.outstanding_balance
                principal_outstanding = principal_outstanding + loan.principal_outstanding

        data = [
            {'account_type': name, 'accounts': account_counts[name], 'balance': balances[name].amount}
            for name in balances
        ]
        totals = {
            'members': members,
            'loans': loan_counts,
            'loan_outstanding_balance': outstanding.amount,
            'loan_principal_outstanding': principal_outstanding.amount,
            'pending_withdrawals': len(self.withdrawal_manager.list_pending()),
        }
        return ReportResult(
            report_id="financial_summary",
            generated_at=generated_at,
            period_start=None,
            period_end=generated_at,
            data=data,
            totals=totals,
            metadata={'row_count': len(data), 'currency': currency.code}
        )

    def account_statement(
        self,
        account_id: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> ReportResult:
        """Transactions of one account, newest first"""
        account = self.account_manager.require_account(account_id)
        limit = limit or get_config().statement_page_size
        transactions = self.recorder.get_account_transactions(
            account_id, period_start, period_end, limit=limit, offset=offset
        )
        data = [
            {
                'reference': t.reference,
                'date': t.created_at.isoformat(),
                'transaction_type': t.transaction_type.value,
                'status': t.status.value,
                'description': t.description,
                'amount': t.signed_amount.amount,
                'balance_after': t.balance_after.amount,
            }
            for t in transactions
        ]
        totals = {
            'account_number': account.account_number,
            'account_type': account.account_type.value,
            'status': account.status.value,
            'balance': account.balance.amount,
        }
        return ReportResult(
            report_id="account_statement",
            generated_at=datetime.now(timezone.utc),
            period_start=period_start,
            period_end=period_end,
            data=data,
            totals=totals,
            metadata={'row_count': len(data), 'currency': account.currency.code,
                      'limit': limit, 'offset': offset}
        )

    def reconcile_accounts(self) -> ReportResult:
        """Replay every account's history and list the ones that do not match"""
        data = []
        accounts = self.account_manager.list_accounts()
        for account in accounts:
            problems = self.recorder.replay_account(account.id)
            if problems:
                data.append({'account_number': account.account_number, 'account_id': account.id,
                             'problems': problems})
        if data:
            self.logger.error("Reconciliation found %d mismatched account(s)", len(data))

        audit = self.audit_trail.verify_integrity()
        totals = {
            'accounts_checked': len(accounts),
            'mismatched_accounts': len(data),
            'audit_chain_valid': audit['valid'],
        }
        return ReportResult(
            report_id="reconciliation",
            generated_at=datetime.now(timezone.utc),
            period_start=None,
            period_end=None,
            data=data,
            totals=totals
        )

    def export_report(self, result: ReportResult, format: ReportFormat) -> Union[Dict, str]:
        """
        Export report result in specified format
        """
        if format == ReportFormat.DICT:
            return {
                'report_id': result.report_id,
                'generated_at': result.generated_at.isoformat(),
                'period_start': result.period_start.isoformat() if result.period_start else None,
                'period_end': result.period_end.isoformat() if result.period_end else None,
                'data': [_jsonable(row) for row in result.data],
                'totals': _jsonable(result.totals),
                'metadata': result.metadata
            }

        elif format == ReportFormat.CSV:
            output = io.StringIO()

            if result.data:
                headers = list(result.data[0].keys())
                writer = csv.DictWriter(output, fieldnames=headers)
                writer.writeheader()

                for row in result.data:
                    writer.writerow(row)

            csv_content = output.getvalue()
            output.close()
            return csv_content

        else:
            raise ValueError(f"Unsupported export format: {format}")

    def _disbursed_loans(self) -> List[Loan]:
        return [loan for loan in self.loan_manager.list_loans()
                if loan.disbursed_at is not None and loan.currency == self.currency]

    def _repayments_by_loan(self) -> Dict[str, List[LoanRepayment]]:
        grouped: Dict[str, List[LoanRepayment]] = {}
        for repayment in self.loan_manager.list_repayments():
            grouped.setdefault(repayment.loan_id, []).append(repayment)
        return grouped

    def _transaction_flows(self, transactions: List[Transaction]) -> Dict[str, Money]:
        """
        Net deposits, external withdrawals, penalties, interest and
        dividends; reversal records count negatively
        """
        currency = self.currency
        flows = {name: Money.zero(currency)
                 for name in ('deposits', 'withdrawals', 'penalties', 'interest_paid', 'dividends_paid')}
        originals = {t.id: t for t in self.recorder.list_transactions()}

        for transaction in transactions:
            if transaction.amount.currency != currency:
                continue
            amount = -transaction.amount if transaction.is_reversal else transaction.amount
            source = originals.get(transaction.reversal_of, transaction) if transaction.is_reversal else transaction

            if transaction.transaction_type == TransactionType.DEPOSIT:
                flows['deposits'] = flows['deposits'] + amount
            elif transaction.transaction_type == TransactionType.WITHDRAWAL:
                if source.metadata.get('category') == PENALTY_CATEGORY:
                    flows['penalties'] = flows['penalties'] + amount
                else:
                    flows['withdrawals'] = flows['withdrawals'] + amount
            elif transaction.transaction_type == TransactionType.INTEREST:
                flows['interest_paid'] = flows['interest_paid'] + amount
            elif transaction.transaction_type == TransactionType.DIVIDEND:
                flows['dividends_paid'] = flows['dividends_paid'] + amount
        return flows


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value
