"""
Interest & Dividend Posting Module

Bulk crediting of interest (savings accounts) and dividends (share capital
accounts) for a named period. The dry run and the real run share
``project_posting`` so a preview always shows exactly what a run would post.

Each account is posted in its own unit of work. A run that fails for some
accounts leaves a ``failed`` PostingLog behind; running the same period again
resumes it and only posts to the accounts that were missed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import re
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, UniqueConstraintError
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager, Account, AccountType
from .transactions import Transaction, TransactionType
from .posting import PostingEngine
from .errors import CooperativeError, DuplicatePosting, PartialPostingFailure
from .config import get_config
from .logging_config import get_logger, log_action


class PostingType(Enum):
    INTEREST = "interest"
    DIVIDEND = "dividend"


class PostingLogStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


_ELIGIBLE_ACCOUNT_TYPES = {
    PostingType.INTEREST: AccountType.SAVINGS,
    PostingType.DIVIDEND: AccountType.SHARE_CAPITAL,
}

_TRANSACTION_TYPES = {
    PostingType.INTEREST: TransactionType.INTEREST,
    PostingType.DIVIDEND: TransactionType.DIVIDEND,
}

# Interest period labels and how many such periods make up a year
_INTEREST_PERIODS = [
    (re.compile(r"^Monthly-\d{4}-(0[1-9]|1[0-2])$"), 12),
    (re.compile(r"^Quarterly-\d{4}-Q[1-4]$"), 4),
    (re.compile(r"^Half-\d{4}-H[12]$"), 2),
    (re.compile(r"^(Annual|FY)-\d{4}$"), 1),
]


def periods_per_year(posting_type: PostingType, period: str) -> int:
    """
    Number of ``period``-sized periods in a year. Dividends are declared
    for a whole period and never prorated.

    Raises:
        ValueError: unrecognised interest period label
    """
    if not period or not period.strip():
        raise ValueError("Posting period is required")
    if posting_type == PostingType.DIVIDEND:
        return 1
    for pattern, count in _INTEREST_PERIODS:
        if pattern.match(period):
            return count
    raise ValueError(
        f"Unrecognised interest period '{period}'. "
        "Expected Monthly-YYYY-MM, Quarterly-YYYY-Qn, Half-YYYY-Hn, Annual-YYYY or FY-YYYY"
    )


@dataclass(frozen=True)
class PostingLine:
    """Amount one account receives in a run"""
    account_id: str
    account_number: str
    member_id: str
    balance: Money
    amount: Money

    def as_dict(self) -> Dict[str, str]:
        return {
            "account_id": self.account_id,
            "account_number": self.account_number,
            "member_id": self.member_id,
            "balance": str(self.balance.amount),
            "amount": str(self.amount.amount),
        }


@dataclass
class PostingProjection:
    posting_type: PostingType
    period: str
    rate: Decimal
    currency: Currency
    lines: List[PostingLine] = field(default_factory=list)

    @property
    def total_amount(self) -> Money:
        total = Money.zero(self.currency)
        for line in self.lines:
            total = total + line.amount
        return total

    @property
    def beneficiary_count(self) -> int:
        return len(self.lines)


def project_posting(
    accounts: Iterable[Account],
    posting_type: PostingType,
    period: str,
    rate: Decimal,
    currency: Currency
) -> PostingProjection:
    """
    Compute what a run would credit, without touching any state.

    amount = balance * rate / 100 / periods_per_year, rounded to the
    currency's precision. Accounts whose amount rounds to zero are left out.
    """
    rate = Decimal(rate)
    if rate <= 0:
        raise ValueError("Posting rate must be positive")
    divisor = Decimal('100') * Decimal(periods_per_year(posting_type, period))
    eligible_type = _ELIGIBLE_ACCOUNT_TYPES[posting_type]

    projection = PostingProjection(posting_type=posting_type, period=period, rate=rate, currency=currency)
    for account in sorted(accounts, key=lambda a: a.account_number):
        if account.account_type != eligible_type or not account.is_active:
            continue
        if account.currency != currency or not account.balance.is_positive():
            continue
        amount = Money(account.balance.amount * rate / divisor, currency)
        if not amount.is_positive():
            continue
        projection.lines.append(PostingLine(
            account_id=account.id,
            account_number=account.account_number,
            member_id=account.member_id,
            balance=account.balance,
            amount=amount
        ))
    return projection


@dataclass
class PostingLog(StorageRecord):
    """One bulk posting run; unique per (posting_type, period)"""
    posting_type: PostingType
    period: str
    rate: Decimal
    total_amount: Money
    beneficiary_count: int = 0
    status: PostingLogStatus = PostingLogStatus.PENDING
    performed_by: Optional[str] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)
    completed_at: Optional[datetime] = None


@dataclass
class PostingPreview:
    """Dry-run result"""
    posting_type: PostingType
    period: str
    rate: Decimal
    total_amount: Money
    beneficiary_count: int
    rows: List[PostingLine]
    already_posted: bool


@dataclass
class PostingRunResult:
    posting_log: PostingLog
    posted: List[Transaction] = field(default_factory=list)
    skipped_account_ids: List[str] = field(default_factory=list)

    @property
    def failures(self) -> List[Dict[str, Any]]:
        return self.posting_log.failures

    @property
    def succeeded(self) -> bool:
        return self.posting_log.status == PostingLogStatus.COMPLETED

    def raise_for_failures(self) -> None:
        """
        Raises:
            PartialPostingFailure: if any account could not be posted
        """
        if not self.succeeded:
            raise PartialPostingFailure(self.posting_log, self.failures)


class InterestPostingEngine:
    """Runs and previews bulk interest and dividend postings"""

    def __init__(
        self,
        storage: StorageInterface,
        account_manager: AccountManager,
        posting_engine: PostingEngine,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.account_manager = account_manager
        self.posting_engine = posting_engine
        self.recorder = posting_engine.recorder
        self.audit_trail = audit_trail
        self.table_name = "posting_logs"
        self.logger = get_logger("scms.interest")

        self.storage.ensure_unique(self.table_name, "posting_type", "period")

    def project(self, posting_type: PostingType, period: str, rate: Decimal) -> PostingProjection:
        currency = Currency[get_config().default_currency]
        accounts = self.account_manager.list_accounts(account_type=_ELIGIBLE_ACCOUNT_TYPES[posting_type])
        return project_posting(accounts, posting_type, period, rate, currency)

    def preview(self, posting_type: PostingType, period: str, rate: Decimal) -> PostingPreview:
        """Read-only projection of a run"""
        projection = self.project(posting_type, period, rate)
        existing = self.get_posting_log(posting_type, period)
        return PostingPreview(
            posting_type=posting_type,
            period=period,
            rate=projection.rate,
            total_amount=projection.total_amount,
            beneficiary_count=projection.beneficiary_count,
            rows=projection.lines[:get_config().posting_preview_size],
            already_posted=existing is not None and existing.status != PostingLogStatus.FAILED
        )

    def run(self, posting_type: PostingType, period: str, rate: Decimal, performed_by: str,
            dry_run: bool = False):
        """
        Post interest or dividends for ``period``

        Returns:
            PostingPreview when ``dry_run`` is set, otherwise PostingRunResult

        Raises:
            DuplicatePosting: the period is already posted or being posted
        """
        if dry_run:
            return self.preview(posting_type, period, rate)

        with self.posting_engine.locks.hold(f"posting:{posting_type.value}:{period}"):
            projection = self.project(posting_type, period, rate)
            log, already_posted = self._start_log(projection, performed_by)
            result = PostingRunResult(posting_log=log)

            try:
                for line in projection.lines:
                    if line.account_id in already_posted:
                        result.skipped_account_ids.append(line.account_id)
                        continue
                    self._post_line(log, line, performed_by, result)
            except Exception:
                log.failures.append({"account_id": None, "error": "run aborted"})
                self._finish_log(log, performed_by)
                raise

            self._finish_log(log, performed_by)

        log_action(
            self.logger, "info" if result.succeeded else "error",
            f"{posting_type.value.capitalize()} posting {period} {log.status.value}",
            user_id=performed_by, action="post_interest", resource=f"posting_log:{log.id}",
            extra={
                "total_amount": log.total_amount.to_string(),
                "beneficiary_count": log.beneficiary_count,
                "failures": len(log.failures),
                "skipped": len(result.skipped_account_ids)
            }
        )
        return result

    def abandon_run(self, posting_type: PostingType, period: str, performed_by: str,
                    reason: str) -> PostingLog:
        """
        Mark a run left ``pending`` by a process that died mid-run as failed.

        Totals are rebuilt from the transactions the run did post, so the
        next ``run`` for the period resumes it and skips those accounts.
        A run still active in this process holds the period lock, so this
        waits for it and then finds it finished.
        """
        if not reason:
            raise ValueError("A reason is required to abandon a posting run")

        with self.posting_engine.locks.hold(f"posting:{posting_type.value}:{period}"):
            log = self.get_posting_log(posting_type, period)
            if not log:
                raise CooperativeError(f"No {posting_type.value} posting run for {period}")
            if log.status != PostingLogStatus.PENDING:
                raise CooperativeError(f"Only a pending run can be abandoned; this one is {log.status.value}")

            posted = self.storage.find(self.recorder.table_name, {"posting_log_id": log.id})
            total = Money.zero(log.total_amount.currency)
            for data in posted:
                total = total + Money(Decimal(data['amount']), log.total_amount.currency)

            log.total_amount = total
            log.beneficiary_count = len(posted)
            log.failures = [{"account_id": None, "error": f"run abandoned: {reason}"}]
            log.status = PostingLogStatus.FAILED
            log.updated_at = datetime.now(timezone.utc)
            with self.storage.atomic():
                self._save_log(log)
                self.audit_trail.log_event(
                    event_type=AuditEventType.POSTING_RUN_FAILED,
                    entity_type="posting_log",
                    entity_id=log.id,
                    user_id=performed_by,
                    metadata={"reason": reason, "posted_accounts": len(posted),
                              "total_amount": total.to_string()}
                )

        log_action(self.logger, "warning", f"{posting_type.value.capitalize()} posting {period} abandoned",
                   user_id=performed_by, action="abandon_posting", resource=f"posting_log:{log.id}",
                   extra={"reason": reason, "posted_accounts": len(posted)})
        return log

    def _start_log(self, projection: PostingProjection, performed_by: str):
        """Create the run's log, or reopen a failed one. Returns (log, posted account ids)."""
        posting_type, period = projection.posting_type, projection.period
        now = datetime.now(timezone.utc)

        existing = self.get_posting_log(posting_type, period)
        if existing:
            if existing.status != PostingLogStatus.FAILED:
                raise DuplicatePosting(posting_type.value, period)
            if existing.rate != projection.rate:
                raise CooperativeError(
                    f"Failed run for {period} used rate {existing.rate}; resume with the same rate"
                )
            log = existing
            log.status = PostingLogStatus.PENDING
            log.failures = []
            log.updated_at = now
            already_posted = {
                data['account_id']
                for data in self.storage.find(self.recorder.table_name, {"posting_log_id": log.id})
            }
        else:
            log = PostingLog(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                posting_type=posting_type,
                period=period,
                rate=projection.rate,
                total_amount=Money.zero(projection.currency),
                performed_by=performed_by
            )
            already_posted = set()

        with self.storage.atomic():
            try:
                self._save_log(log)
            except UniqueConstraintError:
                raise DuplicatePosting(posting_type.value, period)
            self.audit_trail.log_event(
                event_type=AuditEventType.POSTING_RUN_STARTED,
                entity_type="posting_log",
                entity_id=log.id,
                user_id=performed_by,
                metadata={
                    "posting_type": posting_type.value,
                    "period": period,
                    "rate": str(projection.rate),
                    "projected_total": projection.total_amount.to_string(),
                    "resumed": existing is not None
                }
            )
        return log, already_posted

    def _post_line(self, log: PostingLog, line: PostingLine, performed_by: str,
                   result: PostingRunResult) -> None:
        transaction_type = _TRANSACTION_TYPES[log.posting_type]
        try:
            with self.posting_engine.unit_of_work(line.account_id):
                transaction = self.recorder.record(
                    line.account_id, transaction_type, line.amount, performed_by,
                    f"{log.posting_type.value.capitalize()} for {log.period}",
                    posting_log_id=log.id,
                    metadata={"period": log.period, "rate": str(log.rate)}
                )
        except ValueError as e:
            failure = {
                "account_id": line.account_id,
                "account_number": line.account_number,
                "amount": str(line.amount.amount),
                "error": str(e)
            }
            log.failures.append(failure)
            self.logger.error(
                "Posting %s %s failed for %s: %s",
                log.posting_type.value, log.period, line.account_number, e
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.POSTING_ACCOUNT_FAILED,
                entity_type="posting_log",
                entity_id=log.id,
                user_id=performed_by,
                metadata=failure
            )
            return

        log.total_amount = log.total_amount + line.amount
        log.beneficiary_count += 1
        result.posted.append(transaction)

    def _finish_log(self, log: PostingLog, performed_by: str) -> None:
        now = datetime.now(timezone.utc)
        log.status = PostingLogStatus.FAILED if log.failures else PostingLogStatus.COMPLETED
        log.completed_at = now if log.status == PostingLogStatus.COMPLETED else None
        log.updated_at = now
        with self.storage.atomic():
            self._save_log(log)
            self.audit_trail.log_event(
                event_type=(AuditEventType.POSTING_RUN_COMPLETED if log.status == PostingLogStatus.COMPLETED
                            else AuditEventType.POSTING_RUN_FAILED),
                entity_type="posting_log",
                entity_id=log.id,
                user_id=performed_by,
                metadata={
                    "total_amount": log.total_amount.to_string(),
                    "beneficiary_count": log.beneficiary_count,
                    "failures": len(log.failures)
                }
            )

    def get_posting_log(self, posting_type: PostingType, period: str) -> Optional[PostingLog]:
        found = self.storage.find(self.table_name, {"posting_type": posting_type.value, "period": period})
        return self._log_from_dict(found[0]) if found else None

    def get_posting_history(self, posting_type: Optional[PostingType] = None) -> List[PostingLog]:
        """Posting runs, newest first"""
        filters = {"posting_type": posting_type.value} if posting_type else {}
        logs = [self._log_from_dict(data) for data in self.storage.find(self.table_name, filters)]
        logs.sort(key=lambda log: log.created_at, reverse=True)
        return logs

    def get_posting_stats(self, posting_type: PostingType) -> Dict[str, Any]:
        """Eligible accounts and their combined balance"""
        currency = Currency[get_config().default_currency]
        eligible = [
            account for account in self.account_manager.list_accounts(
                account_type=_ELIGIBLE_ACCOUNT_TYPES[posting_type]
            )
            if account.is_active and account.currency == currency and account.balance.is_positive()
        ]
        total = Money.zero(currency)
        for account in eligible:
            total = total + account.balance
        return {
            "posting_type": posting_type.value,
            "eligible_accounts": len(eligible),
            "total_balance": str(total.amount),
            "currency": currency.code
        }

    def _save_log(self, log: PostingLog) -> None:
        result = log.to_dict()
        result['posting_type'] = log.posting_type.value
        result['status'] = log.status.value
        result['rate'] = str(log.rate)
        result['currency'] = log.total_amount.currency.code
        result['total_amount'] = str(log.total_amount.amount)
        self.storage.save(self.table_name, log.id, result)

    def _log_from_dict(self, data: Dict) -> PostingLog:
        return PostingLog(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            posting_type=PostingType(data['posting_type']),
            period=data['period'],
            rate=Decimal(data['rate']),
            total_amount=Money(Decimal(data['total_amount']), Currency[data['currency']]),
            beneficiary_count=data.get('beneficiary_count', 0),
            status=PostingLogStatus(data['status']),
            performed_by=data.get('performed_by'),
            failures=data.get('failures', []),
            completed_at=datetime.fromisoformat(data['completed_at']) if data.get('completed_at') else None
        )
