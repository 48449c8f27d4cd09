"""
Withdrawal requests raised by members against their own accounts.

A request does not move money. The funds leave the account only when an
administrator approves it through ``workflows.WithdrawalQueue``.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .accounts import AccountManager
from .lifecycle import WithdrawalStatus, ensure_transition
from .errors import (
    AccountNotActive, CooperativeError, InsufficientFunds, WithdrawalRequestNotFound
)
from .logging_config import get_logger, log_action


@dataclass
class WithdrawalRequest(StorageRecord):
    member_id: str
    account_id: str
    amount: Money
    reason: Optional[str] = None
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    transaction_id: Optional[str] = None


class WithdrawalManager:
    """Stores and queries withdrawal requests"""

    def __init__(self, storage: StorageInterface, account_manager: AccountManager, audit_trail: AuditTrail):
        self.storage = storage
        self.account_manager = account_manager
        self.audit_trail = audit_trail
        self.table_name = "withdrawal_requests"
        self.logger = get_logger("scms.withdrawals")

    def request_withdrawal(self, member_id: str, account_id: str, amount: Money,
                           reason: Optional[str] = None) -> WithdrawalRequest:
        """
        Raise a pending withdrawal request

        The balance is checked here so obviously unfundable requests are
        refused early; it is checked again when the request is approved.
        """
        account = self.account_manager.require_account(account_id)
        if account.member_id != member_id:
            raise CooperativeError("Members can only withdraw from their own accounts")
        if not amount.is_positive():
            raise ValueError("Withdrawal amount must be positive")
        if amount.currency != account.currency:
            raise ValueError("Withdrawal currency must match account currency")
        if not account.is_active:
            raise AccountNotActive(account.id, account.status.value)
        if not account.can_withdraw(amount):
            raise InsufficientFunds(account.id, account.balance.to_string(), amount.to_string())

        now = datetime.now(timezone.utc)
        request = WithdrawalRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=member_id,
            account_id=account_id,
            amount=amount,
            reason=reason
        )
        with self.storage.atomic():
            self._save_request(request)
            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_REQUESTED,
                entity_type="withdrawal_request",
                entity_id=request.id,
                user_id=member_id,
                metadata={"account_id": account_id, "amount": amount.to_string()}
            )

        log_action(self.logger, "info", "Withdrawal requested",
                   user_id=member_id, action="request_withdrawal", resource=f"withdrawal:{request.id}",
                   extra={"amount": amount.to_string()})
        return request

    def cancel_request(self, request_id: str, member_id: str) -> WithdrawalRequest:
        """Requester withdraws a pending request"""
        with self.storage.atomic():
            request = self.require_request(request_id)
            if request.member_id != member_id:
                raise CooperativeError("Only the requesting member can cancel a withdrawal request")
            request.status = ensure_transition(request.status, WithdrawalStatus.CANCELLED, "withdrawal request")
            request.processed_by = member_id
            request.processed_at = datetime.now(timezone.utc)
            request.updated_at = request.processed_at
            self._save_request(request)
            self.audit_trail.log_event(
                event_type=AuditEventType.WITHDRAWAL_CANCELLED,
                entity_type="withdrawal_request",
                entity_id=request.id,
                user_id=member_id
            )
        return request

    def get_request(self, request_id: str) -> Optional[WithdrawalRequest]:
        data = self.storage.load(self.table_name, request_id)
        return self._request_from_dict(data) if data else None

    def require_request(self, request_id: str) -> WithdrawalRequest:
        request = self.get_request(request_id)
        if not request:
            raise WithdrawalRequestNotFound(request_id)
        return request

    def list_pending(self) -> List[WithdrawalRequest]:
        """Pending requests, oldest first"""
        pending = [self._request_from_dict(data)
                   for data in self.storage.find(self.table_name, {"status": WithdrawalStatus.PENDING.value})]
        pending.sort(key=lambda r: r.created_at)
        return pending

    def get_member_requests(self, member_id: str) -> List[WithdrawalRequest]:
        return [self._request_from_dict(data)
                for data in self.storage.find(self.table_name, {"member_id": member_id})]

    def _save_request(self, request: WithdrawalRequest) -> None:
        result = request.to_dict()
        result['status'] = request.status.value
        result['currency'] = request.amount.currency.code
        result['amount'] = str(request.amount.amount)
        self.storage.save(self.table_name, request.id, result)

    def _request_from_dict(self, data: Dict) -> WithdrawalRequest:
        return WithdrawalRequest(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            account_id=data['account_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            reason=data.get('reason'),
            status=WithdrawalStatus(data['status']),
            processed_by=data.get('processed_by'),
            processed_at=datetime.fromisoformat(data['processed_at']) if data.get('processed_at') else None,
            rejection_reason=data.get('rejection_reason'),
            transaction_id=data.get('transaction_id')
        )
