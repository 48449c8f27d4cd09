"""
Tamper-evident audit trail

Each event stores the SHA-256 digest of its own canonical JSON form and
the digest of the event before it, so editing or deleting any stored
event breaks the chain from that point on. The chain head (last digest
and sequence number) lives in its own table and is written in the same
unit of work as the event, which keeps sequence numbers gapless even
when the surrounding operation rolls back.
"""

import hashlib
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord


GENESIS_HASH = ""


class AuditEventType(Enum):
    """Types of audit events"""
    # Member events
    MEMBER_REGISTERED = "member_registered"
    MEMBER_APPROVED = "member_approved"
    MEMBER_REJECTED = "member_rejected"
    MEMBER_SUSPENDED = "member_suspended"
    MEMBER_REINSTATED = "member_reinstated"

    # Account events
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_FROZEN = "account_frozen"
    ACCOUNT_UNFROZEN = "account_unfrozen"
    ACCOUNT_CLOSED = "account_closed"

    # Transaction events
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSACTION_REVERSED = "transaction_reversed"
    TRANSFER_COMPLETED = "transfer_completed"

    # Loan events
    LOAN_APPLIED = "loan_applied"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_DISBURSED = "loan_disbursed"
    LOAN_REPAYMENT = "loan_repayment"
    LOAN_COMPLETED = "loan_completed"
    LOAN_DEFAULTED = "loan_defaulted"
    LOAN_DEDUCTION_FAILED = "loan_deduction_failed"
    GUARANTOR_ADDED = "guarantor_added"
    GUARANTOR_RESPONDED = "guarantor_responded"

    # Withdrawal events
    WITHDRAWAL_REQUESTED = "withdrawal_requested"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    WITHDRAWAL_CANCELLED = "withdrawal_cancelled"

    # Savings events
    SAVINGS_PRODUCT_CREATED = "savings_product_created"
    SAVINGS_PLAN_CREATED = "savings_plan_created"
    SAVINGS_PLAN_CLOSED = "savings_plan_closed"

    # Posting events
    POSTING_RUN_STARTED = "posting_run_started"
    POSTING_RUN_COMPLETED = "posting_run_completed"
    POSTING_RUN_FAILED = "posting_run_failed"
    POSTING_ACCOUNT_FAILED = "posting_account_failed"


def _canonical(value):
    """Reduce metadata values to JSON types so the digest is reproducible"""
    if isinstance(value, dict):
        return {key: _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class AuditEvent(StorageRecord):
    event_type: AuditEventType
    entity_type: str
    entity_id: str
    sequence: int
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        self.metadata = _canonical(self.metadata or {})

    def calculate_hash(self) -> str:
        """Digest over every field except current_hash itself"""
        payload = self.to_dict()
        payload.pop('current_hash')
        payload.pop('updated_at')
        encoded = json.dumps(payload, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Append-only, hash-chained log of every state change in the ledger.

    log_event joins the caller's unit of work: an event written by an
    operation that rolls back disappears with it and the chain head moves
    back too.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"

    def _chain_head(self) -> Dict[str, Any]:
        return self.storage.load(self.head_table, "head") or {"hash": GENESIS_HASH, "sequence": 0}

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> AuditEvent:
        """
        Append an event to the chain.

        Args:
            event_type: What happened
            entity_type: Kind of record affected (member, account, loan, posting_run, ...)
            entity_id: Identifier of that record
            metadata: Amounts, references and reasons worth keeping with the event
            user_id: Actor who caused it

        Returns:
            The stored AuditEvent
        """
        with self.storage.atomic():
            head = self._chain_head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head["sequence"] + 1,
                previous_hash=head["hash"],
                current_hash="",
                metadata=metadata,
                user_id=user_id
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self.storage.save(self.head_table, "head", {"hash": event.current_hash, "sequence": event.sequence})
        return event

    def _query(self, filters: Dict[str, Any], limit: Optional[int]) -> List[AuditEvent]:
        """Matching events in chain order; limit keeps the most recent ones"""
        rows = self.storage.find(self.table_name, filters) if filters else self.storage.load_all(self.table_name)
        events = sorted((AuditEvent.from_dict(row) for row in rows), key=lambda e: e.sequence)
        return events[-limit:] if limit else events

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        return self._query({'entity_type': entity_type, 'entity_id': entity_id}, limit)

    def get_events_by_type(self, event_type: AuditEventType, limit: Optional[int] = None) -> List[AuditEvent]:
        return self._query({'event_type': event_type.value}, limit)

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the whole chain and report every break.

        hash_errors lists events whose content no longer matches their
        digest, chain_breaks lists events that do not point at their
        predecessor, and sequence_gaps lists positions where an event is
        missing. A chain whose last event is not the recorded head has
        been truncated.
        """
        events = self._query({}, None)
        hash_errors, chain_breaks, sequence_gaps = [], [], []

        previous_hash = GENESIS_HASH
        for position, event in enumerate(events):
            if not event.verify_hash():
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            if event.sequence != position + 1:
                sequence_gaps.append({'event_id': event.id, 'expected': position + 1, 'actual': event.sequence})
            previous_hash = event.current_hash

        head = self._chain_head()
        truncated = head["sequence"] != len(events) or head["hash"] != previous_hash

        return {
            'valid': not (hash_errors or chain_breaks or sequence_gaps or truncated),
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
            'sequence_gaps': sequence_gaps,
            'truncated': truncated
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
