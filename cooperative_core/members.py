"""
Member registry: registration records and member status.

Approval and rejection of registrations live in ``workflows.RegistrationQueue``.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import uuid

from .storage import StorageInterface, StorageRecord, UniqueConstraintError
from .audit import AuditTrail, AuditEventType
from .lifecycle import MemberStatus, ensure_transition
from .errors import CooperativeError, MemberNotFound
from .logging_config import get_logger, log_action


@dataclass
class Member(StorageRecord):
    member_number: str
    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    status: MemberStatus = MemberStatus.PENDING_APPROVAL
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class MemberManager:
    """Keeps member records"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "members"
        self.logger = get_logger("scms.members")
        self.storage.ensure_unique(self.table_name, "email")
        self.storage.ensure_unique(self.table_name, "member_number")

    def register_member(self, first_name: str, last_name: str, email: str,
                        phone: Optional[str] = None) -> Member:
        """Create a registration awaiting approval"""
        if not first_name or not last_name:
            raise ValueError("First and last name are required")
        if not email or "@" not in email:
            raise ValueError("A valid email address is required")

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            member = Member(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                member_number=f"MEM-{self.storage.count(self.table_name) + 1:05d}",
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                email=email.strip().lower(),
                phone=phone
            )
            try:
                self._save_member(member)
            except UniqueConstraintError:
                raise CooperativeError(f"A member with email {member.email} already exists")

            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_REGISTERED,
                entity_type="member",
                entity_id=member.id,
                user_id=member.id,
                metadata={"member_number": member.member_number, "email": member.email}
            )

        log_action(self.logger, "info", f"Member registered: {member.member_number}",
                   user_id=member.id, action="register_member", resource=f"member:{member.id}")
        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        data = self.storage.load(self.table_name, member_id)
        return self._member_from_dict(data) if data else None

    def require_member(self, member_id: str) -> Member:
        member = self.get_member(member_id)
        if not member:
            raise MemberNotFound(member_id)
        return member

    def list_members(self, status: Optional[MemberStatus] = None) -> List[Member]:
        filters = {"status": status.value} if status else {}
        return [self._member_from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def suspend_member(self, member_id: str, reason: str, performed_by: str) -> Member:
        return self.change_status(member_id, MemberStatus.SUSPENDED, performed_by,
                                  AuditEventType.MEMBER_SUSPENDED, {"reason": reason})

    def reinstate_member(self, member_id: str, performed_by: str) -> Member:
        return self.change_status(member_id, MemberStatus.ACTIVE, performed_by,
                                  AuditEventType.MEMBER_REINSTATED)

    def change_status(
        self,
        member_id: str,
        new_status: MemberStatus,
        performed_by: str,
        event_type: AuditEventType,
        metadata: Optional[Dict] = None
    ) -> Member:
        """Validate and persist a member status change"""
        with self.storage.atomic():
            member = self.require_member(member_id)
            old_status = member.status
            member.status = ensure_transition(old_status, new_status, "member")
            member.updated_at = datetime.now(timezone.utc)
            if new_status == MemberStatus.ACTIVE and old_status == MemberStatus.PENDING_APPROVAL:
                member.approved_by = performed_by
                member.approved_at = member.updated_at
            if new_status == MemberStatus.REJECTED and metadata:
                member.rejection_reason = metadata.get("reason")
            self._save_member(member)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="member",
                entity_id=member.id,
                user_id=performed_by,
                metadata={"old_status": old_status.value, "new_status": new_status.value, **(metadata or {})}
            )
        return member

    def _save_member(self, member: Member) -> None:
        result = member.to_dict()
        result['status'] = member.status.value
        self.storage.save(self.table_name, member.id, result)

    def _member_from_dict(self, data: Dict) -> Member:
        return Member(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_number=data['member_number'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            phone=data.get('phone'),
            status=MemberStatus(data['status']),
            approved_by=data.get('approved_by'),
            approved_at=datetime.fromisoformat(data['approved_at']) if data.get('approved_at') else None,
            rejection_reason=data.get('rejection_reason')
        )
