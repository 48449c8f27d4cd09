"""
Tests for the member registry
"""

import pytest

from cooperative_core.storage import InMemoryStorage
from cooperative_core.audit import AuditTrail, AuditEventType
from cooperative_core.members import MemberManager
from cooperative_core.lifecycle import MemberStatus
from cooperative_core.errors import CooperativeError, InvalidStateTransition, MemberNotFound


class TestMemberManager:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.member_manager = MemberManager(self.storage, self.audit_trail)

    def test_register_member(self):
        member = self.member_manager.register_member(" Ifeoma ", "Adeyemi", "Ifeoma@Example.com", "+2348012345678")

        assert member.member_number == "MEM-00001"
        assert member.status == MemberStatus.PENDING_APPROVAL
        assert member.full_name == "Ifeoma Adeyemi"
        assert member.email == "ifeoma@example.com"
        assert self.member_manager.require_member(member.id).phone == "+2348012345678"

        events = self.audit_trail.get_events_for_entity("member", member.id)
        assert events[0].event_type == AuditEventType.MEMBER_REGISTERED

    def test_member_numbers_are_sequential(self):
        self.member_manager.register_member("A", "One", "one@example.com")
        second = self.member_manager.register_member("B", "Two", "two@example.com")
        assert second.member_number == "MEM-00002"

    def test_duplicate_email_rejected(self):
        self.member_manager.register_member("A", "One", "one@example.com")

        with pytest.raises(CooperativeError, match="already exists"):
            self.member_manager.register_member("A", "Again", "ONE@example.com")
        assert len(self.member_manager.list_members()) == 1

    @pytest.mark.parametrize("first,last,email", [
        ("", "One", "one@example.com"),
        ("A", "", "one@example.com"),
        ("A", "One", "not-an-email"),
    ])
    def test_invalid_registration(self, first, last, email):
        with pytest.raises(ValueError):
            self.member_manager.register_member(first, last, email)

    def test_unknown_member(self):
        with pytest.raises(MemberNotFound):
            self.member_manager.require_member("missing")

    def test_suspend_and_reinstate(self):
        member = self.member_manager.register_member("A", "One", "one@example.com")
        self.member_manager.change_status(member.id, MemberStatus.ACTIVE, "admin", AuditEventType.MEMBER_APPROVED)

        suspended = self.member_manager.suspend_member(member.id, "Unpaid dues", "admin")
        assert suspended.status == MemberStatus.SUSPENDED
        assert self.member_manager.list_members(MemberStatus.SUSPENDED)[0].id == member.id

        reinstated = self.member_manager.reinstate_member(member.id, "admin")
        assert reinstated.status == MemberStatus.ACTIVE
        # Approval details are kept from the original approval
        assert reinstated.approved_by == "admin"

    def test_pending_member_cannot_be_suspended(self):
        member = self.member_manager.register_member("A", "One", "one@example.com")

        with pytest.raises(InvalidStateTransition):
            self.member_manager.suspend_member(member.id, "Unpaid dues", "admin")
