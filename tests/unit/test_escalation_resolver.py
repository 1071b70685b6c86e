"""
============================================================================
Unit Tests - Escalation Resolver
============================================================================

Tests approval authority resolution:
- Stage 1 resolves to the mentor, escalating to the department head
  (or the head's delegate) when the mentor is on leave
- Stage 2 and 3 fall back to the active delegate, then to manual routing
- can_act honours forwarding targets and department-wide delegation
- Grant and leave validation
============================================================================
"""

import os
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import seed_campus
from services.directory_store import DirectoryStore
from services.escalation_resolver import EscalationResolver
from services.pass_errors import NotFoundError, ValidationError
from services.pass_models import ApprovalStage


TODAY = date(2026, 10, 19)
OCTOBER = (date(2026, 10, 1), date(2026, 10, 31))


@pytest.fixture
def directory() -> DirectoryStore:
    store = DirectoryStore()
    seed_campus(store)
    return store


@pytest.fixture
def resolver(directory: DirectoryStore) -> EscalationResolver:
    return EscalationResolver(directory)


class TestStage1:

    def test_mentor_available(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolution = resolver.resolve_authority(ApprovalStage.STAGE1, directory.get_student("res-1"), TODAY)

        assert resolution.actor_id == "mentor-1"
        assert not resolution.escalated
        assert not resolution.is_delegate

    def test_mentor_on_leave_escalates_to_head(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.register_leave("mentor-1", TODAY, TODAY)

        resolution = resolver.resolve_authority(ApprovalStage.STAGE1, directory.get_student("res-1"), TODAY)

        assert resolution.actor_id == "hod-1"
        assert resolution.escalated

    def test_mentor_and_head_on_leave_uses_delegate(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.register_leave("mentor-1", TODAY, TODAY)
        resolver.register_leave("hod-1", TODAY, TODAY)
        resolver.grant_delegation("hod-1", "mentor-2", *OCTOBER)

        resolution = resolver.resolve_authority(ApprovalStage.STAGE1, directory.get_student("res-1"), TODAY)

        assert resolution.actor_id == "mentor-2"
        assert resolution.is_delegate
        assert resolution.escalated
        assert resolution.principal_id == "hod-1"

    def test_leave_outside_date_ignored(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.register_leave("mentor-1", date(2026, 10, 20), date(2026, 10, 22))

        resolution = resolver.resolve_authority(ApprovalStage.STAGE1, directory.get_student("res-1"), TODAY)

        assert resolution.actor_id == "mentor-1"


class TestStage2And3:

    def test_head_on_leave_without_delegate_pends(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.register_leave("hod-1", TODAY, TODAY)

        resolution = resolver.resolve_authority(ApprovalStage.STAGE2, directory.get_student("res-1"), TODAY)

        assert resolution.actor_id is None
        assert resolution.pending_manual_routing
        assert resolution.principal_id == "hod-1"

    def test_department_without_head(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        student = directory.get_student("res-1")
        student.department_id = "mech"

        resolution = resolver.resolve_authority(ApprovalStage.STAGE2, student, TODAY)

        assert resolution.actor_id is None
        assert resolution.pending_manual_routing
        assert resolution.principal_id is None

    def test_warden_delegate(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.register_leave("warden-1", TODAY, TODAY)
        resolver.grant_delegation("warden-1", "mentor-2", *OCTOBER)

        resolution = resolver.resolve_authority(ApprovalStage.STAGE3, directory.get_student("res-1"), TODAY)

        assert resolution.actor_id == "mentor-2"
        assert resolution.is_delegate


class TestCanAct:

    def test_stage1_only_resolved_authority(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        student = directory.get_student("res-1")

        assert resolver.can_act(ApprovalStage.STAGE1, "mentor-1", student, TODAY)
        assert not resolver.can_act(ApprovalStage.STAGE1, "mentor-2", student, TODAY)
        assert not resolver.can_act(ApprovalStage.STAGE1, "hod-1", student, TODAY)

    def test_forwarding_target_may_act(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        student = directory.get_student("res-1")

        assert resolver.can_act(ApprovalStage.STAGE1, "mentor-2", student, TODAY, forwarded_to="mentor-2")
        assert resolver.can_act(ApprovalStage.STAGE2, "mentor-2", student, TODAY, forwarded_to="mentor-2")

    def test_delegate_acts_even_while_head_present(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.grant_delegation("hod-1", "mentor-2", *OCTOBER)
        student = directory.get_student("res-1")

        assert resolver.can_act(ApprovalStage.STAGE2, "hod-1", student, TODAY)
        assert resolver.can_act(ApprovalStage.STAGE2, "mentor-2", student, TODAY)

    def test_expired_grant_confers_nothing(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        resolver.grant_delegation("hod-1", "mentor-2", date(2026, 10, 1), date(2026, 10, 10))

        assert not resolver.can_act(ApprovalStage.STAGE2, "mentor-2", directory.get_student("res-1"), TODAY)

    def test_other_department_head_cannot_act(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        assert not resolver.can_act(ApprovalStage.STAGE2, "hod-2", directory.get_student("res-1"), TODAY)

    def test_stage3_warden(self, resolver: EscalationResolver, directory: DirectoryStore) -> None:
        student = directory.get_student("res-1")

        assert resolver.can_act(ApprovalStage.STAGE3, "warden-1", student, TODAY)
        assert not resolver.can_act(ApprovalStage.STAGE3, "hod-1", student, TODAY)


class TestManagement:

    def test_new_grant_replaces_old(self, resolver: EscalationResolver) -> None:
        resolver.grant_delegation("hod-1", "mentor-1", *OCTOBER)
        resolver.grant_delegation("hod-1", "mentor-2", *OCTOBER)

        assert resolver.active_delegation("hod-1", TODAY).delegate_id == "mentor-2"
        assert resolver.delegated_authorities("mentor-1", TODAY) == []
        assert resolver.delegated_authorities("mentor-2", TODAY) == ["hod-1"]

    def test_revoke(self, resolver: EscalationResolver) -> None:
        resolver.grant_delegation("hod-1", "mentor-2", *OCTOBER)

        assert resolver.revoke_delegation("hod-1") == 1
        assert resolver.active_delegation("hod-1", TODAY) is None

    def test_inverted_window(self, resolver: EscalationResolver) -> None:
        with pytest.raises(ValidationError):
            resolver.grant_delegation("hod-1", "mentor-2", date(2026, 10, 31), date(2026, 10, 1))
        with pytest.raises(ValidationError):
            resolver.register_leave("mentor-1", date(2026, 10, 31), date(2026, 10, 1))

    def test_self_delegation(self, resolver: EscalationResolver) -> None:
        with pytest.raises(ValidationError):
            resolver.grant_delegation("hod-1", "hod-1", *OCTOBER)

    def test_unknown_staff(self, resolver: EscalationResolver) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            resolver.grant_delegation("hod-1", "ghost", *OCTOBER)
        assert exc_info.value.error_code == "NF-002"

        with pytest.raises(NotFoundError):
            resolver.register_leave("ghost", TODAY, TODAY)
