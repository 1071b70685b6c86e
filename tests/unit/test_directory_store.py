"""
============================================================================
Unit Tests - Directory Store
============================================================================

Tests the campus directory and configuration tables:
- Students, register lookups and block flags
- Atomic trust changes with hashed history rows
- Staff lookups by department and residence
- Leave, delegation, year restriction, holiday and policy tables
============================================================================
"""

import os
import sys
from datetime import date, datetime, time, timezone
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.directory_store import DirectoryStore
from services.pass_errors import NotFoundError, PassSystemError
from services.pass_models import (
    CalendarException,
    DelegationGrant,
    LeaveRecord,
    PassPolicy,
    StaffMember,
    Student,
    YearRestriction,
    compute_audit_hash,
)


NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def directory() -> DirectoryStore:
    store = DirectoryStore()
    store.upsert_student(Student(
        student_id="stu-1", name="Asha", category="resident",
        department_id="cse", residence_id="h1", register_number="21CS001",
    ))
    return store


class TestStudents:

    def test_require_unknown_student(self, directory: DirectoryStore) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            directory.require_student("ghost", correlation_id="corr-1")

        assert exc_info.value.error_code == "NF-002"
        assert exc_info.value.correlation_id == "corr-1"

    def test_find_by_register(self, directory: DirectoryStore) -> None:
        assert directory.find_student_by_register("21CS001").student_id == "stu-1"
        assert directory.find_student_by_register("99XX999") is None

    def test_set_pass_blocked(self, directory: DirectoryStore) -> None:
        assert directory.set_pass_blocked("stu-1", True) == 1
        assert directory.get_student("stu-1").pass_blocked is True
        assert directory.set_pass_blocked("ghost", True) == 0

    def test_set_cooldown_override(self, directory: DirectoryStore) -> None:
        assert directory.set_cooldown_override("stu-1", NOW) == 1
        assert directory.get_student("stu-1").cooldown_override_at == NOW

    def test_student_copy_is_detached(self, directory: DirectoryStore) -> None:
        student = directory.get_student("stu-1")
        student.trust_score = 0

        assert directory.get_student("stu-1").trust_score == 100


class TestTrustChanges:

    def test_change_applied_and_recorded(self, directory: DirectoryStore) -> None:
        adjustment = directory.record_trust_change(
            "stu-1", lambda old: old - 20, "system", "late cancellation", NOW
        )

        assert adjustment.old_score == 100
        assert adjustment.new_score == 80
        assert directory.get_student("stu-1").trust_score == 80
        assert adjustment.row_hash == compute_audit_hash(adjustment.hash_payload())

    def test_history_newest_first(self, directory: DirectoryStore) -> None:
        directory.record_trust_change("stu-1", lambda old: old - 10, "system", "first", NOW)
        directory.record_trust_change("stu-1", lambda old: old - 10, "system", "second", NOW)

        history = directory.list_trust_history("stu-1")

        assert [h.reason for h in history] == ["second", "first"]
        assert history[0].old_score == 90

    def test_unknown_student(self, directory: DirectoryStore) -> None:
        with pytest.raises(NotFoundError):
            directory.record_trust_change("ghost", lambda old: old, "system", "x", NOW)

    def test_sql_failure_rolls_back(self) -> None:
        session = Mock()
        session.execute.side_effect = RuntimeError("deadlock detected")
        store = DirectoryStore(db_session=session)

        with pytest.raises(PassSystemError):
            store.record_trust_change("stu-1", lambda old: old, "system", "x", NOW)

        session.rollback.assert_called_once()


class TestStaff:

    def test_head_and_hostel_authority(self) -> None:
        store = DirectoryStore()
        store.upsert_staff(StaffMember("hod-1", "hod", "Head", department_id="cse"))
        store.upsert_staff(StaffMember("warden-1", "warden", "Warden", residence_id="h1"))
        store.upsert_staff(StaffMember("mentor-1", "mentor", "Mentor", department_id="cse"))

        assert store.find_department_head("cse").actor_id == "hod-1"
        assert store.find_department_head("ece") is None
        assert store.find_department_head(None) is None
        assert store.find_hostel_authority("h1").actor_id == "warden-1"

    def test_leave_lookup(self) -> None:
        store = DirectoryStore()
        store.add_leave(LeaveRecord(
            id="l-1", actor_id="mentor-1",
            starts_on=date(2026, 10, 18), ends_on=date(2026, 10, 20),
        ))

        assert store.is_on_leave("mentor-1", date(2026, 10, 19))
        assert not store.is_on_leave("mentor-1", date(2026, 10, 21))
        assert not store.is_on_leave(None, date(2026, 10, 19))

    def test_rejected_leave_ignored(self) -> None:
        store = DirectoryStore()
        store.add_leave(LeaveRecord(
            id="l-1", actor_id="mentor-1", status="rejected",
            starts_on=date(2026, 10, 18), ends_on=date(2026, 10, 20),
        ))

        assert not store.is_on_leave("mentor-1", date(2026, 10, 19))


class TestDelegations:

    def make_grant(self, grant_id: str, delegate_id: str) -> DelegationGrant:
        return DelegationGrant(
            id=grant_id, authority_id="hod-1", delegate_id=delegate_id,
            starts_on=date(2026, 10, 1), ends_on=date(2026, 10, 31),
        )

    def test_new_grant_replaces_previous(self) -> None:
        store = DirectoryStore()
        store.activate_delegation(self.make_grant("g-1", "mentor-1"))
        store.activate_delegation(self.make_grant("g-2", "mentor-2"))

        active = store.list_active_delegations(authority_id="hod-1")

        assert [g.id for g in active] == ["g-2"]

    def test_filter_by_delegate(self) -> None:
        store = DirectoryStore()
        store.activate_delegation(self.make_grant("g-1", "mentor-1"))

        assert len(store.list_active_delegations(delegate_id="mentor-1")) == 1
        assert store.list_active_delegations(delegate_id="mentor-2") == []

    def test_revoke(self) -> None:
        store = DirectoryStore()
        store.activate_delegation(self.make_grant("g-1", "mentor-1"))

        assert store.revoke_delegation("hod-1") == 1
        assert store.revoke_delegation("hod-1") == 0
        assert store.list_active_delegations() == []


class TestCalendarAndRestrictions:

    def test_year_restriction_roundtrip(self) -> None:
        store = DirectoryStore()
        store.set_year_restriction(YearRestriction("cse", 1, "exams"))

        assert store.get_year_restriction("cse", 1).reason == "exams"
        assert store.get_year_restriction("cse", 2) is None
        assert store.get_year_restriction(None, 1) is None
        assert store.remove_year_restriction("cse", 1) == 1
        assert store.remove_year_restriction("cse", 1) == 0

    def test_holidays_sorted(self) -> None:
        store = DirectoryStore()
        store.add_holiday(CalendarException(date(2026, 12, 25), "Christmas"))
        store.add_holiday(CalendarException(date(2026, 11, 8), "Diwali"))

        assert [h.title for h in store.list_holidays()] == ["Diwali", "Christmas"]
        assert store.is_holiday_date(date(2026, 12, 25))
        assert not store.is_holiday_date(date(2026, 12, 26))


class TestPolicies:

    def test_upsert_keeps_policy_id(self) -> None:
        store = DirectoryStore()
        first = store.upsert_policy(PassPolicy("resident", "outing", working_start=time(9), working_end=time(17)))
        second = store.upsert_policy(PassPolicy("resident", "outing", max_duration_hours=6))
        other = store.upsert_policy(PassPolicy("day_scholar", "outing"))

        assert first.policy_id == second.policy_id
        assert other.policy_id != first.policy_id
        assert store.get_policy("resident", "outing").max_duration_hours == 6
        assert store.get_policy("resident", "outing").source == "table"

    def test_list_and_delete(self) -> None:
        store = DirectoryStore()
        store.upsert_policy(PassPolicy("resident", "outing"))
        store.upsert_policy(PassPolicy("day_scholar", "outing"))

        assert [p.key for p in store.list_policies()] == ["day_scholar:outing", "resident:outing"]
        assert store.delete_policy("resident", "outing") == 1
        assert store.get_policy("resident", "outing") is None
        assert store.delete_policy("resident", "outing") == 0
