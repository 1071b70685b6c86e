"""
============================================================================
Unit Tests - Pass Store
============================================================================

Tests request, gate log and staff action persistence:
- Single outstanding request (VAL-004) on insert
- Guarded compare-and-set on the in-memory and SQL paths
- Expiry selections
- Gate log ordering and latest-log lookup
- Returned records are copies, never live references
============================================================================
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import IntegrityError

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.pass_errors import ValidationError, PassSystemError
from services.pass_models import PassRequest, GateLog, StaffAction
from services.pass_store import PassStore


NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def make_request(
    request_id: str = "req-1",
    student_id: str = "stu-1",
    status: str = "pending",
    gate_action: str = "scan_both",
    departure_in: timedelta = timedelta(hours=1),
    duration: timedelta = timedelta(hours=3),
    created_at: datetime = NOW,
) -> PassRequest:
    return PassRequest(
        id=request_id,
        student_id=student_id,
        pass_category="outing",
        reason="Errand",
        departure_at=NOW + departure_in,
        return_at=NOW + departure_in + duration,
        status=status,
        gate_action=gate_action,
        correlation_id=f"corr-{request_id}",
        created_at=created_at,
        updated_at=created_at,
    )


def make_log(request_id: str, action: str, at: datetime, log_id: str = None) -> GateLog:
    return GateLog(
        id=log_id or f"{request_id}-{action}-{at.isoformat()}",
        request_id=request_id,
        action=action,
        gatekeeper_id="gate-1",
        logged_at=at,
    )


@pytest.fixture
def store() -> PassStore:
    return PassStore()


class TestInsert:

    def test_second_open_request_refused(self, store: PassStore) -> None:
        store.insert_request(make_request("a"))

        with pytest.raises(ValidationError) as exc_info:
            store.insert_request(make_request("b"))

        assert exc_info.value.error_code == "VAL-004"
        assert store.get_request("b") is None

    def test_terminal_request_does_not_block(self, store: PassStore) -> None:
        store.insert_request(make_request("a", status="completed"))

        store.insert_request(make_request("b"))

        assert store.find_open_request("stu-1").id == "b"

    def test_other_students_independent(self, store: PassStore) -> None:
        store.insert_request(make_request("a", student_id="stu-1"))
        store.insert_request(make_request("b", student_id="stu-2"))

        assert len(store.list_requests()) == 2

    def test_sql_unique_violation_maps_to_val_004(self) -> None:
        session = Mock()
        session.execute.side_effect = IntegrityError("INSERT", {}, Exception("uq_open_request"))
        store = PassStore(db_session=session)

        with pytest.raises(ValidationError) as exc_info:
            store.insert_request(make_request())

        assert exc_info.value.error_code == "VAL-004"
        session.rollback.assert_called_once()

    def test_sql_failure_wrapped(self) -> None:
        session = Mock()
        session.execute.side_effect = RuntimeError("connection reset")
        store = PassStore(db_session=session)

        with pytest.raises(PassSystemError):
            store.insert_request(make_request())

        session.rollback.assert_called_once()


class TestReads:

    def test_get_returns_copy(self, store: PassStore) -> None:
        store.insert_request(make_request())

        fetched = store.get_request("req-1")
        fetched.status = "completed"

        assert store.get_request("req-1").status == "pending"

    def test_latest_request_for_student(self, store: PassStore) -> None:
        store.insert_request(make_request("old", status="completed", created_at=NOW - timedelta(days=2)))
        store.insert_request(make_request("new", created_at=NOW))

        assert store.latest_request_for_student("stu-1").id == "new"
        assert store.latest_request_for_student("nobody") is None

    def test_list_requests_filters_and_orders(self, store: PassStore) -> None:
        store.insert_request(make_request("a", student_id="s1", status="completed", created_at=NOW - timedelta(hours=2)))
        store.insert_request(make_request("b", student_id="s1", created_at=NOW))
        store.insert_request(make_request("c", student_id="s2", status="approved_stage1", created_at=NOW - timedelta(hours=1)))

        assert [r.id for r in store.list_requests()] == ["b", "c", "a"]
        assert [r.id for r in store.list_requests(student_id="s1")] == ["b", "a"]
        assert [r.id for r in store.list_requests(statuses=["pending", "approved_stage1"])] == ["b", "c"]

    def test_count_requests_since(self, store: PassStore) -> None:
        store.insert_request(make_request("a", status="completed", created_at=NOW - timedelta(days=40)))
        store.insert_request(make_request("b", status="completed", created_at=NOW - timedelta(days=1)))
        store.insert_request(make_request("c", created_at=NOW))

        assert store.count_requests_since("stu-1", NOW - timedelta(days=10)) == 2

    def test_cancellation_times_sorted(self, store: PassStore) -> None:
        for i, hours_ago in enumerate([1, 5, 3]):
            request = make_request(f"r{i}")
            store.insert_request(request)
            store.compare_and_set_status(
                request.id, "pending", "cancelled", NOW,
                fields={"cancelled_at": NOW - timedelta(hours=hours_ago)},
            )

        times = store.list_cancellation_times("stu-1", NOW - timedelta(hours=4))

        assert times == [NOW - timedelta(hours=3), NOW - timedelta(hours=1)]


class TestCompareAndSet:

    def test_matching_status_moves(self, store: PassStore) -> None:
        store.insert_request(make_request())

        affected = store.compare_and_set_status(
            "req-1", "pending", "approved_stage1", NOW, fields={"decided_by": "mentor-1"}
        )

        assert affected == 1
        request = store.get_request("req-1")
        assert request.status == "approved_stage1"
        assert request.decided_by == "mentor-1"

    def test_stale_expected_status_changes_nothing(self, store: PassStore) -> None:
        store.insert_request(make_request(status="approved_stage1"))

        assert store.compare_and_set_status("req-1", "pending", "rejected", NOW) == 0
        assert store.get_request("req-1").status == "approved_stage1"

    def test_unknown_field_refused(self, store: PassStore) -> None:
        store.insert_request(make_request())

        with pytest.raises(ValueError):
            store.compare_and_set_status("req-1", "pending", "approved_stage1", NOW, fields={"student_id": "x"})

    def test_sql_rowcount_passed_through(self) -> None:
        session = Mock()
        session.execute.return_value = Mock(rowcount=0)
        store = PassStore(db_session=session)

        affected = store.compare_and_set_status("req-1", "pending", "approved_stage1", NOW)

        assert affected == 0
        params = session.execute.call_args[0][1]
        assert params["expected_status"] == "pending"
        assert params["target_status"] == "approved_stage1"
        session.commit.assert_called_once()

    def test_update_fields_guarded(self, store: PassStore) -> None:
        store.insert_request(make_request(status="approved_stage2"))

        assert store.update_fields_guarded("req-1", ["pending", "approved_stage1"], {"forwarded_to": "x"}, NOW) == 0
        assert store.update_fields_guarded("req-1", ["approved_stage2"], {"forwarded_to": "x"}, NOW) == 1
        assert store.get_request("req-1").forwarded_to == "x"


class TestExpirySelection:

    def test_select_return_elapsed(self, store: PassStore) -> None:
        store.insert_request(make_request("due", student_id="s1", departure_in=timedelta(hours=-5)))
        store.insert_request(make_request("later", student_id="s2"))
        store.insert_request(make_request("out", student_id="s3", status="active", departure_in=timedelta(hours=-5)))

        selected = store.select_return_elapsed(["pending", "approved_final"], NOW)

        assert [r.id for r in selected] == ["due"]

    def test_select_unused_approved_ignores_exited_and_gate_free(self, store: PassStore) -> None:
        departed = timedelta(hours=-3)
        store.insert_request(make_request("unused", "s1", "approved_final", departure_in=departed))
        store.insert_request(make_request("no-scan", "s2", "approved_final", "no_scan", departure_in=departed))
        store.insert_request(make_request("exited", "s3", "approved_final", departure_in=departed))
        store.insert_gate_log(make_log("exited", "exit", NOW - timedelta(hours=2)))
        store.insert_request(make_request("upcoming", "s4", "approved_final"))
        store.insert_request(make_request("stage1", "s5", "approved_stage1", departure_in=timedelta(hours=-4)))
        store.insert_request(make_request("pending", "s6", "pending", departure_in=timedelta(hours=-5)))

        selected = store.select_unused_approved(
            ["approved_stage1", "approved_stage2", "approved_final"],
            NOW - timedelta(hours=2),
        )

        assert [r.id for r in selected] == ["stage1", "unused"]


class TestGateLogs:

    def test_logs_ordered_and_latest(self, store: PassStore) -> None:
        store.insert_gate_log(make_log("req-1", "entry", NOW + timedelta(hours=2)))
        store.insert_gate_log(make_log("req-1", "exit", NOW))

        logs = store.list_gate_logs("req-1")

        assert [log.action for log in logs] == ["exit", "entry"]
        assert store.latest_gate_log("req-1").action == "entry"
        assert store.latest_gate_log("req-2") is None

    def test_latest_gate_logs_batch(self, store: PassStore) -> None:
        store.insert_gate_log(make_log("a", "exit", NOW))
        store.insert_gate_log(make_log("b", "exit", NOW))
        store.insert_gate_log(make_log("b", "entry", NOW + timedelta(hours=1)))

        latest = store.latest_gate_logs(["a", "b", "c"])

        assert latest["a"].action == "exit"
        assert latest["b"].action == "entry"
        assert "c" not in latest
        assert store.latest_gate_logs([]) == {}

    def test_staff_actions_listed(self, store: PassStore) -> None:
        store.insert_staff_action(StaffAction(
            id="act-1", request_id="req-1", actor_id="mentor-1",
            action_type="stage1_approve", from_status="pending",
            to_status="approved_stage1", created_at=NOW,
        ))

        actions = store.list_staff_actions("req-1")

        assert len(actions) == 1
        assert actions[0].actor_id == "mentor-1"
