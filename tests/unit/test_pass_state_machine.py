"""
============================================================================
Unit Tests - Pass State Machine
============================================================================

Tests the transition table and the guarded transition helpers:
- Every documented edge and the terminal states
- GPS-030 for illegal edges, GPS-031 when the guarded update loses
- bulk_transition skipping rows that moved on
============================================================================
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.pass_errors import StateConflictError
from services.pass_models import PassRequest, PassStatus
from services.pass_state_machine import (
    VALID_TRANSITIONS,
    TERMINAL_STATES,
    validate_transition,
    transition_request,
    bulk_transition,
    get_valid_transitions,
    is_terminal_state,
    is_valid_state,
    is_forward_transition,
)
from services.pass_store import PassStore


NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


def make_request(request_id: str = "req-1", status: str = "pending", student_id: str = "stu-1") -> PassRequest:
    return PassRequest(
        id=request_id,
        student_id=student_id,
        pass_category="outing",
        reason="Errand",
        departure_at=NOW + timedelta(hours=1),
        return_at=NOW + timedelta(hours=4),
        status=status,
        gate_action="scan_both",
        correlation_id="corr-1",
        created_at=NOW,
        updated_at=NOW,
    )


class TestTransitionTable:

    def test_happy_path_edges(self) -> None:
        assert "approved_stage1" in VALID_TRANSITIONS["pending"]
        assert "approved_stage2" in VALID_TRANSITIONS["approved_stage1"]
        assert "approved_final" in VALID_TRANSITIONS["approved_stage2"]
        assert "active" in VALID_TRANSITIONS["approved_final"]
        assert "completed" in VALID_TRANSITIONS["active"]

    def test_day_scholar_skips_stage2(self) -> None:
        assert "approved_final" in VALID_TRANSITIONS["approved_stage1"]

    def test_exit_only_completes_from_final(self) -> None:
        assert "completed" in VALID_TRANSITIONS["approved_final"]

    def test_active_cannot_be_cancelled(self) -> None:
        assert "cancelled" not in VALID_TRANSITIONS["active"]

    def test_terminal_states_have_no_edges(self) -> None:
        for state in TERMINAL_STATES:
            assert get_valid_transitions(state) == []
            assert is_terminal_state(state)

    def test_every_status_is_a_state(self) -> None:
        for status in PassStatus:
            assert is_valid_state(status.value)
        assert not is_valid_state("overdue")

    def test_no_backward_edges(self) -> None:
        for current, targets in VALID_TRANSITIONS.items():
            for target in targets:
                assert is_forward_transition(current, target), f"{current} -> {target}"


class TestValidateTransition:

    def test_valid_edge(self) -> None:
        assert validate_transition("pending", "approved_stage1") == (True, None)

    def test_illegal_edge(self) -> None:
        assert validate_transition("pending", "active") == (False, "GPS-030")

    def test_unknown_states(self) -> None:
        assert validate_transition("draft", "pending") == (False, "GPS-030")
        assert validate_transition("pending", "overdue") == (False, "GPS-030")


class TestTransitionRequest:

    def test_moves_and_writes_fields(self) -> None:
        store = PassStore()
        store.insert_request(make_request())

        updated = transition_request(
            store, "req-1", "pending", "approved_stage1", "corr-1",
            fields={"decided_by": "mentor-1"}, now=NOW,
        )

        assert updated.status == "approved_stage1"
        assert updated.decided_by == "mentor-1"
        assert updated.updated_at == NOW

    def test_illegal_edge_raises_without_touching_store(self) -> None:
        store = Mock()

        with pytest.raises(StateConflictError) as exc_info:
            transition_request(store, "req-1", "pending", "completed", "corr-1")

        assert exc_info.value.error_code == "GPS-030"
        store.compare_and_set_status.assert_not_called()

    def test_lost_race_reports_current_status(self) -> None:
        store = PassStore()
        store.insert_request(make_request(status="cancelled"))

        with pytest.raises(StateConflictError) as exc_info:
            transition_request(store, "req-1", "pending", "approved_stage1", "corr-1")

        assert exc_info.value.error_code == "GPS-031"
        assert exc_info.value.current_status == "cancelled"

    def test_zero_rows_from_sql_store(self) -> None:
        store = Mock()
        store.compare_and_set_status.return_value = 0
        store.get_request.return_value = make_request(status="rejected")

        with pytest.raises(StateConflictError) as exc_info:
            transition_request(store, "req-1", "pending", "approved_stage1", "corr-1")

        assert exc_info.value.current_status == "rejected"


class TestBulkTransition:

    def test_skips_rows_that_moved(self) -> None:
        store = PassStore()
        store.insert_request(make_request("a", "approved_final", "stu-a"))
        store.insert_request(make_request("b", "active", "stu-b"))

        moved = bulk_transition(store, ["a", "b"], "approved_final", "expired", "sweep-1", now=NOW)

        assert moved == ["a"]
        assert store.get_request("a").status == "expired"
        assert store.get_request("b").status == "active"

    def test_empty_selection(self) -> None:
        assert bulk_transition(PassStore(), [], "pending", "expired", "sweep-1") == []

    def test_illegal_bulk_edge(self) -> None:
        with pytest.raises(StateConflictError):
            bulk_transition(PassStore(), ["a"], "active", "cancelled", "sweep-1")
