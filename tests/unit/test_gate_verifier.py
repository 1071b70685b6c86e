"""
============================================================================
Unit Tests - Gate Verifier
============================================================================

Tests checkpoint behaviour:
- Gate status for each gate action (no_scan, internal_only, exit_only,
  scan_both) and each point of the exit/entry cycle
- Departure buffers: early, late, emergency, and hard expiry of day
  scholar permission passes
- Lookup by verification token or register number
- Duplicate and out-of-order gate actions
- Live board grouping
============================================================================
"""

import os
import sys
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import NOW, approve_to_final, submit
from services.gatepass_services import GatePassServices
from services.pass_errors import NotFoundError, StateConflictError, ValidationError
from services.pass_models import PassRequest


DEPARTURE = NOW + timedelta(hours=1)
RETURN = DEPARTURE + timedelta(hours=5)


def resident_pass(services: GatePassServices, pass_category: str = "outing") -> PassRequest:
    return approve_to_final(services, submit(services, "res-1", pass_category))


def day_scholar_pass(services: GatePassServices, pass_category: str = "permission") -> PassRequest:
    return approve_to_final(services, submit(services, "ds-1", pass_category))


class TestEvaluate:

    def test_not_ready_before_final_approval(self, services: GatePassServices) -> None:
        request = submit(services)

        evaluation = services.gate.evaluate(request, None, NOW, "resident")

        assert evaluation.status == "not_ready"
        assert evaluation.allowed_actions == []

    def test_no_scan_pass(self, services: GatePassServices) -> None:
        request = day_scholar_pass(services, "leave")

        evaluation = services.gate.evaluate(request, None, NOW, "day_scholar")

        assert evaluation.status == "gate_not_required"
        assert evaluation.allowed_actions == []

    def test_internal_only_pass(self, services: GatePassServices) -> None:
        request = resident_pass(services, "permission")

        evaluation = services.gate.evaluate(request, None, NOW, "resident")

        assert evaluation.status == "internal_only"
        assert evaluation.allowed_actions == []

    def test_ready_window(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        evaluation = services.gate.evaluate(request, None, NOW, "resident")

        assert evaluation.status == "ready"
        assert evaluation.allowed_actions == ["exit"]
        assert evaluation.warning is None

    def test_too_early_still_allows_exit(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        evaluation = services.gate.evaluate(request, None, DEPARTURE - timedelta(hours=2, minutes=1), "resident")

        assert evaluation.status == "too_early"
        assert evaluation.allowed_actions == ["exit"]
        assert evaluation.warning

    def test_late_departure_warns(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        evaluation = services.gate.evaluate(request, None, DEPARTURE + timedelta(minutes=31), "resident")

        assert evaluation.status == "late_departure"
        assert evaluation.allowed_actions == ["exit"]

    def test_emergency_buffer(self, services: GatePassServices) -> None:
        request = resident_pass(services, "emergency")

        evaluation = services.gate.evaluate(request, None, DEPARTURE + timedelta(hours=3), "resident")

        assert evaluation.status == "ready"

    def test_day_scholar_permission_hard_expires(self, services: GatePassServices) -> None:
        request = day_scholar_pass(services)

        evaluation = services.gate.evaluate(request, None, DEPARTURE + timedelta(minutes=31), "day_scholar")

        assert evaluation.status == "expired"
        assert evaluation.hard_expired
        assert evaluation.allowed_actions == []

    def test_out_then_overdue(self, services: GatePassServices) -> None:
        request = resident_pass(services)
        request.status = "active"

        out = services.gate.evaluate(request, "exit", RETURN, "resident")
        overdue = services.gate.evaluate(request, "exit", RETURN + timedelta(minutes=45), "resident")

        assert out.status == "out"
        assert out.allowed_actions == ["entry"]
        assert overdue.status == "overdue"
        assert overdue.overdue_minutes == 45
        assert overdue.allowed_actions == ["entry"]

    def test_used_after_entry(self, services: GatePassServices) -> None:
        request = resident_pass(services)
        request.status = "completed"

        assert services.gate.evaluate(request, "entry", NOW, "resident").status == "used"

    def test_expired_status(self, services: GatePassServices) -> None:
        request = resident_pass(services)
        request.status = "expired"

        assert services.gate.evaluate(request, None, NOW, "resident").status == "expired"


class TestVerify:

    def test_lookup_by_token(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        check = services.gate.verify(request.verification_token.upper(), now=NOW)

        assert check.request.id == request.id
        assert check.student.student_id == "res-1"
        assert check.evaluation.status == "ready"
        assert "verification_token" not in check.to_dict()["request"]

    def test_lookup_by_register_number(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        check = services.gate.verify("21CS002", now=NOW)

        assert check.request.id == request.id

    def test_register_with_pending_request(self, services: GatePassServices) -> None:
        submit(services)

        check = services.gate.verify("21CS002", now=NOW)

        assert check.evaluation.status == "not_ready"

    def test_unknown_token(self, services: GatePassServices) -> None:
        resident_pass(services)

        with pytest.raises(NotFoundError) as exc_info:
            services.gate.verify("f" * 64, now=NOW)

        assert exc_info.value.error_code == "NF-001"

    def test_unknown_register(self, services: GatePassServices) -> None:
        with pytest.raises(NotFoundError):
            services.gate.verify("99XX999", now=NOW)

    def test_empty_identifier(self, services: GatePassServices) -> None:
        with pytest.raises(ValidationError):
            services.gate.verify("  ", now=NOW)

    def test_hard_expiry_transitions_request(self, services: GatePassServices, recorder) -> None:
        request = day_scholar_pass(services)

        check = services.gate.verify(request.verification_token, now=DEPARTURE + timedelta(hours=1))

        assert check.evaluation.status == "expired"
        assert check.request.status == "expired"
        assert services.lifecycle.get(request.id).status == "expired"
        assert recorder.of_type("pass.expired")[0].recipients == ["ds-1"]


class TestLogAction:

    def test_full_cycle(self, services: GatePassServices, recorder) -> None:
        request = resident_pass(services)

        exit_result = services.gate.log_action(request.id, "exit", "gate-1", now=NOW, comments="bag checked")
        assert exit_result.request.status == "active"
        assert exit_result.evaluation.status == "out"
        assert exit_result.log.comments == "bag checked"

        entry_result = services.gate.log_action(request.id, "entry", "gate-1", now=RETURN)
        assert entry_result.request.status == "completed"
        assert entry_result.evaluation.status == "used"

        logs = services.pass_store.list_gate_logs(request.id)
        assert [log.action for log in logs] == ["exit", "entry"]
        events = recorder.of_type("pass.gate_logged")
        assert [e.payload["action"] for e in events] == ["exit", "entry"]
        assert events[0].recipients == ["res-1"]

    def test_duplicate_exit(self, services: GatePassServices) -> None:
        request = resident_pass(services)
        services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

        with pytest.raises(StateConflictError) as exc_info:
            services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

        assert exc_info.value.error_code == "GPS-032"
        assert len(services.pass_store.list_gate_logs(request.id)) == 1

    def test_entry_before_exit(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        with pytest.raises(StateConflictError) as exc_info:
            services.gate.log_action(request.id, "entry", "gate-1", now=NOW)

        assert exc_info.value.error_code == "GPS-030"
        assert services.pass_store.list_gate_logs(request.id) == []

    def test_exit_only_completes_on_exit(self, services: GatePassServices) -> None:
        request = day_scholar_pass(services)

        result = services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

        assert result.request.status == "completed"
        assert result.evaluation.status == "completed"
        with pytest.raises(StateConflictError) as exc_info:
            services.gate.log_action(request.id, "exit", "gate-1", now=NOW)
        assert exc_info.value.error_code == "GPS-032"

    def test_late_day_scholar_permission_exit_expires_pass(self, services: GatePassServices, recorder) -> None:
        request = day_scholar_pass(services)

        with pytest.raises(StateConflictError) as exc_info:
            services.gate.log_action(request.id, "exit", "gate-1", now=DEPARTURE + timedelta(hours=1))

        assert exc_info.value.error_code == "GPS-030"
        assert services.lifecycle.get(request.id).status == "expired"
        assert services.pass_store.list_gate_logs(request.id) == []
        assert recorder.of_type("pass.expired")[0].recipients == ["ds-1"]

    def test_pending_pass_refused(self, services: GatePassServices) -> None:
        request = submit(services)

        with pytest.raises(StateConflictError):
            services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

    def test_no_scan_pass_refused(self, services: GatePassServices) -> None:
        request = day_scholar_pass(services, "leave")

        with pytest.raises(StateConflictError):
            services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

    def test_unknown_action(self, services: GatePassServices) -> None:
        request = resident_pass(services)

        with pytest.raises(ValidationError):
            services.gate.log_action(request.id, "wave", "gate-1", now=NOW)

    def test_unknown_request(self, services: GatePassServices) -> None:
        with pytest.raises(NotFoundError):
            services.gate.log_action("missing", "exit", "gate-1", now=NOW)


class TestLiveBoard:

    def test_grouping(self, services: GatePassServices) -> None:
        ready = resident_pass(services)
        no_scan = day_scholar_pass(services, "leave")

        board = services.gate.live_board(now=NOW)

        assert [item["request"]["id"] for item in board["ready"]] == [ready.id]
        assert board["out"] == []
        assert no_scan.id not in [item["request"]["id"] for column in board.values() for item in column]

    def test_out_and_overdue(self, services: GatePassServices) -> None:
        request = resident_pass(services)
        services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

        assert [i["request"]["id"] for i in services.gate.live_board(now=NOW)["out"]] == [request.id]

        board = services.gate.live_board(now=RETURN + timedelta(minutes=10))
        assert board["overdue"][0]["evaluation"]["overdue_minutes"] == 10
