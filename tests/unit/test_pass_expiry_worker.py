"""
============================================================================
Unit Tests - Pass Expiry Worker
============================================================================

Tests the periodic expiry sweeps:
- Pre-exit requests whose return time passed are expired
- Gate-free final passes past their return time are expired too
- Approved passes at any stage never scanned out after the no-exit
  buffer are expired
- Requests already out are never touched
- Backoff after failures, start/stop lifecycle, singleton factory
============================================================================
"""

import asyncio
import os
import sys
from datetime import timedelta
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from conftest import NOW, approve_to_final, make_config, submit
from services.gatepass_services import GatePassServices
from services.pass_expiry_worker import (
    MAX_BACKOFF_MULTIPLIER,
    PassExpiryWorker,
    get_pass_expiry_worker,
    reset_pass_expiry_worker,
)
from services.pass_store import PassStore
from services.request_lifecycle import ReviewDecision


DEPARTURE = NOW + timedelta(hours=1)
RETURN = DEPARTURE + timedelta(hours=5)


class TestProcessExpired:

    def test_pending_past_return_expired(self, services: GatePassServices, recorder) -> None:
        request = submit(services)

        result = services.expiry_worker.process_expired(now=RETURN + timedelta(minutes=1))

        assert result.expired == [request.id]
        assert services.lifecycle.get(request.id).status == "expired"
        assert recorder.of_type("pass.expired")[0].recipients == ["res-1"]

    def test_nothing_due(self, services: GatePassServices) -> None:
        submit(services)

        result = services.expiry_worker.process_expired(now=NOW)

        assert result.total == 0

    def test_gate_free_final_pass_expired_and_notified(self, services: GatePassServices, recorder) -> None:
        request = approve_to_final(services, submit(services, "ds-1", "leave"))
        assert request.gate_action == "no_scan"

        result = services.expiry_worker.process_expired(now=RETURN + timedelta(minutes=1))

        assert result.expired == [request.id]
        assert services.lifecycle.get(request.id).status == "expired"
        assert [e.recipients for e in recorder.of_type("pass.expired")] == [["ds-1"]]

    def test_stage1_pass_never_scanned_out_expired(self, services: GatePassServices, recorder) -> None:
        request = submit(services)
        services.lifecycle.review(request.id, "mentor-1", ReviewDecision.APPROVE, now=NOW)

        result = services.expiry_worker.process_expired(now=DEPARTURE + timedelta(hours=3))

        assert result.expired == []
        assert result.unused_expired == [request.id]
        assert services.lifecycle.get(request.id).status == "expired"
        assert [e.recipients for e in recorder.of_type("pass.expired")] == [["res-1"]]

    def test_pending_pass_left_for_return_sweep(self, services: GatePassServices) -> None:
        request = submit(services)

        result = services.expiry_worker.process_expired(now=DEPARTURE + timedelta(hours=3))

        assert result.total == 0
        assert services.lifecycle.get(request.id).status == "pending"

    def test_unused_final_expired_after_buffer(self, services: GatePassServices) -> None:
        request = approve_to_final(services, submit(services))

        early = services.expiry_worker.process_expired(now=DEPARTURE + timedelta(hours=1))
        late = services.expiry_worker.process_expired(now=DEPARTURE + timedelta(hours=2, minutes=1))

        assert early.total == 0
        assert late.unused_expired == [request.id]
        assert services.lifecycle.get(request.id).status == "expired"

    def test_active_pass_untouched(self, services: GatePassServices) -> None:
        request = approve_to_final(services, submit(services))
        services.gate.log_action(request.id, "exit", "gate-1", now=NOW)

        result = services.expiry_worker.process_expired(now=RETURN + timedelta(days=1))

        assert result.total == 0
        assert services.lifecycle.get(request.id).status == "active"

    def test_second_sweep_is_idempotent(self, services: GatePassServices) -> None:
        submit(services)
        later = RETURN + timedelta(minutes=1)

        services.expiry_worker.process_expired(now=later)
        second = services.expiry_worker.process_expired(now=later)

        assert second.total == 0

    def test_works_without_event_bus(self) -> None:
        worker = PassExpiryWorker(PassStore(), config=make_config())

        assert worker.process_expired(now=NOW).total == 0


class TestScheduling:

    def test_delay_without_failures(self) -> None:
        worker = PassExpiryWorker(PassStore(), config=make_config(expiry_interval_seconds=60, expiry_jitter_seconds=5))

        assert 60 <= worker.next_delay() <= 65

    def test_backoff_is_capped(self) -> None:
        worker = PassExpiryWorker(PassStore(), config=make_config(expiry_interval_seconds=60, expiry_jitter_seconds=0))
        worker._consecutive_failures = 10

        assert worker.next_delay() == 60 * MAX_BACKOFF_MULTIPLIER

    def test_failure_counted_and_loop_survives(self) -> None:
        store = Mock()
        store.select_return_elapsed.side_effect = RuntimeError("database unavailable")
        worker = PassExpiryWorker(store, config=make_config(expiry_interval_seconds=3600))

        async def run() -> None:
            await worker.start()
            for _ in range(50):
                if worker.consecutive_failures:
                    break
                await asyncio.sleep(0.01)
            assert worker.is_running
            await worker.stop()

        asyncio.run(run())

        assert worker.consecutive_failures == 1
        assert not worker.is_running

    def test_start_twice_is_ignored(self) -> None:
        worker = PassExpiryWorker(PassStore(), config=make_config(expiry_interval_seconds=3600))

        async def run() -> None:
            await worker.start()
            task = worker._task
            await worker.start()
            assert worker._task is task
            await worker.stop()

        asyncio.run(run())

    def test_stop_when_idle(self) -> None:
        worker = PassExpiryWorker(PassStore(), config=make_config())

        asyncio.run(worker.stop())

        assert not worker.is_running


class TestFactory:

    @pytest.fixture(autouse=True)
    def reset(self):
        reset_pass_expiry_worker()
        yield
        reset_pass_expiry_worker()

    def test_store_required_on_first_call(self) -> None:
        with pytest.raises(ValueError):
            get_pass_expiry_worker()

    def test_singleton(self) -> None:
        worker = get_pass_expiry_worker(PassStore(), config=make_config())

        assert get_pass_expiry_worker() is worker
