"""
============================================================================
Property-Based Tests for Pass Request State Transitions
============================================================================

Reliability Level: L6 Critical

Tests the request state machine and its guarded update using Hypothesis.
Minimum 100 iterations per property.

Properties tested:
- Property 1: Every edge in VALID_TRANSITIONS succeeds from its source
- Property 2: Every pair outside VALID_TRANSITIONS is rejected with GPS-030
  and leaves the stored status untouched
- Property 3: A caller holding a stale status loses with GPS-031
- Property 4: Random walks never move backwards along the happy path and
  end only in terminal states once no edges remain

Error Codes:
- GPS-030: Invalid state transition attempted
- GPS-031: Guarded update affected zero rows

============================================================================
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.pass_errors import StateConflictError
from services.pass_models import PassRequest
from services.pass_state_machine import (
    STATE_ORDER,
    TERMINAL_STATES,
    VALID_STATES,
    VALID_TRANSITIONS,
    is_terminal_state,
    transition_request,
    validate_transition,
)
from services.pass_store import PassStore


NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

valid_edge_strategy = st.sampled_from([
    (source, target)
    for source, targets in VALID_TRANSITIONS.items()
    for target in targets
])

invalid_edge_strategy = st.sampled_from([
    (source, target)
    for source in VALID_STATES
    for target in VALID_STATES
    if target not in VALID_TRANSITIONS[source]
])

walk_choices_strategy = st.lists(st.integers(min_value=0, max_value=10), min_size=1, max_size=8)


def store_with(status: str) -> Tuple[PassStore, str]:
    store = PassStore()
    request = store.insert_request(PassRequest(
        id="req-1",
        student_id="stu-1",
        pass_category="outing",
        reason="Errand",
        departure_at=NOW + timedelta(hours=1),
        return_at=NOW + timedelta(hours=4),
        status=status,
        gate_action="scan_both",
        correlation_id="corr-1",
        created_at=NOW,
        updated_at=NOW,
    ))
    return store, request.id


# =============================================================================
# PROPERTY 1 & 2: Edge table is enforced
# =============================================================================

class TestEdgeTable:

    @settings(max_examples=100)
    @given(edge=valid_edge_strategy)
    def test_valid_edge_succeeds(self, edge: Tuple[str, str]) -> None:
        source, target = edge
        store, request_id = store_with(source)

        updated = transition_request(store, request_id, source, target, "corr-1", now=NOW)

        assert updated.status == target
        assert validate_transition(source, target) == (True, None)

    @settings(max_examples=100)
    @given(edge=invalid_edge_strategy)
    def test_invalid_edge_rejected(self, edge: Tuple[str, str]) -> None:
        source, target = edge
        store, request_id = store_with(source)

        with pytest.raises(StateConflictError) as exc_info:
            transition_request(store, request_id, source, target, "corr-1", now=NOW)

        assert exc_info.value.error_code == "GPS-030"
        assert store.get_request(request_id).status == source

    @settings(max_examples=100)
    @given(state=st.sampled_from(TERMINAL_STATES))
    def test_terminal_states_have_no_exits(self, state: str) -> None:
        assert VALID_TRANSITIONS[state] == []
        assert is_terminal_state(state)


# =============================================================================
# PROPERTY 3: Stale callers lose the race
# =============================================================================

class TestGuardedUpdate:

    @settings(max_examples=100)
    @given(edge=valid_edge_strategy, stored=st.sampled_from(VALID_STATES))
    def test_stale_status_conflicts(self, edge: Tuple[str, str], stored: str) -> None:
        source, target = edge
        assume(stored != source)
        store, request_id = store_with(stored)

        with pytest.raises(StateConflictError) as exc_info:
            transition_request(store, request_id, source, target, "corr-1", now=NOW)

        assert exc_info.value.error_code == "GPS-031"
        assert exc_info.value.current_status == stored
        assert store.get_request(request_id).status == stored


# =============================================================================
# PROPERTY 4: Random walks are monotonic
# =============================================================================

class TestRandomWalk:

    @settings(max_examples=100)
    @given(choices=walk_choices_strategy)
    def test_walk_never_regresses(self, choices: List[int]) -> None:
        store, request_id = store_with("pending")
        status = "pending"

        for choice in choices:
            targets = VALID_TRANSITIONS[status]
            if not targets:
                break
            target = targets[choice % len(targets)]
            updated = transition_request(store, request_id, status, target, "corr-1", now=NOW)
            assert STATE_ORDER[target] >= STATE_ORDER[status]
            status = updated.status

        assert store.get_request(request_id).status == status
        if not VALID_TRANSITIONS[status]:
            assert is_terminal_state(status)
