"""
============================================================================
Gate Pass Request State Machine
============================================================================

Reliability Level: L6 Critical
Traceability: All operations include correlation_id for audit

GATE PASS LIFECYCLE:
    Every request follows a strict state machine. Approval stages are
    sequential and every mutation goes through transition_request(), which
    validates the edge and then applies a guarded compare-and-swap update:

    pending → approved_stage1 (mentor or escalated approver)
    approved_stage1 → approved_stage2 (department head, resident requester)
    approved_stage1 → approved_final (department head, day scholar)
    approved_stage2 → approved_final (hostel authority)
    approved_final → active (exit scanned at the gate)
    approved_final → completed (single exit scan on exit-only passes)
    active → completed (entry scanned at the gate)

    rejected, cancelled and expired are reachable from every non-terminal
    state, except that an active pass cannot be cancelled.

    Terminal States: completed, rejected, cancelled, expired

ERROR CODES:
    - GPS-030: Invalid state transition attempted
    - GPS-031: Guarded update affected zero rows (stale expected state)

============================================================================
"""

from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timezone
import logging

from services.pass_errors import PassErrorCode, StateConflictError
from services.pass_models import PassRequest

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# VALID_TRANSITIONS Constant
# =============================================================================

VALID_TRANSITIONS: Dict[str, List[str]] = {
    "pending": ["approved_stage1", "rejected", "cancelled", "expired"],
    "approved_stage1": [
        "approved_stage2", "approved_final", "rejected", "cancelled", "expired",
    ],
    "approved_stage2": ["approved_final", "rejected", "cancelled", "expired"],
    "approved_final": ["active", "completed", "rejected", "cancelled", "expired"],
    "active": ["completed", "rejected", "expired"],
    "completed": [],  # Terminal state
    "rejected": [],  # Terminal state
    "cancelled": [],  # Terminal state
    "expired": [],  # Terminal state
}

# Terminal states (no outbound transitions)
TERMINAL_STATES: List[str] = ["completed", "rejected", "cancelled", "expired"]

# All valid states
VALID_STATES: List[str] = list(VALID_TRANSITIONS.keys())

# Position along the happy path, used to check monotonic progress
STATE_ORDER: Dict[str, int] = {
    "pending": 0,
    "approved_stage1": 1,
    "approved_stage2": 2,
    "approved_final": 3,
    "active": 4,
    "completed": 5,
    "rejected": 5,
    "cancelled": 5,
    "expired": 5,
}


# =============================================================================
# validate_transition() Function
# =============================================================================

def validate_transition(
    current_state: str,
    target_state: str,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate if a state transition is allowed.

    Args:
        current_state: Current stored status
        target_state: Status to move to
        correlation_id: Optional correlation ID for audit logging

    Returns:
        (True, None) if the edge exists, (False, "GPS-030") otherwise

    Side Effects: Logs GPS-030 on invalid transitions
    """
    if current_state not in VALID_STATES:
        logger.error(
            f"[{PassErrorCode.INVALID_TRANSITION}] "
            f"Invalid current state: {current_state}. "
            f"Valid states: {VALID_STATES}. "
            f"correlation_id={correlation_id}"
        )
        return (False, PassErrorCode.INVALID_TRANSITION)

    if target_state not in VALID_STATES:
        logger.error(
            f"[{PassErrorCode.INVALID_TRANSITION}] "
            f"Invalid target state: {target_state}. "
            f"Valid states: {VALID_STATES}. "
            f"correlation_id={correlation_id}"
        )
        return (False, PassErrorCode.INVALID_TRANSITION)

    valid_targets = VALID_TRANSITIONS.get(current_state, [])

    if target_state not in valid_targets:
        valid_str = "/".join(valid_targets) if valid_targets else "NONE (terminal state)"
        logger.error(
            f"[{PassErrorCode.INVALID_TRANSITION}] "
            f"Invalid state transition: {current_state} -> {target_state}. "
            f"Valid transitions from {current_state}: {valid_str}. "
            f"correlation_id={correlation_id}"
        )
        return (False, PassErrorCode.INVALID_TRANSITION)

    logger.debug(
        f"[PASS-STATE] Transition validated: {current_state} -> {target_state} | "
        f"correlation_id={correlation_id}"
    )
    return (True, None)


# =============================================================================
# transition_request() Function
# =============================================================================

def transition_request(
    store: Any,
    request_id: str,
    current_state: str,
    target_state: str,
    correlation_id: str,
    fields: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PassRequest:
    """
    Move a request from current_state to target_state.

    ============================================================================
    TRANSITION PROCEDURE:
    ============================================================================
    1. Validate the edge with validate_transition()
    2. Issue UPDATE ... SET status = target WHERE id = ? AND status = current
       (plus any extra fields such as the verification token)
    3. Zero affected rows means another actor moved the request first:
       re-read it and raise StateConflictError with the current status
    4. Return the updated request
    ============================================================================

    Args:
        store: PassStore used for the guarded update
        request_id: Request to move
        current_state: Status the caller observed
        target_state: Status to move to
        correlation_id: Audit trail identifier (REQUIRED)
        fields: Extra columns written in the same update
        actor_id: Actor performing the transition (for the log line)
        reason: Reason for the transition (for the log line)
        now: Timestamp written to updated_at

    Returns:
        The updated PassRequest

    Raises:
        StateConflictError: GPS-030 on an illegal edge, GPS-031 on a lost race
    """
    is_valid, error_code = validate_transition(
        current_state=current_state,
        target_state=target_state,
        correlation_id=correlation_id
    )

    if not is_valid:
        raise StateConflictError(
            f"Transition {current_state} -> {target_state} is not allowed",
            error_code=error_code,
            correlation_id=correlation_id,
            current_status=current_state,
        )

    now = now or datetime.now(timezone.utc)
    affected = store.compare_and_set_status(
        request_id=request_id,
        expected_status=current_state,
        target_status=target_state,
        fields=fields,
        now=now,
    )

    if affected == 0:
        latest = store.get_request(request_id)
        latest_status = latest.status if latest else None
        logger.warning(
            f"[{PassErrorCode.STATE_CONFLICT}] Guarded update affected zero rows | "
            f"request_id={request_id} | "
            f"expected={current_state} | "
            f"actual={latest_status} | "
            f"correlation_id={correlation_id}"
        )
        raise StateConflictError(
            "Request is no longer in the expected state, re-fetch and retry",
            correlation_id=correlation_id,
            current_status=latest_status,
        )

    logger.info(
        f"[PASS-STATE] State transition completed | "
        f"request_id={request_id} | "
        f"{current_state} -> {target_state} | "
        f"actor={actor_id or 'system'} | "
        f"reason={reason} | "
        f"correlation_id={correlation_id}"
    )

    return store.get_request(request_id)


def bulk_transition(
    store: Any,
    request_ids: List[str],
    current_state: str,
    target_state: str,
    correlation_id: str,
    now: Optional[datetime] = None,
) -> List[str]:
    """
    Guarded bulk move used by the expiry scheduler.

    Rows that changed state since selection are skipped by the predicate.

    Returns:
        Identifiers of the requests actually transitioned
    """
    is_valid, error_code = validate_transition(current_state, target_state, correlation_id)
    if not is_valid:
        raise StateConflictError(
            f"Transition {current_state} -> {target_state} is not allowed",
            error_code=error_code,
            correlation_id=correlation_id,
            current_status=current_state,
        )

    if not request_ids:
        return []

    moved = store.bulk_compare_and_set_status(
        request_ids=request_ids,
        expected_status=current_state,
        target_status=target_state,
        now=now or datetime.now(timezone.utc),
    )

    logger.info(
        f"[PASS-STATE] Bulk transition completed | "
        f"{current_state} -> {target_state} | "
        f"selected={len(request_ids)} | "
        f"moved={len(moved)} | "
        f"correlation_id={correlation_id}"
    )
    return moved


# =============================================================================
# Utility Functions
# =============================================================================

def get_valid_transitions(state: str) -> List[str]:
    """Valid target states from a given state (empty for terminal states)."""
    return VALID_TRANSITIONS.get(state, [])


def is_terminal_state(state: str) -> bool:
    return state in TERMINAL_STATES


def is_valid_state(state: str) -> bool:
    return state in VALID_STATES


def is_forward_transition(current_state: str, target_state: str) -> bool:
    """True if target_state is never earlier on the happy path than current_state."""
    return STATE_ORDER[target_state] > STATE_ORDER[current_state]


__all__ = [
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "VALID_STATES",
    "STATE_ORDER",
    "validate_transition",
    "transition_request",
    "bulk_transition",
    "get_valid_transitions",
    "is_terminal_state",
    "is_valid_state",
    "is_forward_transition",
]


# =============================================================================
# Module Audit
# =============================================================================
#
# Module: services/pass_state_machine.py
# Python 3.8 Compatibility: [Verified - typing.Optional, typing.List, typing.Dict, typing.Tuple used]
# Error Codes: [GPS-030, GPS-031 documented]
# Traceability: [correlation_id present in all operations]
#
# =============================================================================
