"""
============================================================================
Campus Gate Pass - Observability Module
============================================================================

Reliability Level: L5 High
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    REQUESTS_CREATED,
    TRANSITIONS,
    STATE_CONFLICTS,
    ELIGIBILITY_BLOCKS,
    TRUST_ADJUSTMENTS,
    GATE_ACTIONS,
    EXPIRY_SWEEP_SECONDS,
    EXPIRED_REQUESTS,
    NOTIFICATION_FAILURES,
    record_request_created,
    record_transition,
    record_state_conflict,
    record_eligibility_block,
    record_trust_adjustment,
    record_gate_action,
    record_expiry_sweep,
    record_notification_failure,
)

__all__ = [
    "REQUESTS_CREATED",
    "TRANSITIONS",
    "STATE_CONFLICTS",
    "ELIGIBILITY_BLOCKS",
    "TRUST_ADJUSTMENTS",
    "GATE_ACTIONS",
    "EXPIRY_SWEEP_SECONDS",
    "EXPIRED_REQUESTS",
    "NOTIFICATION_FAILURES",
    "record_request_created",
    "record_transition",
    "record_state_conflict",
    "record_eligibility_block",
    "record_trust_adjustment",
    "record_gate_action",
    "record_expiry_sweep",
    "record_notification_failure",
]
