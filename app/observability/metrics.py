"""
============================================================================
Campus Gate Pass - Prometheus Metrics
============================================================================

Reliability Level: L5 High
Input Constraints: Label values must be short enum strings
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- gatepass_requests_created_total: Requests accepted at creation
- gatepass_transitions_total: Guarded transitions by target status
- gatepass_state_conflicts_total: Guarded updates that lost the race
- gatepass_eligibility_blocks_total: Creation/verify refusals by block code
- gatepass_trust_adjustments_total: Trust score changes by reason kind
- gatepass_gate_actions_total: Exit/entry events recorded at the gate
- gatepass_expiry_sweep_seconds: Duration of each expiry sweep
- gatepass_expired_requests_total: Requests closed by the expiry sweep
- gatepass_notification_failures_total: Notifications dropped after retries

Metric helpers never raise: a metrics failure is logged (OBS-001) and the
calling operation continues.

============================================================================
"""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

REQUESTS_CREATED = Counter(
    "gatepass_requests_created_total",
    "Total number of pass requests accepted at creation",
    ["student_category", "pass_category"]
)

TRANSITIONS = Counter(
    "gatepass_transitions_total",
    "Total number of guarded request transitions",
    ["from_status", "to_status"]
)

STATE_CONFLICTS = Counter(
    "gatepass_state_conflicts_total",
    "Guarded updates that affected zero rows",
    ["operation"]
)

ELIGIBILITY_BLOCKS = Counter(
    "gatepass_eligibility_blocks_total",
    "Requests refused by an eligibility block",
    ["block_code"]
)

TRUST_ADJUSTMENTS = Counter(
    "gatepass_trust_adjustments_total",
    "Trust score adjustments",
    ["kind"]
)

GATE_ACTIONS = Counter(
    "gatepass_gate_actions_total",
    "Exit and entry events recorded at the gate",
    ["action"]
)

EXPIRY_SWEEP_SECONDS = Histogram(
    "gatepass_expiry_sweep_seconds",
    "Duration of expiry sweeps in seconds",
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0]
)

EXPIRED_REQUESTS = Counter(
    "gatepass_expired_requests_total",
    "Requests force-closed by the expiry sweep",
    ["sweep", "to_status"]
)

NOTIFICATION_FAILURES = Counter(
    "gatepass_notification_failures_total",
    "Notifications dropped after exhausting retries",
    ["event_type"]
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_request_created(
    student_category: str,
    pass_category: str,
    correlation_id: Optional[str] = None
) -> None:
    """Record a request accepted at creation."""
    try:
        REQUESTS_CREATED.labels(
            student_category=student_category, pass_category=pass_category
        ).inc()
        logger.debug(
            "Metric: request_created | student_category=%s | pass_category=%s | "
            "correlation_id=%s",
            student_category, pass_category, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record request_created metric | error=%s",
            str(e)
        )


def record_transition(
    from_status: str,
    to_status: str,
    count: int = 1
) -> None:
    """Record guarded transitions (count > 1 for bulk moves)."""
    try:
        TRANSITIONS.labels(from_status=from_status, to_status=to_status).inc(count)
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record transition metric | error=%s",
            str(e)
        )


def record_state_conflict(operation: str) -> None:
    try:
        STATE_CONFLICTS.labels(operation=operation).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record state_conflict metric | error=%s",
            str(e)
        )


def record_eligibility_block(block_code: str) -> None:
    try:
        ELIGIBILITY_BLOCKS.labels(block_code=block_code).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record eligibility_block metric | error=%s",
            str(e)
        )


def record_trust_adjustment(kind: str) -> None:
    """
    Record a trust score change.

    Args:
        kind: "system" for rule-driven changes, "manual" for overrides
    """
    try:
        TRUST_ADJUSTMENTS.labels(kind=kind).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record trust_adjustment metric | error=%s",
            str(e)
        )


def record_gate_action(action: str) -> None:
    try:
        GATE_ACTIONS.labels(action=action).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record gate_action metric | error=%s",
            str(e)
        )


def record_expiry_sweep(
    duration_seconds: float,
    expired: int,
    unused_expired: int
) -> None:
    """
    Record one expiry sweep.

    Args:
        duration_seconds: Wall time of the sweep
        expired: Requests moved to expired because return time passed
        unused_expired: Gate-ready passes expired for never exiting
    """
    try:
        EXPIRY_SWEEP_SECONDS.observe(duration_seconds)
        if expired:
            EXPIRED_REQUESTS.labels(sweep="return_elapsed", to_status="expired").inc(expired)
        if unused_expired:
            EXPIRED_REQUESTS.labels(sweep="no_exit", to_status="expired").inc(unused_expired)
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record expiry_sweep metric | error=%s",
            str(e)
        )


def record_notification_failure(event_type: str) -> None:
    try:
        NOTIFICATION_FAILURES.labels(event_type=event_type).inc()
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record notification_failure metric | error=%s",
            str(e)
        )


__all__ = [
    "record_request_created",
    "record_transition",
    "record_state_conflict",
    "record_eligibility_block",
    "record_trust_adjustment",
    "record_gate_action",
    "record_expiry_sweep",
    "record_notification_failure",
]
