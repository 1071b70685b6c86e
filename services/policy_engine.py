"""
============================================================================
Pass Policy Engine
============================================================================

Reliability Level: L6 Critical
Traceability: Every decision is logged with its correlation_id

The PolicyEngine decides whether a departure is permitted for a
(student category, pass category) pairing and which physical gate action
the pass will require.

EVALUATION ORDER:
    1. Look up the policy row; fall back to DefaultPolicyProvider when
       the table has no row; reject when neither knows the pairing
    2. Holiday = calendar exception OR weekly rest day (campus time zone)
       - holiday + block          -> reject
       - holiday + custom_window  -> reject unless inside the holiday window
       - holiday + unrestricted   -> no time check
    3. Not a holiday -> reject unless inside the working window (when set)
    4. Maximum duration exceeded -> reject
    5. Allow, returning the policy's gate action

Time windows are compared on local time-of-day and may wrap past midnight
(start later than end).

ERROR CODES:
    - VAL-002: Policy rejected the request (raised by callers)

============================================================================
"""

from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass
from datetime import datetime, time
import logging

from services.pass_config import GatePassConfig
from services.pass_models import (
    PassPolicy,
    StudentCategory,
    PassCategory,
    GateAction,
    HolidayBehavior,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class PolicyDecision:
    """
    Outcome of PolicyEngine.evaluate().

    source is "table" for configured rows, "default" for the built-in
    defaults and "none" when no policy covers the pairing.
    """
    allowed: bool
    reason: Optional[str]
    required_gate_action: Optional[str]
    source: str
    is_holiday: bool = False
    policy: Optional[PassPolicy] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "required_gate_action": self.required_gate_action,
            "source": self.source,
            "is_holiday": self.is_holiday,
        }


# =============================================================================
# Default Policy Provider
# =============================================================================

class DefaultPolicyProvider:
    """
    Built-in policies used when the policy table has no row for a pairing.

    Defaults carry no hour windows and no duration cap; they only classify
    the gate action. Once the table covers every pairing in use this
    provider can be removed without touching PolicyEngine.
    """

    DEFAULT_GATE_ACTIONS: Dict[Tuple[str, str], str] = {
        (StudentCategory.DAY_SCHOLAR.value, PassCategory.LEAVE.value): GateAction.NO_SCAN.value,
        (StudentCategory.DAY_SCHOLAR.value, PassCategory.ON_DUTY.value): GateAction.NO_SCAN.value,
        (StudentCategory.DAY_SCHOLAR.value, PassCategory.PERMISSION.value): GateAction.EXIT_ONLY.value,
        (StudentCategory.DAY_SCHOLAR.value, PassCategory.EMERGENCY.value): GateAction.SCAN_BOTH.value,
        (StudentCategory.RESIDENT.value, PassCategory.PERMISSION.value): GateAction.INTERNAL_ONLY.value,
        (StudentCategory.RESIDENT.value, PassCategory.LEAVE.value): GateAction.INTERNAL_ONLY.value,
        (StudentCategory.RESIDENT.value, PassCategory.ON_DUTY.value): GateAction.INTERNAL_ONLY.value,
        (StudentCategory.RESIDENT.value, PassCategory.OUTING.value): GateAction.SCAN_BOTH.value,
        (StudentCategory.RESIDENT.value, PassCategory.HOME_VISIT.value): GateAction.SCAN_BOTH.value,
        (StudentCategory.RESIDENT.value, PassCategory.PROJECT_WORK.value): GateAction.SCAN_BOTH.value,
        (StudentCategory.RESIDENT.value, PassCategory.EMERGENCY.value): GateAction.SCAN_BOTH.value,
        (StudentCategory.RESIDENT.value, PassCategory.VACATION.value): GateAction.SCAN_BOTH.value,
    }

    def get(self, student_category: str, pass_category: str) -> Optional[PassPolicy]:
        gate_action = self.DEFAULT_GATE_ACTIONS.get((student_category, pass_category))
        if gate_action is None:
            return None
        return PassPolicy(
            student_category=student_category,
            pass_category=pass_category,
            gate_action=gate_action,
            holiday_behavior=HolidayBehavior.UNRESTRICTED.value,
            source="default",
        )


# =============================================================================
# Helpers
# =============================================================================

def time_in_window(moment: time, start: Optional[time], end: Optional[time]) -> bool:
    """
    True if moment lies in [start, end]. A missing bound means unrestricted;
    start > end wraps past midnight.
    """
    if start is None or end is None:
        return True
    if start <= end:
        return start <= moment <= end
    return moment >= start or moment <= end


def _fmt(value: Optional[time]) -> str:
    return value.strftime("%H:%M") if value else "--:--"


# =============================================================================
# PolicyEngine Class
# =============================================================================

class PolicyEngine:
    """
    Time and holiday aware pass policy evaluation.

    Reliability Level: L6 Critical
    Input Constraints: departure must be timezone-aware
    Side Effects: Logs every rejection
    """

    def __init__(
        self,
        directory: Any,
        config: Optional[GatePassConfig] = None,
        default_provider: Optional[DefaultPolicyProvider] = None,
    ) -> None:
        self._directory = directory
        self._config = config or GatePassConfig()
        self._defaults = default_provider or DefaultPolicyProvider()

    def resolve_policy(self, student_category: str, pass_category: str) -> Optional[PassPolicy]:
        """Configured row first, then the built-in default, else None."""
        policy = self._directory.get_policy(student_category, pass_category)
        if policy is not None:
            return policy
        return self._defaults.get(student_category, pass_category)

    def is_holiday(self, departure: datetime) -> bool:
        local = departure.astimezone(self._config.tz)
        if local.weekday() in self._config.rest_days:
            return True
        return self._directory.is_holiday_date(local.date())

    def evaluate(
        self,
        student_category: str,
        pass_category: str,
        departure: datetime,
        duration_hours: Optional[float] = None,
        correlation_id: Optional[str] = None,
    ) -> PolicyDecision:
        """
        Decide whether the departure is allowed and which gate action applies.

        Args:
            student_category: StudentCategory value
            pass_category: PassCategory value
            departure: Scheduled departure (timezone-aware)
            duration_hours: Planned absence length, if known
            correlation_id: Audit trail identifier

        Returns:
            PolicyDecision (never raises for a policy rejection)
        """
        policy = self.resolve_policy(student_category, pass_category)
        if policy is None:
            return self._reject(
                f"Pass category '{pass_category}' is not available for {student_category}",
                None, "none", False, correlation_id,
            )

        local_time = departure.astimezone(self._config.tz).time().replace(tzinfo=None)
        holiday = self.is_holiday(departure)

        if holiday:
            if policy.holiday_behavior == HolidayBehavior.BLOCK.value:
                return self._reject(
                    f"{pass_category} passes are not issued on holidays",
                    policy, policy.source, True, correlation_id,
                )
            if policy.holiday_behavior == HolidayBehavior.CUSTOM_WINDOW.value:
                if policy.holiday_start is None or policy.holiday_end is None:
                    return self._reject(
                        f"No holiday window configured for {pass_category}",
                        policy, policy.source, True, correlation_id,
                    )
                if not time_in_window(local_time, policy.holiday_start, policy.holiday_end):
                    return self._reject(
                        f"Holiday departures allowed only between "
                        f"{_fmt(policy.holiday_start)} and {_fmt(policy.holiday_end)}",
                        policy, policy.source, True, correlation_id,
                    )
        elif not time_in_window(local_time, policy.working_start, policy.working_end):
            return self._reject(
                f"Departures allowed only between "
                f"{_fmt(policy.working_start)} and {_fmt(policy.working_end)}",
                policy, policy.source, False, correlation_id,
            )

        if (
            policy.max_duration_hours is not None
            and duration_hours is not None
            and duration_hours > policy.max_duration_hours
        ):
            return self._reject(
                f"Duration {duration_hours:.1f}h exceeds the "
                f"{policy.max_duration_hours}h limit for {pass_category}",
                policy, policy.source, holiday, correlation_id,
            )

        logger.debug(
            f"[POLICY-ENGINE] Departure allowed | "
            f"policy={policy.key} | "
            f"source={policy.source} | "
            f"gate_action={policy.gate_action} | "
            f"holiday={holiday} | "
            f"correlation_id={correlation_id}"
        )
        return PolicyDecision(
            allowed=True,
            reason=None,
            required_gate_action=policy.gate_action,
            source=policy.source,
            is_holiday=holiday,
            policy=policy,
        )

    def _reject(
        self,
        reason: str,
        policy: Optional[PassPolicy],
        source: str,
        holiday: bool,
        correlation_id: Optional[str],
    ) -> PolicyDecision:
        logger.info(
            f"[POLICY-ENGINE] Departure rejected | "
            f"reason={reason} | "
            f"source={source} | "
            f"correlation_id={correlation_id}"
        )
        return PolicyDecision(
            allowed=False,
            reason=reason,
            required_gate_action=policy.gate_action if policy else None,
            source=source,
            is_holiday=holiday,
            policy=policy,
        )


__all__ = [
    "PolicyDecision",
    "DefaultPolicyProvider",
    "PolicyEngine",
    "time_in_window",
]
