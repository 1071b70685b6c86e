"""
============================================================================
Trust Ledger - Bounded Student Reputation and Cooldown
============================================================================

Reliability Level: L6 Critical
Traceability: Every adjustment appends a hashed TrustAdjustment row

The TrustLedger maintains each student's trust score (0..100) with an
append-only history:
- adjust(): apply a signed delta, clamped to the bounds
- set_score(): manual override by a department head
- apply_monthly_excess(): penalty for the Nth-or-later request in a
  calendar month (campus time zone)
- apply_cancellation_penalty(): late cancellation fee

COOLDOWN RULE (not a score adjustment):
    Cancellations at or after the student's override timestamp are
    scanned in order. Whenever `limit` consecutive cancellations fit
    inside one window, the cancellation completing them is a trigger.
    Creation is blocked until `window` has elapsed since the most recent
    trigger, or until an authority moves the override timestamp to now.

ERROR CODES:
    - VAL-001: Manual score outside 0..100
    - NF-002: Unknown student

============================================================================
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from app.observability.metrics import record_trust_adjustment
from services.pass_config import GatePassConfig
from services.pass_errors import PassErrorCode, ValidationError, NotFoundError
from services.pass_event_bus import PassEventType
from services.pass_models import PassStatus, TrustAdjustment, SYSTEM_ACTOR

# Configure module logger
logger = logging.getLogger(__name__)


TRUST_FLOOR = 0
TRUST_CEILING = 100


def clamp_score(value: int) -> int:
    return max(TRUST_FLOOR, min(TRUST_CEILING, value))


@dataclass
class CooldownStatus:
    """Snapshot of the cooldown rule for one student."""
    active: bool
    cancellations_in_window: int
    blocked_until: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "cancellations_in_window": self.cancellations_in_window,
            "blocked_until": self.blocked_until.isoformat() if self.blocked_until else None,
        }


def find_cooldown_trigger(
    cancellations: List[datetime],
    limit: int,
    window: timedelta,
) -> Optional[datetime]:
    """
    Latest cancellation that completed `limit` cancellations within `window`.

    Args:
        cancellations: Cancellation timestamps, oldest first
    """
    trigger = None
    for i in range(limit - 1, len(cancellations)):
        if cancellations[i] - cancellations[i - limit + 1] <= window:
            trigger = cancellations[i]
    return trigger


class TrustLedger:
    """
    Trust score adjustments and the cancellation cooldown rule.

    Reliability Level: L6 Critical
    Side Effects: Writes trust history, publishes trust.adjusted events
    """

    def __init__(
        self,
        directory: Any,
        pass_store: Any,
        event_bus: Optional[Any] = None,
        config: Optional[GatePassConfig] = None,
    ) -> None:
        self._directory = directory
        self._store = pass_store
        self._event_bus = event_bus
        self._config = config or GatePassConfig()

    # =========================================================================
    # Score adjustments
    # =========================================================================

    def adjust(
        self,
        student_id: str,
        delta: int,
        reason: str,
        adjusted_by: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Apply a signed delta, clamped to 0..100.

        Returns:
            The new score

        Raises:
            NotFoundError: NF-002 if the student is unknown
        """
        adjustment = self._directory.record_trust_change(
            student_id=student_id,
            compute=lambda old: clamp_score(old + delta),
            adjusted_by=adjusted_by,
            reason=reason,
            now=now or datetime.now(timezone.utc),
        )
        self._after_change(adjustment, correlation_id)
        return adjustment.new_score

    def set_score(
        self,
        student_id: str,
        score: int,
        adjusted_by: str,
        reason: str = "Manual adjustment",
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Manual override of a student's score.

        Raises:
            ValidationError: VAL-001 if score is outside 0..100
        """
        if score < TRUST_FLOOR or score > TRUST_CEILING:
            raise ValidationError(
                f"Trust score must be between {TRUST_FLOOR} and {TRUST_CEILING}, got {score}",
                correlation_id=correlation_id,
            )
        adjustment = self._directory.record_trust_change(
            student_id=student_id,
            compute=lambda old: score,
            adjusted_by=adjusted_by,
            reason=reason,
            now=now or datetime.now(timezone.utc),
        )
        self._after_change(adjustment, correlation_id)
        return adjustment.new_score

    def _after_change(self, adjustment: TrustAdjustment, correlation_id: Optional[str]) -> None:
        record_trust_adjustment("system" if adjustment.adjusted_by == SYSTEM_ACTOR else "manual")
        logger.info(
            f"[TRUST-LEDGER] Trust score adjusted | "
            f"student_id={adjustment.student_id} | "
            f"{adjustment.old_score} -> {adjustment.new_score} | "
            f"adjusted_by={adjustment.adjusted_by} | "
            f"reason={adjustment.reason} | "
            f"correlation_id={correlation_id}"
        )
        if self._event_bus is not None:
            self._event_bus.publish(
                PassEventType.TRUST_ADJUSTED,
                payload={
                    "adjustment": adjustment.to_dict(),
                    "message": (
                        f"Your trust score changed from {adjustment.old_score} "
                        f"to {adjustment.new_score}: {adjustment.reason}"
                    ),
                },
                recipients=[adjustment.student_id],
                correlation_id=correlation_id,
            )

    def history(self, student_id: str) -> List[TrustAdjustment]:
        """Adjustments for a student, newest first."""
        return self._directory.list_trust_history(student_id)

    # =========================================================================
    # Systemic triggers
    # =========================================================================

    def apply_monthly_excess(
        self,
        student_id: str,
        now: datetime,
        correlation_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Penalise the Nth-or-later request of the calendar month.

        Called after the new request is inserted, so the count includes it.

        Returns:
            The new score, or None when no penalty applied
        """
        tz = self._config.tz
        local_now = now.astimezone(tz)
        month_start = tz.localize(datetime(local_now.year, local_now.month, 1))
        count = self._store.count_requests_since(student_id, month_start.astimezone(timezone.utc))

        if count < self._config.monthly_request_threshold:
            return None

        return self.adjust(
            student_id,
            -self._config.monthly_excess_penalty,
            f"Monthly request limit exceeded ({count} requests this month)",
            correlation_id=correlation_id,
            now=now,
        )

    def cancellation_penalty_for(self, from_status: str) -> int:
        if from_status == PassStatus.APPROVED_STAGE2.value:
            return self._config.stage2_cancel_penalty
        if from_status == PassStatus.APPROVED_FINAL.value:
            return self._config.late_cancel_penalty
        return 0

    def apply_cancellation_penalty(
        self,
        student_id: str,
        from_status: str,
        now: datetime,
        correlation_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Late cancellation fee for requests cancelled after stage 2 or stage 3.

        Returns:
            The new score, or None when the status carries no fee
        """
        penalty = self.cancellation_penalty_for(from_status)
        if penalty == 0:
            return None
        return self.adjust(
            student_id,
            -penalty,
            f"Late cancellation from {from_status}",
            correlation_id=correlation_id,
            now=now,
        )

    # =========================================================================
    # Cooldown
    # =========================================================================

    def cooldown_status(
        self,
        student_id: str,
        now: datetime,
        override_at: Optional[datetime] = None,
    ) -> CooldownStatus:
        """
        Evaluate the cancellation cooldown rule at `now`.

        Only cancellations within two windows of now can matter: a trigger
        older than one window has lapsed, and its streak spans at most one
        more window.
        """
        window = timedelta(hours=self._config.cooldown_window_hours)
        since = now - 2 * window
        if override_at is not None and override_at > since:
            since = override_at

        times = [t for t in self._store.list_cancellation_times(student_id, since) if t <= now]
        in_window = sum(1 for t in times if t > now - window)

        trigger = find_cooldown_trigger(times, self._config.cooldown_cancel_limit, window)
        if trigger is not None and now < trigger + window:
            return CooldownStatus(
                active=True,
                cancellations_in_window=in_window,
                blocked_until=trigger + window,
            )
        return CooldownStatus(active=False, cancellations_in_window=in_window)

    def reset_cooldown(
        self,
        student_id: str,
        actor_id: str,
        now: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> datetime:
        """
        Move the student's override timestamp to now, clearing the cooldown.

        Raises:
            NotFoundError: NF-002 if the student is unknown
        """
        now = now or datetime.now(timezone.utc)
        if self._directory.set_cooldown_override(student_id, now) == 0:
            raise NotFoundError(
                f"Student not found: {student_id}",
                error_code=PassErrorCode.ACTOR_NOT_FOUND,
                correlation_id=correlation_id,
            )
        logger.info(
            f"[TRUST-LEDGER] Cooldown reset | "
            f"student_id={student_id} | "
            f"actor_id={actor_id} | "
            f"override_at={now.isoformat()} | "
            f"correlation_id={correlation_id}"
        )
        return now


__all__ = [
    "TRUST_FLOOR",
    "TRUST_CEILING",
    "clamp_score",
    "CooldownStatus",
    "find_cooldown_trigger",
    "TrustLedger",
]
