"""
============================================================================
Gate Verifier - Derived Gate Status and Exit/Entry Logging
============================================================================

Reliability Level: L6 Critical
Traceability: Gate logs and transitions carry the request correlation_id

Gate status is never stored. It is derived on every check from the
request's stored approval state, the gate action captured from its
policy, and the most recent gate log.

============================================================================
DECISION ORDER:
============================================================================
0. Request not gate-ready (not approved_final/active/completed):
   not_ready, or expired for expired requests
1. Gate action no_scan -> gate_not_required; internal_only -> internal_only
2. Gate action exit_only: exit already logged -> completed, else the
   pre-exit checks below with allowed [exit]
3. No log yet (scan_both): pre-exit checks
     - later than departure + buffer (30 min, 24 h for emergency):
       hard expiry for day-scholar permission passes, otherwise a
       late_departure warning with exit still allowed
     - earlier than departure - 2 h: too_early, exit allowed at the
       gatekeeper's discretion
     - otherwise ready
4. Latest log exit -> out, allowed [entry]; past return time -> overdue
   with the overdue duration in minutes
5. Latest log entry, or request completed -> used
============================================================================

Logging an action re-runs evaluate(), applies the guarded transition and
only then appends the gate log, so two gatekeepers racing on the same pass
produce one log and one StateConflictError.

ERROR CODES:
    - GPS-032: Duplicate gate action
    - GPS-030: Gate action not allowed in the current gate status
    - NF-001: No pass found for the scanned identifier

============================================================================
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import uuid

from app.auth.security import is_token_format, normalize_token, tokens_match
from app.observability.metrics import record_gate_action, record_state_conflict, record_transition
from services.pass_config import GatePassConfig
from services.pass_errors import (
    PassErrorCode,
    ValidationError,
    StateConflictError,
    NotFoundError,
)
from services.pass_event_bus import PassEventType
from services.pass_models import (
    PassRequest,
    PassStatus,
    PassCategory,
    StudentCategory,
    GateAction,
    GateStatus,
    LogAction,
    GateLog,
    Student,
    new_id,
)
from services.pass_state_machine import transition_request
from services.policy_engine import PolicyEngine

# Configure module logger
logger = logging.getLogger(__name__)


# Statuses in which a pass can be presented at the gate
GATE_VISIBLE_STATUSES: List[str] = [
    PassStatus.APPROVED_FINAL.value,
    PassStatus.ACTIVE.value,
    PassStatus.COMPLETED.value,
]

# Live board columns
BOARD_READY = "ready"
BOARD_OUT = "out"
BOARD_OVERDUE = "overdue"

READY_STATUSES = (
    GateStatus.READY.value,
    GateStatus.TOO_EARLY.value,
    GateStatus.LATE_DEPARTURE.value,
)


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class GateEvaluation:
    """
    Momentary gate status of one pass.

    hard_expired is set when a day-scholar permission pass is past its
    departure buffer; the caller expires the request.
    """
    status: str
    allowed_actions: List[str] = field(default_factory=list)
    warning: Optional[str] = None
    message: str = ""
    overdue_minutes: Optional[int] = None
    gate_action: Optional[str] = None
    hard_expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "allowed_actions": list(self.allowed_actions),
            "warning": self.warning,
            "message": self.message,
            "overdue_minutes": self.overdue_minutes,
            "gate_action": self.gate_action,
            "hard_expired": self.hard_expired,
        }


@dataclass
class GateCheck:
    """Result of a gate lookup: the pass, its holder and its evaluation."""
    request: PassRequest
    student: Optional[Student]
    evaluation: GateEvaluation

    def to_dict(self) -> Dict[str, Any]:
        request = self.request.to_dict()
        request.pop("verification_token", None)
        return {
            "request": request,
            "student": self.student.to_dict() if self.student else None,
            "evaluation": self.evaluation.to_dict(),
        }


@dataclass
class GateLogResult:
    """Outcome of a recorded exit or entry."""
    request: PassRequest
    log: GateLog
    evaluation: GateEvaluation

    def to_dict(self) -> Dict[str, Any]:
        request = self.request.to_dict()
        request.pop("verification_token", None)
        return {
            "request": request,
            "log": self.log.to_dict(),
            "evaluation": self.evaluation.to_dict(),
        }


# =============================================================================
# GateVerifier Class
# =============================================================================

class GateVerifier:
    """
    Checkpoint verification and exit/entry logging.

    Reliability Level: L6 Critical
    Side Effects: Gate log inserts, request transitions, gate events
    """

    def __init__(
        self,
        pass_store: Any,
        directory: Any,
        policy_engine: PolicyEngine,
        event_bus: Optional[Any] = None,
        config: Optional[GatePassConfig] = None,
    ) -> None:
        self._store = pass_store
        self._directory = directory
        self._policy = policy_engine
        self._event_bus = event_bus
        self._config = config or GatePassConfig()

    # =========================================================================
    # evaluate()
    # =========================================================================

    def required_gate_action(self, request: PassRequest, student_category: Optional[str]) -> str:
        """Gate action captured on the request, else the current policy's."""
        if request.gate_action:
            return request.gate_action
        if student_category is not None:
            policy = self._policy.resolve_policy(student_category, request.pass_category)
            if policy is not None:
                return policy.gate_action
        return GateAction.SCAN_BOTH.value

    def evaluate(
        self,
        request: PassRequest,
        latest_log_action: Optional[str],
        now: datetime,
        student_category: Optional[str] = None,
    ) -> GateEvaluation:
        """
        Derive the gate status of a pass at `now`.

        Args:
            request: The pass presented at the gate
            latest_log_action: Action of the most recent gate log, or None
            now: Evaluation time
            student_category: Holder's category (hard expiry applies to day
                scholars only)
        """
        gate_action = self.required_gate_action(request, student_category)

        if request.status not in GATE_VISIBLE_STATUSES:
            if request.status == PassStatus.EXPIRED.value:
                return GateEvaluation(
                    status=GateStatus.EXPIRED.value,
                    message="Pass has expired",
                    gate_action=gate_action,
                )
            return GateEvaluation(
                status=GateStatus.NOT_READY.value,
                message=f"Pass is {request.status}, not cleared for the gate",
                gate_action=gate_action,
            )

        if gate_action == GateAction.NO_SCAN.value:
            return GateEvaluation(
                status=GateStatus.GATE_NOT_REQUIRED.value,
                message="Valid pass, gate scan not required",
                gate_action=gate_action,
            )
        if gate_action == GateAction.INTERNAL_ONLY.value:
            return GateEvaluation(
                status=GateStatus.INTERNAL_ONLY.value,
                message="Valid pass for internal movement, not a campus exit",
                gate_action=gate_action,
            )

        if gate_action == GateAction.EXIT_ONLY.value:
            if latest_log_action == LogAction.EXIT.value or request.status == PassStatus.COMPLETED.value:
                return GateEvaluation(
                    status=GateStatus.COMPLETED.value,
                    message="Exit already recorded, no further action",
                    gate_action=gate_action,
                )
            return self._pre_exit(request, now, student_category, gate_action)

        if latest_log_action == LogAction.ENTRY.value or request.status == PassStatus.COMPLETED.value:
            return GateEvaluation(
                status=GateStatus.USED.value,
                message="Pass already used",
                gate_action=gate_action,
            )

        if latest_log_action == LogAction.EXIT.value or request.status == PassStatus.ACTIVE.value:
            if now > request.return_at:
                overdue = int((now - request.return_at).total_seconds() // 60)
                return GateEvaluation(
                    status=GateStatus.OVERDUE.value,
                    allowed_actions=[LogAction.ENTRY.value],
                    warning=f"Overdue by {overdue} minutes",
                    message="Student is out and overdue",
                    overdue_minutes=overdue,
                    gate_action=gate_action,
                )
            return GateEvaluation(
                status=GateStatus.OUT.value,
                allowed_actions=[LogAction.ENTRY.value],
                message="Student is out",
                gate_action=gate_action,
            )

        return self._pre_exit(request, now, student_category, gate_action)

    def _pre_exit(
        self,
        request: PassRequest,
        now: datetime,
        student_category: Optional[str],
        gate_action: str,
    ) -> GateEvaluation:
        if request.pass_category == PassCategory.EMERGENCY.value:
            buffer = timedelta(hours=self._config.emergency_buffer_hours)
        else:
            buffer = timedelta(minutes=self._config.departure_buffer_minutes)

        if now > request.departure_at + buffer:
            if (
                student_category == StudentCategory.DAY_SCHOLAR.value
                and request.pass_category == PassCategory.PERMISSION.value
            ):
                return GateEvaluation(
                    status=GateStatus.EXPIRED.value,
                    message="Permission pass expired, departure window missed",
                    gate_action=gate_action,
                    hard_expired=True,
                )
            return GateEvaluation(
                status=GateStatus.LATE_DEPARTURE.value,
                allowed_actions=[LogAction.EXIT.value],
                warning="Departure is later than the scheduled time",
                message="Exit allowed, late departure",
                gate_action=gate_action,
            )

        if now < request.departure_at - timedelta(hours=self._config.early_departure_hours):
            return GateEvaluation(
                status=GateStatus.TOO_EARLY.value,
                allowed_actions=[LogAction.EXIT.value],
                warning="Departure is earlier than the scheduled time",
                message="Exit at gatekeeper discretion",
                gate_action=gate_action,
            )

        return GateEvaluation(
            status=GateStatus.READY.value,
            allowed_actions=[LogAction.EXIT.value],
            message="Ready for exit",
            gate_action=gate_action,
        )

    # =========================================================================
    # verify()
    # =========================================================================

    def _lookup(self, identifier: str) -> Optional[PassRequest]:
        if is_token_format(identifier):
            request = self._store.find_by_token(normalize_token(identifier))
            if request is not None and tokens_match(request.verification_token, identifier):
                return request
            return None

        student = self._directory.find_student_by_register(identifier.strip())
        if student is None:
            return None
        return self._store.latest_request_for_student(student.student_id)

    def verify(
        self,
        identifier: str,
        now: Optional[datetime] = None,
        correlation_id: Optional[str] = None,
    ) -> GateCheck:
        """
        Look up a pass by verification token or register number.

        A day-scholar permission pass found past its departure buffer is
        expired on the spot.

        Raises:
            ValidationError: Empty identifier
            NotFoundError: No pass for the identifier
        """
        now = now or datetime.now(timezone.utc)
        correlation_id = correlation_id or str(uuid.uuid4())

        if not identifier or not identifier.strip():
            raise ValidationError("A token or register number is required", correlation_id=correlation_id)

        request = self._lookup(identifier)
        if request is None:
            logger.warning(
                f"[{PassErrorCode.REQUEST_NOT_FOUND}] Gate lookup found no pass | "
                f"identifier_kind={'token' if is_token_format(identifier) else 'register'} | "
                f"correlation_id={correlation_id}"
            )
            raise NotFoundError("No pass found for this identifier", correlation_id=correlation_id)

        student = self._directory.get_student(request.student_id)
        category = student.category if student else None
        latest = self._store.latest_gate_log(request.id)
        evaluation = self.evaluate(request, latest.action if latest else None, now, category)

        if evaluation.hard_expired and request.status == PassStatus.APPROVED_FINAL.value:
            request = self._expire(request, now)

        logger.info(
            f"[GATE-VERIFIER] Pass verified | "
            f"request_id={request.id} | "
            f"status={evaluation.status} | "
            f"allowed={evaluation.allowed_actions} | "
            f"correlation_id={request.correlation_id}"
        )
        return GateCheck(request=request, student=student, evaluation=evaluation)

    def _expire(self, request: PassRequest, now: datetime) -> PassRequest:
        try:
            expired = transition_request(
                self._store,
                request_id=request.id,
                current_state=request.status,
                target_state=PassStatus.EXPIRED.value,
                correlation_id=request.correlation_id,
                reason="Departure window missed",
                now=now,
            )
        except StateConflictError:
            record_state_conflict("gate_expire")
            return self._store.get_request(request.id) or request
        record_transition(request.status, PassStatus.EXPIRED.value)
        self._publish(PassEventType.EXPIRED, expired, "Your pass expired, the departure window was missed")
        return expired

    # =========================================================================
    # log_action()
    # =========================================================================

    def log_action(
        self,
        request_id: str,
        action: str,
        gatekeeper_id: str,
        now: Optional[datetime] = None,
        comments: str = "",
        correlation_id: Optional[str] = None,
    ) -> GateLogResult:
        """
        Record an exit or entry.

        ========================================================================
        LOGGING PROCEDURE:
        ========================================================================
        1. Load the request and its latest gate log
        2. Re-evaluate; the action must be in allowed_actions
           (a repeat of the latest action is GPS-032)
           A day-scholar permission pass past its buffer is expired
           before the refusal
        3. Guarded transition:
             exit:  approved_final -> active (completed for exit_only)
             entry: active -> completed
        4. Append the gate log
        5. Publish pass.gate_logged to the student
        ========================================================================

        Raises:
            ValidationError: Unknown action
            StateConflictError: Duplicate, disallowed, or lost race
        """
        now = now or datetime.now(timezone.utc)

        # Step 1: Load
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Request not found: {request_id}", correlation_id=correlation_id)

        valid_actions = [a.value for a in LogAction]
        if action not in valid_actions:
            raise ValidationError(
                f"Unknown gate action '{action}'. Valid: {valid_actions}",
                correlation_id=request.correlation_id,
            )

        student = self._directory.get_student(request.student_id)
        category = student.category if student else None
        latest = self._store.latest_gate_log(request.id)
        latest_action = latest.action if latest else None

        # Step 2: Re-evaluate
        evaluation = self.evaluate(request, latest_action, now, category)
        if action not in evaluation.allowed_actions:
            if evaluation.hard_expired and request.status == PassStatus.APPROVED_FINAL.value:
                request = self._expire(request, now)
            duplicate = latest_action == action
            code = PassErrorCode.DUPLICATE_GATE_ACTION if duplicate else PassErrorCode.INVALID_TRANSITION
            logger.warning(
                f"[{code}] Gate action refused | "
                f"request_id={request.id} | "
                f"action={action} | "
                f"gate_status={evaluation.status} | "
                f"correlation_id={request.correlation_id}"
            )
            message = (
                f"{action} already recorded for this pass" if duplicate
                else f"{action} not allowed, gate status is {evaluation.status}"
            )
            raise StateConflictError(
                message,
                error_code=code,
                correlation_id=request.correlation_id,
                current_status=request.status,
            )

        # Step 3: Guarded transition
        if action == LogAction.EXIT.value:
            if evaluation.gate_action == GateAction.EXIT_ONLY.value:
                target = PassStatus.COMPLETED.value
            else:
                target = PassStatus.ACTIVE.value
        else:
            target = PassStatus.COMPLETED.value

        try:
            updated = transition_request(
                self._store,
                request_id=request.id,
                current_state=request.status,
                target_state=target,
                correlation_id=request.correlation_id,
                actor_id=gatekeeper_id,
                reason=f"gate {action}",
                now=now,
            )
        except StateConflictError:
            record_state_conflict(f"gate_{action}")
            raise
        record_transition(request.status, target)

        # Step 4: Append log
        log = self._store.insert_gate_log(GateLog(
            id=new_id(),
            request_id=request.id,
            action=action,
            gatekeeper_id=gatekeeper_id,
            logged_at=now,
            comments=comments,
        ))
        record_gate_action(action)

        logger.info(
            f"[GATE-VERIFIER] Gate action logged | "
            f"request_id={request.id} | "
            f"action={action} | "
            f"gatekeeper_id={gatekeeper_id} | "
            f"{request.status} -> {target} | "
            f"correlation_id={request.correlation_id}"
        )

        # Step 5: Notify
        self._publish(
            PassEventType.GATE_LOGGED, updated,
            f"Gate {action} recorded at {now.isoformat()}",
            extra={"action": action, "gatekeeper_id": gatekeeper_id},
        )

        return GateLogResult(
            request=updated,
            log=log,
            evaluation=self.evaluate(updated, action, now, category),
        )

    # =========================================================================
    # live_board()
    # =========================================================================

    def live_board(self, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Gate-relevant passes grouped into ready, out and overdue.

        Passes that need no scan and expired permission passes are left off.
        """
        now = now or datetime.now(timezone.utc)
        candidates = self._store.list_requests(
            statuses=[PassStatus.APPROVED_FINAL.value, PassStatus.ACTIVE.value]
        )
        latest_logs = self._store.latest_gate_logs([r.id for r in candidates])

        board: Dict[str, List[Dict[str, Any]]] = {
            BOARD_READY: [],
            BOARD_OUT: [],
            BOARD_OVERDUE: [],
        }
        students: Dict[str, Optional[Student]] = {}
        for request in candidates:
            if request.student_id not in students:
                students[request.student_id] = self._directory.get_student(request.student_id)
            student = students[request.student_id]
            latest = latest_logs.get(request.id)
            evaluation = self.evaluate(
                request,
                latest.action if latest else None,
                now,
                student.category if student else None,
            )
            if evaluation.status in READY_STATUSES:
                column = BOARD_READY
            elif evaluation.status == GateStatus.OUT.value:
                column = BOARD_OUT
            elif evaluation.status == GateStatus.OVERDUE.value:
                column = BOARD_OVERDUE
            else:
                continue
            board[column].append(GateCheck(request, student, evaluation).to_dict())

        return board

    def _publish(
        self,
        event_type: PassEventType,
        request: PassRequest,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._event_bus is None:
            return
        payload = {"request_id": request.id, "status": request.status, "message": message}
        if extra:
            payload.update(extra)
        self._event_bus.publish(
            event_type,
            payload=payload,
            recipients=[request.student_id],
            correlation_id=request.correlation_id,
        )


__all__ = [
    "GateEvaluation",
    "GateCheck",
    "GateLogResult",
    "GateVerifier",
    "GATE_VISIBLE_STATUSES",
    "BOARD_READY",
    "BOARD_OUT",
    "BOARD_OVERDUE",
]
