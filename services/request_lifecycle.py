"""
============================================================================
Request Lifecycle - Gate Pass Creation, Approval, Cancellation and Edit
============================================================================

Reliability Level: L6 Critical
Traceability: Every request carries a correlation_id from creation onward

The RequestLifecycle owns every student- and staff-initiated change to a
pass request. All status changes go through pass_state_machine, which
applies a guarded compare-and-swap update; losing a race surfaces as a
StateConflictError rather than a silent success.

OPERATIONS:
    create()  - eligibility, booking window and policy checks, insert at
                pending, monthly excess penalty, notify stage-1 authority
    review()  - stage 1 (pending) and stage 2 (approved_stage1) decisions
    verify()  - stage 3 (approved_stage2) decision by the hostel authority
    cancel()  - student cancellation with late cancellation fee
    edit()    - student edit while pending and outside the lock window
    forward() - department head routes open items to another staff member
    queue()   - items an actor may decide right now

NOTIFICATIONS:
    Published on the event bus after the change is committed. A failing
    subscriber never affects the outcome of the operation.

ERROR CODES:
    - VAL-001..VAL-005: Validation failures (see PassErrorCode)
    - ELG-001..ELG-006: Eligibility blocks (see EligibilityCode)
    - GPS-030, GPS-031, GPS-033: State conflicts
    - AUTH-002: Actor lacks authority for the stage
    - NF-001, NF-002: Unknown request or actor

============================================================================
"""

from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
import logging
import uuid

from app.auth.security import issue_verification_token, generate_verify_code, TokenSigningError
from app.observability.metrics import (
    record_request_created,
    record_transition,
    record_state_conflict,
    record_eligibility_block,
)
from services.escalation_resolver import EscalationResolver, AuthorityResolution
from services.pass_config import GatePassConfig
from services.pass_errors import (
    PassErrorCode,
    EligibilityCode,
    BlockSeverity,
    ValidationError,
    StateConflictError,
    AuthorizationError,
    EligibilityBlock,
    NotFoundError,
    PassSystemError,
)
from services.pass_event_bus import PassEventType
from services.pass_models import (
    PassRequest,
    PassStatus,
    PassCategory,
    ApprovalStage,
    ActorRole,
    LogAction,
    Student,
    StaffAction,
    GateLog,
    TERMINAL_STATUSES,
    new_id,
    _parse_dt,
)
from services.pass_state_machine import transition_request
from services.policy_engine import PolicyEngine, PolicyDecision
from services.trust_ledger import TrustLedger

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Enums and Result Types
# =============================================================================

class ReviewDecision(Enum):
    """Decision submitted by an approver."""
    APPROVE = "approve"
    REJECT = "reject"


# Status awaiting each review stage
STAGE_FOR_STATUS: Dict[str, ApprovalStage] = {
    PassStatus.PENDING.value: ApprovalStage.STAGE1,
    PassStatus.APPROVED_STAGE1.value: ApprovalStage.STAGE2,
    PassStatus.APPROVED_STAGE2.value: ApprovalStage.STAGE3,
}

# Statuses a department head may forward to another staff member
FORWARDABLE_STATUSES: List[str] = [
    PassStatus.PENDING.value,
    PassStatus.APPROVED_STAGE1.value,
]


@dataclass
class RequestDetail:
    """A request with its approval and gate audit trails."""
    request: PassRequest
    staff_actions: List[StaffAction] = field(default_factory=list)
    gate_logs: List[GateLog] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request.to_dict(),
            "staff_actions": [a.to_dict() for a in self.staff_actions],
            "gate_logs": [g.to_dict() for g in self.gate_logs],
        }


# =============================================================================
# RequestLifecycle Class
# =============================================================================

class RequestLifecycle:
    """
    Pass request state machine operations.

    Reliability Level: L6 Critical
    Input Constraints: Datetimes are timezone-aware (naive values are UTC)
    Side Effects: Database writes, trust adjustments, event publication
    """

    def __init__(
        self,
        pass_store: Any,
        directory: Any,
        policy_engine: PolicyEngine,
        resolver: EscalationResolver,
        trust_ledger: TrustLedger,
        event_bus: Optional[Any] = None,
        config: Optional[GatePassConfig] = None,
    ) -> None:
        self._store = pass_store
        self._directory = directory
        self._policy = policy_engine
        self._resolver = resolver
        self._trust = trust_ledger
        self._event_bus = event_bus
        self._config = config or GatePassConfig()

        logger.info(
            f"[REQUEST-LIFECYCLE] Initialized | "
            f"event_bus={'connected' if event_bus is not None else 'disabled'}"
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def campus_date(self, moment: datetime) -> date:
        return moment.astimezone(self._config.tz).date()

    def end_of_day(self, moment: datetime) -> datetime:
        """Last second of moment's campus day, in UTC."""
        tz = self._config.tz
        local = moment.astimezone(tz)
        end = tz.localize(datetime(local.year, local.month, local.day, 23, 59, 59))
        return end.astimezone(timezone.utc)

    def _require_request(self, request_id: str, correlation_id: Optional[str]) -> PassRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError(
                f"Request not found: {request_id}",
                correlation_id=correlation_id,
            )
        return request

    def _block(
        self,
        message: str,
        block_code: str,
        severity: BlockSeverity,
        student: Student,
        correlation_id: str,
        retry_after: Optional[datetime] = None,
    ) -> EligibilityBlock:
        record_eligibility_block(block_code)
        logger.warning(
            f"[{block_code}] Eligibility block | "
            f"student_id={student.student_id} | "
            f"severity={severity.value} | "
            f"reason={message} | "
            f"correlation_id={correlation_id}"
        )
        return EligibilityBlock(
            message,
            block_code=block_code,
            severity=severity,
            correlation_id=correlation_id,
            retry_after=retry_after,
        )

    def _request_payload(self, request: PassRequest, include_token: bool = False) -> Dict[str, Any]:
        payload = request.to_dict()
        if not include_token:
            payload.pop("verification_token", None)
            payload.pop("verify_code", None)
        return payload

    def _publish(
        self,
        event_type: PassEventType,
        request: PassRequest,
        recipients: List[Optional[str]],
        message: str,
        include_token: bool = False,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self._event_bus is None:
            return
        payload: Dict[str, Any] = {
            "request": self._request_payload(request, include_token),
            "message": message,
        }
        if extra:
            payload.update(extra)
        self._event_bus.publish(
            event_type,
            payload=payload,
            recipients=[r for r in recipients if r],
            correlation_id=request.correlation_id,
        )

    def _notify_authority(self, request: PassRequest, student: Student, stage: ApprovalStage, now: datetime) -> AuthorityResolution:
        resolution = self._resolver.resolve_authority(
            stage, student, self.campus_date(now), request.correlation_id
        )
        if resolution.pending_manual_routing:
            logger.warning(
                f"[REQUEST-LIFECYCLE] No available authority, awaiting manual routing | "
                f"request_id={request.id} | "
                f"stage={stage.value} | "
                f"principal_id={resolution.principal_id} | "
                f"correlation_id={request.correlation_id}"
            )
        target = resolution.actor_id or resolution.principal_id
        self._publish(
            PassEventType.APPROVAL_REQUIRED,
            request,
            [target],
            f"Pass request from {student.name or student.student_id} awaits {stage.value} approval",
            extra={"resolution": resolution.to_dict()},
        )
        return resolution

    def _record_action(
        self,
        request: PassRequest,
        actor_id: str,
        action_type: str,
        from_status: str,
        to_status: str,
        now: datetime,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store.insert_staff_action(StaffAction(
            id=new_id(),
            request_id=request.id,
            actor_id=actor_id,
            action_type=action_type,
            from_status=from_status,
            to_status=to_status,
            details=details or {},
            created_at=now,
        ))

    def _transition(
        self,
        request: PassRequest,
        target_status: str,
        operation: str,
        now: datetime,
        fields: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> PassRequest:
        try:
            updated = transition_request(
                self._store,
                request_id=request.id,
                current_state=request.status,
                target_state=target_status,
                correlation_id=request.correlation_id,
                fields=fields,
                actor_id=actor_id,
                reason=reason,
                now=now,
            )
        except StateConflictError:
            record_state_conflict(operation)
            raise
        record_transition(request.status, target_status)
        return updated

    def _issue_token_fields(self, request: PassRequest, now: datetime) -> Dict[str, Any]:
        try:
            token = issue_verification_token(
                request_id=request.id,
                student_id=request.student_id,
                issued_at=now,
                secret_key=self._config.token_secret or None,
            )
        except TokenSigningError as e:
            logger.error(
                f"[{e.error_code}] Verification token could not be issued | "
                f"request_id={request.id} | "
                f"correlation_id={request.correlation_id}"
            )
            raise PassSystemError(
                "Verification token could not be issued",
                correlation_id=request.correlation_id,
            ) from e
        return {"verification_token": token, "verify_code": generate_verify_code()}

    # =========================================================================
    # Eligibility
    # =========================================================================

    def check_eligibility(self, student: Student, now: datetime, correlation_id: str) -> None:
        """
        Refuse a student who may not request a pass right now.

        Order: inactive, pass-blocked, year restriction, low trust, cooldown.

        Raises:
            EligibilityBlock: With the first failing block code
        """
        if not student.is_active:
            raise self._block(
                "Account is suspended or inactive",
                EligibilityCode.ACCOUNT_INACTIVE, BlockSeverity.CRITICAL,
                student, correlation_id,
            )

        if student.pass_blocked:
            raise self._block(
                "Pass requests are blocked for this student by an authority",
                EligibilityCode.INDIVIDUAL_BLOCK, BlockSeverity.CRITICAL,
                student, correlation_id,
            )

        restriction = self._directory.get_year_restriction(
            student.department_id, student.academic_year
        )
        if restriction is not None:
            raise self._block(
                f"Pass requests are restricted for year {restriction.academic_year} "
                f"of this department: {restriction.reason or 'no reason given'}",
                EligibilityCode.YEAR_BLOCK, BlockSeverity.HIGH,
                student, correlation_id,
            )

        if student.trust_score < self._config.min_trust_score:
            raise self._block(
                f"Trust score {student.trust_score} is below the required "
                f"{self._config.min_trust_score}",
                EligibilityCode.TRUST_TOO_LOW, BlockSeverity.HIGH,
                student, correlation_id,
            )

        cooldown = self._trust.cooldown_status(
            student.student_id, now, student.cooldown_override_at
        )
        if cooldown.active:
            raise self._block(
                f"Too many cancellations ({cooldown.cancellations_in_window} in the last "
                f"{self._config.cooldown_window_hours}h); requests are paused",
                EligibilityCode.COOLDOWN_ACTIVE, BlockSeverity.WARNING,
                student, correlation_id,
                retry_after=cooldown.blocked_until,
            )

    # =========================================================================
    # Booking window and policy
    # =========================================================================

    def _validate_booking(
        self,
        student: Student,
        pass_category: str,
        reason: str,
        departure_at: Any,
        return_at: Any,
        now: datetime,
        correlation_id: str,
    ) -> Tuple[datetime, datetime, PolicyDecision]:
        valid_categories = [c.value for c in PassCategory]
        if pass_category not in valid_categories:
            raise ValidationError(
                f"Unknown pass category '{pass_category}'. Valid: {valid_categories}",
                correlation_id=correlation_id,
            )

        if not reason or not reason.strip():
            raise ValidationError("A reason is required", correlation_id=correlation_id)

        departure = _parse_dt(departure_at)
        if departure is None:
            raise ValidationError("Departure time is required", correlation_id=correlation_id)

        earliest = now - timedelta(minutes=self._config.past_grace_minutes)
        latest = now + timedelta(days=self._config.max_advance_days)
        if departure < earliest:
            raise ValidationError(
                "Departure time is in the past",
                error_code=PassErrorCode.DEPARTURE_OUT_OF_RANGE,
                correlation_id=correlation_id,
            )
        if departure > latest:
            raise ValidationError(
                f"Departure cannot be more than {self._config.max_advance_days} days ahead",
                error_code=PassErrorCode.DEPARTURE_OUT_OF_RANGE,
                correlation_id=correlation_id,
            )

        return_time = _parse_dt(return_at) or self.end_of_day(departure)
        if return_time <= departure:
            raise ValidationError(
                "Return time must be after departure time",
                correlation_id=correlation_id,
            )

        duration_hours = (return_time - departure).total_seconds() / 3600.0
        decision = self._policy.evaluate(
            student.category,
            pass_category,
            departure,
            duration_hours,
            correlation_id=correlation_id,
        )
        if not decision.allowed:
            raise ValidationError(
                decision.reason or "Pass policy does not allow this request",
                error_code=PassErrorCode.POLICY_REJECTED,
                correlation_id=correlation_id,
            )

        return departure, return_time, decision

    # =========================================================================
    # create()
    # =========================================================================

    def create(
        self,
        student_id: str,
        pass_category: str,
        reason: str,
        departure_at: Any,
        return_at: Any = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PassRequest:
        """
        Submit a new pass request.

        ========================================================================
        CREATION PROCEDURE:
        ========================================================================
        1. Load the student (NF-002)
        2. Eligibility: inactive, pass block, year restriction, trust, cooldown
        3. Refuse while another request is open (VAL-004)
        4. Booking window, return time and policy (VAL-001..VAL-003)
        5. Insert at pending (the store re-checks the open request rule)
        6. Monthly excess penalty when this is the Nth request of the month
        7. Notify the student and the resolved stage-1 authority
        ========================================================================

        Returns:
            The inserted PassRequest
        """
        now = now or datetime.now(timezone.utc)
        correlation_id = correlation_id or str(uuid.uuid4())

        # Step 1: Load the student
        student = self._directory.require_student(student_id, correlation_id)

        # Step 2: Eligibility
        self.check_eligibility(student, now, correlation_id)

        # Step 3: Single outstanding request
        open_request = self._store.find_open_request(student_id)
        if open_request is not None:
            raise ValidationError(
                f"Request {open_request.id} is still {open_request.status}",
                error_code=PassErrorCode.OPEN_REQUEST_EXISTS,
                correlation_id=correlation_id,
            )

        # Step 4: Booking window and policy
        departure, return_time, decision = self._validate_booking(
            student, pass_category, reason, departure_at, return_at, now, correlation_id
        )

        # Step 5: Insert
        request = PassRequest(
            id=new_id(),
            student_id=student_id,
            pass_category=pass_category,
            reason=reason.strip(),
            departure_at=departure,
            return_at=return_time,
            status=PassStatus.PENDING.value,
            gate_action=decision.required_gate_action,
            correlation_id=correlation_id,
            created_at=now,
            updated_at=now,
        )
        self._store.insert_request(request)
        record_request_created(student.category, pass_category, correlation_id)

        logger.info(
            f"[REQUEST-LIFECYCLE] Request created | "
            f"request_id={request.id} | "
            f"student_id={student_id} | "
            f"pass_category={pass_category} | "
            f"gate_action={request.gate_action} | "
            f"policy_source={decision.source} | "
            f"correlation_id={correlation_id}"
        )

        # Step 6: Monthly excess penalty
        self._trust.apply_monthly_excess(student_id, now, correlation_id)

        # Step 7: Notify
        self._publish(
            PassEventType.CREATED, request, [student_id],
            f"Your {pass_category} pass request was submitted",
        )
        self._notify_authority(request, student, ApprovalStage.STAGE1, now)

        return request

    # =========================================================================
    # review() - stage 1 and stage 2
    # =========================================================================

    def review(
        self,
        request_id: str,
        actor_id: str,
        decision: ReviewDecision,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PassRequest:
        """
        Record a stage-1 or stage-2 decision.

        Stage 1: pending -> approved_stage1 | rejected
        Stage 2: approved_stage1 -> approved_stage2 (resident)
                                  | approved_final (day scholar)
                                  | rejected

        Raises:
            StateConflictError: Request is not awaiting stage 1 or 2
            AuthorizationError: Actor does not hold the stage authority
            ValidationError: Rejection without a reason
        """
        now = now or datetime.now(timezone.utc)
        request = self._require_request(request_id, correlation_id)

        stage = STAGE_FOR_STATUS.get(request.status)
        if stage not in (ApprovalStage.STAGE1, ApprovalStage.STAGE2):
            raise StateConflictError(
                f"Request is {request.status}, not awaiting mentor or department review",
                error_code=PassErrorCode.INVALID_TRANSITION,
                correlation_id=request.correlation_id,
                current_status=request.status,
            )

        student = self._directory.require_student(request.student_id, request.correlation_id)
        if not self._resolver.can_act(
            stage, actor_id, student, self.campus_date(now), request.forwarded_to
        ):
            logger.warning(
                f"[{PassErrorCode.FORBIDDEN_STAGE}] Actor lacks stage authority | "
                f"request_id={request.id} | "
                f"stage={stage.value} | "
                f"actor_id={actor_id} | "
                f"correlation_id={request.correlation_id}"
            )
            raise AuthorizationError(
                f"You are not the {stage.value} authority for this request",
                correlation_id=request.correlation_id,
            )

        return self._decide(request, student, stage, actor_id, decision, reason, now)

    def _decide(
        self,
        request: PassRequest,
        student: Student,
        stage: ApprovalStage,
        actor_id: str,
        decision: ReviewDecision,
        reason: Optional[str],
        now: datetime,
    ) -> PassRequest:
        if decision == ReviewDecision.REJECT:
            if not reason or not reason.strip():
                raise ValidationError(
                    "A reason is required to reject a request",
                    correlation_id=request.correlation_id,
                )
            target = PassStatus.REJECTED.value
        elif stage == ApprovalStage.STAGE1:
            target = PassStatus.APPROVED_STAGE1.value
        elif stage == ApprovalStage.STAGE2 and student.is_resident:
            target = PassStatus.APPROVED_STAGE2.value
        else:
            target = PassStatus.APPROVED_FINAL.value

        fields: Dict[str, Any] = {
            "decided_by": actor_id,
            "decision_reason": reason,
            "forwarded_to": None,
        }
        if target == PassStatus.APPROVED_FINAL.value:
            fields.update(self._issue_token_fields(request, now))

        updated = self._transition(
            request, target, f"review_{stage.value}", now,
            fields=fields, actor_id=actor_id, reason=reason,
        )
        self._record_action(
            updated, actor_id, f"{stage.value}_{decision.value}",
            request.status, target, now,
            details={"reason": reason} if reason else None,
        )

        if target == PassStatus.REJECTED.value:
            message = f"Your pass request was rejected at {stage.value}: {reason}"
        elif target == PassStatus.APPROVED_FINAL.value:
            message = "Your pass is approved and ready for the gate"
        else:
            message = f"Your pass request was approved at {stage.value}"

        self._publish(
            PassEventType.DECIDED, updated, [updated.student_id], message,
            include_token=target == PassStatus.APPROVED_FINAL.value,
        )
        if target == PassStatus.APPROVED_STAGE1.value:
            self._notify_authority(updated, student, ApprovalStage.STAGE2, now)
        elif target == PassStatus.APPROVED_STAGE2.value:
            self._notify_authority(updated, student, ApprovalStage.STAGE3, now)

        return updated

    # =========================================================================
    # verify() - stage 3
    # =========================================================================

    def verify(
        self,
        request_id: str,
        actor_id: str,
        decision: ReviewDecision,
        reason: Optional[str] = None,
        override_low_trust: bool = False,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PassRequest:
        """
        Record the hostel authority's decision: approved_stage2 ->
        approved_final | rejected.

        Approving a resident whose trust score is below the verification
        threshold is refused unless override_low_trust is set.

        Raises:
            StateConflictError: Request is not awaiting stage 3
            AuthorizationError: Actor is not the residence's authority
            EligibilityBlock: ELG-006 low trust without override
        """
        now = now or datetime.now(timezone.utc)
        request = self._require_request(request_id, correlation_id)

        if request.status != PassStatus.APPROVED_STAGE2.value:
            raise StateConflictError(
                f"Request is {request.status}, not awaiting hostel verification",
                error_code=PassErrorCode.INVALID_TRANSITION,
                correlation_id=request.correlation_id,
                current_status=request.status,
            )

        student = self._directory.require_student(request.student_id, request.correlation_id)
        if not self._resolver.can_act(
            ApprovalStage.STAGE3, actor_id, student, self.campus_date(now)
        ):
            raise AuthorizationError(
                "You are not the hostel authority for this student's residence",
                correlation_id=request.correlation_id,
            )

        if (
            decision == ReviewDecision.APPROVE
            and student.is_resident
            and student.trust_score < self._config.resident_verify_min_trust
        ):
            if not override_low_trust:
                raise self._block(
                    f"Trust score {student.trust_score} is below "
                    f"{self._config.resident_verify_min_trust}; approval requires an override",
                    EligibilityCode.RESIDENT_TRUST_GATE, BlockSeverity.HIGH,
                    student, request.correlation_id,
                )
            logger.warning(
                f"[REQUEST-LIFECYCLE] Low trust approval overridden | "
                f"request_id={request.id} | "
                f"trust_score={student.trust_score} | "
                f"actor_id={actor_id} | "
                f"correlation_id={request.correlation_id}"
            )

        return self._decide(request, student, ApprovalStage.STAGE3, actor_id, decision, reason, now)

    # =========================================================================
    # cancel()
    # =========================================================================

    def cancel(
        self,
        request_id: str,
        student_id: str,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PassRequest:
        """
        Cancel a request on the student's behalf.

        Cancelling after stage 2 or final approval costs trust points.
        A student who is physically out cannot cancel.

        Raises:
            AuthorizationError: Request belongs to another student
            StateConflictError: GPS-033 when out, GPS-030 when terminal
        """
        now = now or datetime.now(timezone.utc)
        request = self._require_request(request_id, correlation_id)

        if request.student_id != student_id:
            raise AuthorizationError(
                "Only the requesting student can cancel this request",
                correlation_id=request.correlation_id,
            )

        if request.status in TERMINAL_STATUSES:
            raise StateConflictError(
                f"Request is already {request.status}",
                error_code=PassErrorCode.INVALID_TRANSITION,
                correlation_id=request.correlation_id,
                current_status=request.status,
            )

        latest_log = self._store.latest_gate_log(request.id)
        if request.status == PassStatus.ACTIVE.value or (
            latest_log is not None and latest_log.action == LogAction.EXIT.value
        ):
            logger.warning(
                f"[{PassErrorCode.PHYSICALLY_OUT}] Cancellation refused, student is out | "
                f"request_id={request.id} | "
                f"correlation_id={request.correlation_id}"
            )
            raise StateConflictError(
                "Cannot cancel while you are physically out of campus",
                error_code=PassErrorCode.PHYSICALLY_OUT,
                correlation_id=request.correlation_id,
                current_status=request.status,
            )

        updated = self._transition(
            request, PassStatus.CANCELLED.value, "cancel", now,
            fields={"cancelled_at": now}, actor_id=student_id,
        )

        new_score = self._trust.apply_cancellation_penalty(
            student_id, request.status, now, request.correlation_id
        )

        logger.info(
            f"[REQUEST-LIFECYCLE] Request cancelled | "
            f"request_id={request.id} | "
            f"from_status={request.status} | "
            f"penalised={new_score is not None} | "
            f"correlation_id={request.correlation_id}"
        )

        self._publish(
            PassEventType.CANCELLED, updated, [student_id, request.decided_by],
            "Pass request cancelled",
        )
        return updated

    # =========================================================================
    # edit()
    # =========================================================================

    def edit(
        self,
        request_id: str,
        student_id: str,
        pass_category: str,
        reason: str,
        departure_at: Any,
        return_at: Any = None,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PassRequest:
        """
        Edit a pending request outside the lock window.

        Raises:
            StateConflictError: Request is no longer pending
            ValidationError: VAL-005 inside the lock window, or booking/policy failures
        """
        now = now or datetime.now(timezone.utc)
        request = self._require_request(request_id, correlation_id)

        if request.student_id != student_id:
            raise AuthorizationError(
                "Only the requesting student can edit this request",
                correlation_id=request.correlation_id,
            )

        if request.status != PassStatus.PENDING.value:
            raise StateConflictError(
                f"Only pending requests can be edited; this one is {request.status}",
                error_code=PassErrorCode.INVALID_TRANSITION,
                correlation_id=request.correlation_id,
                current_status=request.status,
            )

        if request.departure_at - now <= timedelta(hours=self._config.edit_lock_hours):
            raise ValidationError(
                f"Requests cannot be edited within {self._config.edit_lock_hours}h of departure",
                error_code=PassErrorCode.EDIT_LOCKED,
                correlation_id=request.correlation_id,
            )

        student = self._directory.require_student(student_id, request.correlation_id)
        departure, return_time, decision = self._validate_booking(
            student, pass_category, reason, departure_at, return_at, now,
            request.correlation_id,
        )

        affected = self._store.update_fields_guarded(
            request.id,
            [PassStatus.PENDING.value],
            {
                "pass_category": pass_category,
                "reason": reason.strip(),
                "departure_at": departure,
                "return_at": return_time,
                "gate_action": decision.required_gate_action,
            },
            now,
        )
        if affected == 0:
            record_state_conflict("edit")
            latest = self._store.get_request(request.id)
            raise StateConflictError(
                "Request changed while editing, re-fetch and retry",
                correlation_id=request.correlation_id,
                current_status=latest.status if latest else None,
            )

        logger.info(
            f"[REQUEST-LIFECYCLE] Request edited | "
            f"request_id={request.id} | "
            f"pass_category={pass_category} | "
            f"correlation_id={request.correlation_id}"
        )
        return self._store.get_request(request.id)

    # =========================================================================
    # forward()
    # =========================================================================

    def forward(
        self,
        request_ids: List[str],
        authority_id: str,
        target_id: str,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[str]:
        """
        Route open items to another staff member (manual routing).

        The forwarding authority must be the department head of each
        request's student, the head's effective delegate, or an admin.

        Returns:
            Identifiers actually forwarded; items that moved past stage 2
            in the meantime are skipped
        """
        now = now or datetime.now(timezone.utc)
        on_date = self.campus_date(now)

        target = self._directory.get_staff(target_id)
        if target is None:
            raise NotFoundError(
                f"Staff member not found: {target_id}",
                error_code=PassErrorCode.ACTOR_NOT_FOUND,
                correlation_id=correlation_id,
            )
        authority = self._directory.get_staff(authority_id)
        is_admin = authority is not None and authority.role == ActorRole.ADMIN.value

        requests: List[PassRequest] = []
        for request_id in request_ids:
            request = self._require_request(request_id, correlation_id)
            student = self._directory.require_student(request.student_id, correlation_id)
            if not is_admin and not self._resolver.can_act(
                ApprovalStage.STAGE2, authority_id, student, on_date
            ):
                raise AuthorizationError(
                    "Only the department head or its delegate can forward this request",
                    correlation_id=request.correlation_id,
                )
            requests.append(request)

        forwarded: List[str] = []
        for request in requests:
            affected = self._store.update_fields_guarded(
                request.id, FORWARDABLE_STATUSES, {"forwarded_to": target_id}, now
            )
            if affected == 0:
                record_state_conflict("forward")
                logger.warning(
                    f"[{PassErrorCode.STATE_CONFLICT}] Forward skipped, request moved on | "
                    f"request_id={request.id} | "
                    f"correlation_id={request.correlation_id}"
                )
                continue
            forwarded.append(request.id)
            self._record_action(
                request, authority_id, "forward", request.status, request.status, now,
                details={"forwarded_to": target_id},
            )
            self._publish(
                PassEventType.APPROVAL_REQUIRED, request, [target_id],
                "A pass request was forwarded to you for review",
            )

        logger.info(
            f"[REQUEST-LIFECYCLE] Requests forwarded | "
            f"authority_id={authority_id} | "
            f"target_id={target_id} | "
            f"forwarded={len(forwarded)}/{len(request_ids)} | "
            f"correlation_id={correlation_id}"
        )
        return forwarded

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, request_id: str, correlation_id: Optional[str] = None) -> PassRequest:
        return self._require_request(request_id, correlation_id)

    def get_detail(self, request_id: str, correlation_id: Optional[str] = None) -> RequestDetail:
        request = self._require_request(request_id, correlation_id)
        return RequestDetail(
            request=request,
            staff_actions=self._store.list_staff_actions(request_id),
            gate_logs=self._store.list_gate_logs(request_id),
        )

    def list_for_student(self, student_id: str) -> List[PassRequest]:
        return self._store.list_requests(student_id=student_id)

    def queue(self, actor_id: str, now: Optional[datetime] = None) -> List[PassRequest]:
        """Requests awaiting a decision that actor_id may take today."""
        now = now or datetime.now(timezone.utc)
        on_date = self.campus_date(now)

        if self._directory.get_staff(actor_id) is None:
            raise NotFoundError(
                f"Staff member not found: {actor_id}",
                error_code=PassErrorCode.ACTOR_NOT_FOUND,
            )

        students: Dict[str, Optional[Student]] = {}
        items: List[PassRequest] = []
        for request in self._store.list_requests(statuses=list(STAGE_FOR_STATUS)):
            if request.student_id not in students:
                students[request.student_id] = self._directory.get_student(request.student_id)
            student = students[request.student_id]
            if student is None:
                continue
            stage = STAGE_FOR_STATUS[request.status]
            if self._resolver.can_act(stage, actor_id, student, on_date, request.forwarded_to):
                items.append(request)
        return items


__all__ = [
    "ReviewDecision",
    "RequestDetail",
    "RequestLifecycle",
    "STAGE_FOR_STATUS",
    "FORWARDABLE_STATUSES",
]
