"""
============================================================================
Gate Pass Data Models
============================================================================

Reliability Level: L6 Critical
Traceability: All mutable records carry correlation_id for audit

This module defines the records shared by every gate pass service:
- PassRequest: one leave/outing attempt by a student
- Student / StaffMember: the actors the lifecycle consults
- GateLog: append-only exit/entry events recorded at the checkpoint
- LeaveRecord / DelegationGrant: inputs to approval escalation
- PassPolicy: configuration keyed by (student category, pass category)
- TrustAdjustment: append-only audit row for every trust score change
- YearRestriction / CalendarException: department blocks and holidays

All timestamps are timezone-aware UTC datetimes. Enum-valued fields are
stored as their string values so records round-trip through SQL rows
without conversion.

============================================================================
"""

from datetime import date, datetime, time, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from enum import Enum
import hashlib
import json
import uuid


# =============================================================================
# Enums
# =============================================================================

class PassStatus(Enum):
    """
    Stored request states.

    pending -> approved_stage1 -> approved_stage2 -> approved_final
            -> active -> completed

    rejected, cancelled and expired are terminal side branches. "overdue"
    is never stored; it is derived from active + return time elapsed.
    """
    PENDING = "pending"
    APPROVED_STAGE1 = "approved_stage1"
    APPROVED_STAGE2 = "approved_stage2"
    APPROVED_FINAL = "approved_final"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class StudentCategory(Enum):
    """Residency category of a student."""
    DAY_SCHOLAR = "day_scholar"
    RESIDENT = "resident"


class PassCategory(Enum):
    """Kinds of pass a student may request."""
    OUTING = "outing"
    LEAVE = "leave"
    ON_DUTY = "on_duty"
    EMERGENCY = "emergency"
    PERMISSION = "permission"
    HOME_VISIT = "home_visit"
    PROJECT_WORK = "project_work"
    VACATION = "vacation"


class GateAction(Enum):
    """Physical scanning a policy requires at the gate."""
    NO_SCAN = "no_scan"
    EXIT_ONLY = "exit_only"
    SCAN_BOTH = "scan_both"
    INTERNAL_ONLY = "internal_only"


class HolidayBehavior(Enum):
    """How a policy treats departures on holidays and rest days."""
    BLOCK = "block"
    CUSTOM_WINDOW = "custom_window"
    UNRESTRICTED = "unrestricted"


class LogAction(Enum):
    """Gate events."""
    EXIT = "exit"
    ENTRY = "entry"


class ApprovalStage(Enum):
    """Sequential approval stages (mentor, department head, hostel)."""
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    STAGE3 = "stage3"


class ActorRole(Enum):
    """Roles recognised by the role-gated HTTP surface."""
    STUDENT = "student"
    MENTOR = "mentor"
    HOD = "hod"
    WARDEN = "warden"
    GATEKEEPER = "gatekeeper"
    ADMIN = "admin"


class GateStatus(Enum):
    """
    Momentary status derived by the gate verifier.

    None of these values are persisted.
    """
    GATE_NOT_REQUIRED = "gate_not_required"
    INTERNAL_ONLY = "internal_only"
    NOT_READY = "not_ready"
    READY = "ready"
    TOO_EARLY = "too_early"
    LATE_DEPARTURE = "late_departure"
    OUT = "out"
    OVERDUE = "overdue"
    COMPLETED = "completed"
    EXPIRED = "expired"
    USED = "used"


class LeaveStatus(Enum):
    """Approval state of a staff leave record."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# Adjuster id recorded for rule-driven trust changes
SYSTEM_ACTOR = "system"


# =============================================================================
# Helpers
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    """Parse an ISO string or datetime; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_time(value: Any) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value
    return time.fromisoformat(str(value))


def compute_audit_hash(record: Dict[str, Any]) -> str:
    """
    SHA-256 of the canonical JSON form of an audit record.

    Keys are sorted and separators are fixed so that the same record always
    hashes to the same value.
    """
    canonical = json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# PassRequest
# =============================================================================

@dataclass
class PassRequest:
    """
    One leave/outing attempt submitted by a student.

    ============================================================================
    FIELDS:
    ============================================================================
    - id: Request identifier (UUID string)
    - student_id: Requester
    - pass_category: PassCategory value
    - reason: Free-text reason
    - departure_at / return_at: Scheduled window (return auto-filled to end
      of the departure day when omitted)
    - status: PassStatus value
    - gate_action: GateAction value captured from the policy evaluation
    - forwarded_to: Manual approver override set by a department head
    - verification_token: Opaque token issued at final approval
    - verify_code: Short code shown to the gatekeeper alongside the token
    - decided_by / decision_reason: Last approval decision
    - cancelled_at: Set when the student cancels (feeds the cooldown rule)
    - correlation_id: Audit trail identifier
    ============================================================================

    Reliability Level: L6 Critical
    Side Effects: None (data container)
    """
    id: str
    student_id: str
    pass_category: str
    reason: str
    departure_at: datetime
    return_at: datetime
    status: str
    gate_action: str
    correlation_id: str
    created_at: datetime
    updated_at: datetime
    forwarded_to: Optional[str] = None
    verification_token: Optional[str] = None
    verify_code: Optional[str] = None
    decided_by: Optional[str] = None
    decision_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to JSON-compatible types."""
        return {
            "id": self.id,
            "student_id": self.student_id,
            "pass_category": self.pass_category,
            "reason": self.reason,
            "departure_at": _iso(self.departure_at),
            "return_at": _iso(self.return_at),
            "status": self.status,
            "gate_action": self.gate_action,
            "correlation_id": self.correlation_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "forwarded_to": self.forwarded_to,
            "verification_token": self.verification_token,
            "verify_code": self.verify_code,
            "decided_by": self.decided_by,
            "decision_reason": self.decision_reason,
            "cancelled_at": _iso(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PassRequest":
        """Build from a dict or SQL row mapping."""
        return cls(
            id=str(data["id"]),
            student_id=str(data["student_id"]),
            pass_category=data["pass_category"],
            reason=data.get("reason") or "",
            departure_at=_parse_dt(data["departure_at"]),
            return_at=_parse_dt(data["return_at"]),
            status=data["status"],
            gate_action=data["gate_action"],
            correlation_id=str(data.get("correlation_id") or ""),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            forwarded_to=data.get("forwarded_to"),
            verification_token=data.get("verification_token"),
            verify_code=data.get("verify_code"),
            decided_by=data.get("decided_by"),
            decision_reason=data.get("decision_reason"),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
        )


# =============================================================================
# Actors
# =============================================================================

@dataclass
class Student:
    """
    Student record as seen by the gate pass services.

    trust_score is bounded to 0..100. pass_blocked is an authority-level
    lockout independent of the score. cooldown_override_at marks the point
    after which cancellation history counts toward the cooldown rule.
    """
    student_id: str
    name: str
    category: str
    trust_score: int = 100
    pass_blocked: bool = False
    cooldown_override_at: Optional[datetime] = None
    mentor_id: Optional[str] = None
    department_id: Optional[str] = None
    residence_id: Optional[str] = None
    register_number: Optional[str] = None
    academic_year: Optional[int] = None
    is_active: bool = True

    @property
    def is_resident(self) -> bool:
        return self.category == StudentCategory.RESIDENT.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "name": self.name,
            "category": self.category,
            "trust_score": self.trust_score,
            "pass_blocked": self.pass_blocked,
            "cooldown_override_at": _iso(self.cooldown_override_at),
            "mentor_id": self.mentor_id,
            "department_id": self.department_id,
            "residence_id": self.residence_id,
            "register_number": self.register_number,
            "academic_year": self.academic_year,
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Student":
        return cls(
            student_id=str(data["student_id"]),
            name=data.get("name") or "",
            category=data["category"],
            trust_score=int(data.get("trust_score", 100)),
            pass_blocked=bool(data.get("pass_blocked", False)),
            cooldown_override_at=_parse_dt(data.get("cooldown_override_at")),
            mentor_id=data.get("mentor_id"),
            department_id=data.get("department_id"),
            residence_id=data.get("residence_id"),
            register_number=data.get("register_number"),
            academic_year=data.get("academic_year"),
            is_active=bool(data.get("is_active", True)),
        )


@dataclass
class StaffMember:
    """Mentor, department head, hostel authority, gatekeeper or admin."""
    actor_id: str
    role: str
    name: str = ""
    department_id: Optional[str] = None
    residence_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "role": self.role,
            "name": self.name,
            "department_id": self.department_id,
            "residence_id": self.residence_id,
        }


# =============================================================================
# Gate and approval audit records
# =============================================================================

@dataclass
class GateLog:
    """Append-only exit/entry event recorded by a gatekeeper."""
    id: str
    request_id: str
    action: str
    gatekeeper_id: str
    logged_at: datetime
    comments: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "action": self.action,
            "gatekeeper_id": self.gatekeeper_id,
            "logged_at": _iso(self.logged_at),
            "comments": self.comments,
        }


@dataclass
class StaffAction:
    """Audit row for an approval decision taken by a staff member."""
    id: str
    request_id: str
    actor_id: str
    action_type: str
    from_status: str
    to_status: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "action_type": self.action_type,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }


@dataclass
class TrustAdjustment:
    """Append-only audit row for a trust score change. Never mutated."""
    id: str
    student_id: str
    adjusted_by: str
    old_score: int
    new_score: int
    reason: str
    created_at: datetime
    row_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "adjusted_by": self.adjusted_by,
            "old_score": self.old_score,
            "new_score": self.new_score,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
            "row_hash": self.row_hash,
        }

    def hash_payload(self) -> Dict[str, Any]:
        payload = self.to_dict()
        payload.pop("row_hash")
        return payload


# =============================================================================
# Escalation inputs
# =============================================================================

@dataclass
class LeaveRecord:
    """A staff member's leave window, consulted at evaluation time only."""
    id: str
    actor_id: str
    starts_on: date
    ends_on: date
    status: str = LeaveStatus.APPROVED.value
    leave_type: str = ""
    reason: str = ""

    def covers(self, day: date) -> bool:
        return (
            self.status == LeaveStatus.APPROVED.value
            and self.starts_on <= day <= self.ends_on
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "starts_on": self.starts_on.isoformat(),
            "ends_on": self.ends_on.isoformat(),
            "status": self.status,
            "leave_type": self.leave_type,
            "reason": self.reason,
        }


@dataclass
class DelegationGrant:
    """
    Time-bounded grant letting delegate_id act with authority_id's full
    authority department-wide. At most one active grant per authority.
    """
    id: str
    authority_id: str
    delegate_id: str
    starts_on: date
    ends_on: date
    is_active: bool = True
    created_at: Optional[datetime] = None

    def is_effective(self, day: date) -> bool:
        return self.is_active and self.starts_on <= day <= self.ends_on

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "authority_id": self.authority_id,
            "delegate_id": self.delegate_id,
            "starts_on": self.starts_on.isoformat(),
            "ends_on": self.ends_on.isoformat(),
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
        }


# =============================================================================
# Policy configuration
# =============================================================================

@dataclass
class PassPolicy:
    """
    Policy row keyed by (student_category, pass_category).

    A missing working window means unrestricted hours. Windows whose start
    is after their end wrap past midnight.
    """
    student_category: str
    pass_category: str
    gate_action: str = GateAction.SCAN_BOTH.value
    working_start: Optional[time] = None
    working_end: Optional[time] = None
    holiday_behavior: str = HolidayBehavior.BLOCK.value
    holiday_start: Optional[time] = None
    holiday_end: Optional[time] = None
    max_duration_hours: Optional[int] = None
    policy_id: Optional[int] = None
    source: str = "table"

    @property
    def key(self) -> str:
        return f"{self.student_category}:{self.pass_category}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "student_category": self.student_category,
            "pass_category": self.pass_category,
            "gate_action": self.gate_action,
            "working_start": self.working_start.isoformat() if self.working_start else None,
            "working_end": self.working_end.isoformat() if self.working_end else None,
            "holiday_behavior": self.holiday_behavior,
            "holiday_start": self.holiday_start.isoformat() if self.holiday_start else None,
            "holiday_end": self.holiday_end.isoformat() if self.holiday_end else None,
            "max_duration_hours": self.max_duration_hours,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PassPolicy":
        max_hours = data.get("max_duration_hours")
        return cls(
            student_category=data["student_category"],
            pass_category=data["pass_category"],
            gate_action=data.get("gate_action") or GateAction.SCAN_BOTH.value,
            working_start=_parse_time(data.get("working_start")),
            working_end=_parse_time(data.get("working_end")),
            holiday_behavior=data.get("holiday_behavior") or HolidayBehavior.BLOCK.value,
            holiday_start=_parse_time(data.get("holiday_start")),
            holiday_end=_parse_time(data.get("holiday_end")),
            max_duration_hours=int(max_hours) if max_hours is not None else None,
            policy_id=data.get("policy_id"),
            source=data.get("source") or "table",
        )


@dataclass
class YearRestriction:
    """Department-wide block on one academic year."""
    department_id: str
    academic_year: int
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "department_id": self.department_id,
            "academic_year": self.academic_year,
            "reason": self.reason,
        }


@dataclass
class CalendarException:
    """A date flagged as a holiday in the academic calendar."""
    holiday_date: date
    title: str = ""
    kind: str = "holiday"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holiday_date": self.holiday_date.isoformat(),
            "title": self.title,
            "kind": self.kind,
        }


# =============================================================================
# Derived constants
# =============================================================================

TERMINAL_STATUSES: List[str] = [
    PassStatus.COMPLETED.value,
    PassStatus.REJECTED.value,
    PassStatus.CANCELLED.value,
    PassStatus.EXPIRED.value,
]

# Statuses a request can hold before it is physically used at the gate
PRE_EXIT_STATUSES: List[str] = [
    PassStatus.PENDING.value,
    PassStatus.APPROVED_STAGE1.value,
    PassStatus.APPROVED_STAGE2.value,
    PassStatus.APPROVED_FINAL.value,
]

# Approved statuses a pass can hold before its exit scan
APPROVED_STATUSES: List[str] = [
    PassStatus.APPROVED_STAGE1.value,
    PassStatus.APPROVED_STAGE2.value,
    PassStatus.APPROVED_FINAL.value,
]

# Gate actions that never produce a physical exit log
GATE_FREE_ACTIONS: List[str] = [
    GateAction.NO_SCAN.value,
    GateAction.INTERNAL_ONLY.value,
]


__all__ = [
    "PassStatus",
    "StudentCategory",
    "PassCategory",
    "GateAction",
    "HolidayBehavior",
    "LogAction",
    "ApprovalStage",
    "ActorRole",
    "GateStatus",
    "LeaveStatus",
    "SYSTEM_ACTOR",
    "PassRequest",
    "Student",
    "StaffMember",
    "GateLog",
    "StaffAction",
    "TrustAdjustment",
    "LeaveRecord",
    "DelegationGrant",
    "PassPolicy",
    "YearRestriction",
    "CalendarException",
    "TERMINAL_STATUSES",
    "PRE_EXIT_STATUSES",
    "APPROVED_STATUSES",
    "GATE_FREE_ACTIONS",
    "compute_audit_hash",
    "new_id",
]
