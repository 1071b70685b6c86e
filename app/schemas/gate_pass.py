"""
============================================================================
Campus Gate Pass
Gate Pass Schemas - Pydantic Models for the HTTP Surface
============================================================================

Reliability Level: L6 Critical
Input Constraints: Timestamps are ISO 8601; naive values are taken as UTC
Side Effects: None (pure validation)

Request bodies reject unknown fields. Domain rules (booking window,
policy, eligibility) are enforced by the services, not here, so that
every business refusal carries its VAL-/ELG-/GPS- code.

============================================================================
"""

from datetime import date, datetime, time
from enum import Enum
from typing import Optional, List, Dict, Any

from pydantic import (
    BaseModel,
    Field,
    field_validator,
    model_validator,
    ConfigDict,
)


# ============================================================================
# ENUMS
# ============================================================================

class DecisionStatus(str, Enum):
    """Decision submitted on the queue and warden endpoints."""
    APPROVED = "approved"
    REJECTED = "rejected"


class GateLogActionIn(str, Enum):
    EXIT = "exit"
    ENTRY = "entry"


# ============================================================================
# REQUESTS
# ============================================================================

class PassRequestIn(BaseModel):
    """
    Body of POST /requests and PUT /requests/{id}.

    return_at may be omitted; it defaults to the end of the departure day
    in the campus time zone.
    """

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "example": {
                "pass_category": "outing",
                "reason": "Medical appointment",
                "departure_at": "2026-10-20T10:00:00+00:00",
                "return_at": "2026-10-20T16:00:00+00:00",
            }
        }
    )

    pass_category: str = Field(..., min_length=1, max_length=32)
    reason: str = Field(..., min_length=1, max_length=500)
    departure_at: datetime
    return_at: Optional[datetime] = None

    @field_validator("pass_category", mode="before")
    @classmethod
    def normalize_category(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v


class ReviewIn(BaseModel):
    """Body of PUT /queue/{id}/status."""

    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    status: DecisionStatus
    reason: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def reason_required_for_rejection(self) -> "ReviewIn":
        if self.status == DecisionStatus.REJECTED.value and not (self.reason or "").strip():
            raise ValueError("[VAL-001] reason is required when rejecting")
        return self


class WardenVerifyIn(ReviewIn):
    """Body of PUT /wardens/{id}/verify."""

    override_low_trust: bool = False


class ForwardIn(BaseModel):
    """Body of POST /queue/forward."""

    model_config = ConfigDict(extra="forbid")

    request_ids: List[str] = Field(..., min_length=1)
    target_id: str = Field(..., min_length=1)


# ============================================================================
# GATE
# ============================================================================

class GateVerifyIn(BaseModel):
    """A scanned verification token or a typed register number."""

    model_config = ConfigDict(extra="forbid")

    identifier: str = Field(..., min_length=1, max_length=128)


class GateLogIn(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    request_id: str = Field(..., min_length=1)
    action: GateLogActionIn
    comments: str = Field(default="", max_length=500)


# ============================================================================
# AUTHORITY
# ============================================================================

class TrustOverrideIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    score: int = Field(..., ge=0, le=100)
    reason: str = Field(default="Manual adjustment", min_length=1, max_length=500)


class PassBlockIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    blocked: bool
    reason: Optional[str] = Field(default=None, max_length=500)


class YearRestrictionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    department_id: str = Field(..., min_length=1)
    academic_year: int = Field(..., ge=1, le=10)
    reason: str = Field(default="", max_length=500)


class LeaveIn(BaseModel):
    """Staff leave window. actor_id defaults to the caller."""

    model_config = ConfigDict(extra="forbid")

    actor_id: Optional[str] = None
    starts_on: date
    ends_on: date
    leave_type: str = Field(default="", max_length=64)
    reason: str = Field(default="", max_length=500)


class DelegationIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delegate_id: str = Field(..., min_length=1)
    starts_on: date
    ends_on: date


# ============================================================================
# POLICIES
# ============================================================================

class PolicyIn(BaseModel):
    """Policy row keyed by (student_category, pass_category)."""

    model_config = ConfigDict(extra="forbid")

    student_category: str = Field(..., pattern=r"^(day_scholar|resident)$")
    pass_category: str = Field(..., min_length=1, max_length=32)
    gate_action: str = Field(..., pattern=r"^(no_scan|exit_only|scan_both|internal_only)$")
    working_start: Optional[time] = None
    working_end: Optional[time] = None
    holiday_behavior: str = Field(default="block", pattern=r"^(block|custom_window|unrestricted)$")
    holiday_start: Optional[time] = None
    holiday_end: Optional[time] = None
    max_duration_hours: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def windows_complete(self) -> "PolicyIn":
        if (self.working_start is None) != (self.working_end is None):
            raise ValueError("[VAL-001] working_start and working_end must be set together")
        if self.holiday_behavior == "custom_window" and (
            self.holiday_start is None or self.holiday_end is None
        ):
            raise ValueError("[VAL-001] custom_window requires holiday_start and holiday_end")
        return self


class HolidayIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    holiday_date: date
    title: str = Field(default="", max_length=200)
    kind: str = Field(default="holiday", max_length=32)


# ============================================================================
# RESPONSES
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response model."""
    error_code: str
    message: str
    timestamp: str
    correlation_id: Optional[str] = None


class ForwardOut(BaseModel):
    forwarded: List[str]
    skipped: List[str]
    correlation_id: str


class CooldownResetOut(BaseModel):
    student_id: str
    override_at: datetime
    correlation_id: str


class TrustScoreOut(BaseModel):
    student_id: str
    trust_score: int
    correlation_id: str


class LiveBoardOut(BaseModel):
    ready: List[Dict[str, Any]]
    out: List[Dict[str, Any]]
    overdue: List[Dict[str, Any]]
    generated_at: datetime


# ============================================================================
# END OF GATE PASS SCHEMA
# ============================================================================
