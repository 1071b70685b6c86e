"""
============================================================================
Campus Gate Pass
Authority API Endpoints (Department Heads, Hostel Authorities, Admins)
============================================================================

Reliability Level: L6 Critical
Input Constraints: Bearer actor id of a staff member
Side Effects: Trust history rows, student flags, leave and delegation rows

ENDPOINTS:
    PUT    /authority/students/{id}/trust          - Manual trust score
    GET    /authority/students/{id}/trust-history  - Trust adjustments
    POST   /authority/students/{id}/cooldown-reset - Clear the cooldown
    PUT    /authority/students/{id}/pass-block     - Block/unblock requests
    PUT    /authority/year-restrictions            - Restrict a year
    DELETE /authority/year-restrictions/{dept}/{year}
    POST   /authority/leaves                       - Register staff leave
    POST   /authority/delegations                  - Grant delegation
    DELETE /authority/delegations                  - Revoke delegation

============================================================================
"""

import uuid
from typing import List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import (
    Actor,
    STAFF_ROLES,
    get_services,
    require_roles,
    ensure_student_authority,
    http_error,
    internal_error,
)
from app.schemas.gate_pass import (
    TrustOverrideIn,
    TrustScoreOut,
    PassBlockIn,
    YearRestrictionIn,
    LeaveIn,
    DelegationIn,
    CooldownResetOut,
)
from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError, AuthorizationError, NotFoundError
from services.pass_models import ActorRole, YearRestriction

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()

head_or_admin = require_roles(ActorRole.HOD.value, ActorRole.ADMIN.value)
authority_roles = require_roles(ActorRole.HOD.value, ActorRole.WARDEN.value, ActorRole.ADMIN.value)
any_staff = require_roles(*STAFF_ROLES)


# ============================================================================
# Students
# ============================================================================

@router.put("/students/{student_id}/trust", response_model=TrustScoreOut, summary="Set Trust Score")
def set_trust_score(
    student_id: str,
    body: TrustOverrideIn,
    actor: Actor = Depends(head_or_admin),
    services: GatePassServices = Depends(get_services),
) -> TrustScoreOut:
    correlation_id = str(uuid.uuid4())
    try:
        student = services.directory.require_student(student_id, correlation_id)
        ensure_student_authority(actor, student, correlation_id)
        score = services.trust_ledger.set_score(
            student_id,
            body.score,
            adjusted_by=actor.actor_id,
            reason=body.reason,
            correlation_id=correlation_id,
        )
        return TrustScoreOut(student_id=student_id, trust_score=score, correlation_id=correlation_id)
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


@router.get("/students/{student_id}/trust-history", summary="Trust History")
def trust_history(
    student_id: str,
    actor: Actor = Depends(authority_roles),
    services: GatePassServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    try:
        student = services.directory.require_student(student_id)
        ensure_student_authority(actor, student)
        return [a.to_dict() for a in services.trust_ledger.history(student_id)]
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.post("/students/{student_id}/cooldown-reset", response_model=CooldownResetOut, summary="Reset Cooldown")
def reset_cooldown(
    student_id: str,
    actor: Actor = Depends(authority_roles),
    services: GatePassServices = Depends(get_services),
) -> CooldownResetOut:
    correlation_id = str(uuid.uuid4())
    try:
        student = services.directory.require_student(student_id, correlation_id)
        ensure_student_authority(actor, student, correlation_id)
        override_at = services.trust_ledger.reset_cooldown(
            student_id, actor.actor_id, correlation_id=correlation_id
        )
        return CooldownResetOut(
            student_id=student_id, override_at=override_at, correlation_id=correlation_id
        )
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


@router.put("/students/{student_id}/pass-block", summary="Block/Unblock Pass Requests")
def set_pass_block(
    student_id: str,
    body: PassBlockIn,
    actor: Actor = Depends(authority_roles),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    try:
        student = services.directory.require_student(student_id, correlation_id)
        ensure_student_authority(actor, student, correlation_id)
        services.directory.set_pass_blocked(student_id, body.blocked)
        logger.info(
            f"[AUTHORITY-API] Pass block updated | "
            f"student_id={student_id} | "
            f"blocked={body.blocked} | "
            f"actor_id={actor.actor_id} | "
            f"reason={body.reason} | "
            f"correlation_id={correlation_id}"
        )
        return {"student_id": student_id, "pass_blocked": body.blocked, "correlation_id": correlation_id}
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


# ============================================================================
# Year restrictions
# ============================================================================

def _ensure_department(actor: Actor, department_id: str) -> None:
    if actor.is_admin:
        return
    if actor.staff is None or actor.staff.department_id != department_id:
        raise AuthorizationError("You can only restrict years of your own department")


@router.put("/year-restrictions", summary="Restrict Academic Year")
def set_year_restriction(
    body: YearRestrictionIn,
    actor: Actor = Depends(head_or_admin),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        _ensure_department(actor, body.department_id)
        restriction = services.directory.set_year_restriction(YearRestriction(
            department_id=body.department_id,
            academic_year=body.academic_year,
            reason=body.reason,
        ))
        logger.info(
            f"[AUTHORITY-API] Year restriction set | "
            f"department_id={body.department_id} | "
            f"academic_year={body.academic_year} | "
            f"actor_id={actor.actor_id}"
        )
        return restriction.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.delete("/year-restrictions/{department_id}/{academic_year}", summary="Lift Year Restriction")
def remove_year_restriction(
    department_id: str,
    academic_year: int,
    actor: Actor = Depends(head_or_admin),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        _ensure_department(actor, department_id)
        if services.directory.remove_year_restriction(department_id, academic_year) == 0:
            raise NotFoundError(f"No restriction for {department_id} year {academic_year}")
        return {"department_id": department_id, "academic_year": academic_year, "removed": True}
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


# ============================================================================
# Leave and delegation
# ============================================================================

@router.post("/leaves", status_code=201, summary="Register Staff Leave")
def register_leave(
    body: LeaveIn,
    actor: Actor = Depends(any_staff),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    target = body.actor_id or actor.actor_id
    try:
        if target != actor.actor_id and not actor.is_admin:
            raise AuthorizationError(
                "Only admins can register leave for other staff",
                correlation_id=correlation_id,
            )
        leave = services.resolver.register_leave(
            target,
            body.starts_on,
            body.ends_on,
            leave_type=body.leave_type,
            reason=body.reason,
            correlation_id=correlation_id,
        )
        return leave.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


@router.post("/delegations", status_code=201, summary="Grant Delegation")
def grant_delegation(
    body: DelegationIn,
    actor: Actor = Depends(authority_roles),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    """The caller delegates its own authority; the previous grant is deactivated."""
    correlation_id = str(uuid.uuid4())
    try:
        grant = services.resolver.grant_delegation(
            actor.actor_id,
            body.delegate_id,
            body.starts_on,
            body.ends_on,
            correlation_id=correlation_id,
        )
        return grant.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


@router.delete("/delegations", summary="Revoke Delegation")
def revoke_delegation(
    actor: Actor = Depends(authority_roles),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    try:
        revoked = services.resolver.revoke_delegation(actor.actor_id, correlation_id=correlation_id)
        return {"authority_id": actor.actor_id, "revoked": revoked, "correlation_id": correlation_id}
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e, correlation_id)
