"""
============================================================================
Campus Gate Pass
Policy and Calendar API Endpoints
============================================================================

Reliability Level: L5 High
Input Constraints: Reads by any staff member, writes by admins
Side Effects: pass_policies and holidays rows

ENDPOINTS:
    GET    /policies                                   - Configured rows
    PUT    /policies                                   - Upsert a row
    DELETE /policies/{student_category}/{pass_category}
    GET    /policies/holidays                          - Calendar exceptions
    POST   /policies/holidays                          - Add a holiday
    POST   /policies/evaluate                          - Dry-run evaluation

A pairing without a row falls back to the built-in defaults.

============================================================================
"""

from datetime import datetime
from typing import List, Dict, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import (
    Actor,
    STAFF_ROLES,
    get_services,
    require_roles,
    http_error,
    internal_error,
)
from app.schemas.gate_pass import PolicyIn, HolidayIn
from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError, NotFoundError
from services.pass_models import ActorRole, PassPolicy, CalendarException

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()

any_staff = require_roles(*STAFF_ROLES)
admin_only = require_roles(ActorRole.ADMIN.value)


@router.get("", summary="List Policies")
def list_policies(
    actor: Actor = Depends(any_staff),
    services: GatePassServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    try:
        return [p.to_dict() for p in services.directory.list_policies()]
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e)


@router.put("", summary="Upsert Policy")
def upsert_policy(
    body: PolicyIn,
    actor: Actor = Depends(admin_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        policy = services.directory.upsert_policy(PassPolicy(**body.model_dump()))
        logger.info(
            f"[POLICIES-API] Policy upserted | "
            f"key={policy.key} | "
            f"gate_action={policy.gate_action} | "
            f"actor_id={actor.actor_id}"
        )
        return policy.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.delete("/{student_category}/{pass_category}", summary="Delete Policy")
def delete_policy(
    student_category: str,
    pass_category: str,
    actor: Actor = Depends(admin_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        if services.directory.delete_policy(student_category, pass_category) == 0:
            raise NotFoundError(f"No policy for {student_category}:{pass_category}")
        return {"student_category": student_category, "pass_category": pass_category, "removed": True}
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.get("/holidays", summary="List Holidays")
def list_holidays(
    actor: Actor = Depends(any_staff),
    services: GatePassServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    try:
        return [h.to_dict() for h in services.directory.list_holidays()]
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e)


@router.post("/holidays", status_code=201, summary="Add Holiday")
def add_holiday(
    body: HolidayIn,
    actor: Actor = Depends(admin_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        holiday = services.directory.add_holiday(CalendarException(
            holiday_date=body.holiday_date, title=body.title, kind=body.kind
        ))
        return holiday.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.post("/evaluate", summary="Evaluate Policy")
def evaluate_policy(
    student_category: str = Query(...),
    pass_category: str = Query(...),
    departure_at: datetime = Query(...),
    duration_hours: Optional[float] = Query(default=None, gt=0),
    actor: Actor = Depends(any_staff),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        decision = services.policy_engine.evaluate(
            student_category, pass_category, departure_at, duration_hours
        )
        return decision.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e)
