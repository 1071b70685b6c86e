"""
============================================================================
Campus Gate Pass
Pass Request API Endpoints (Students)
============================================================================

Reliability Level: L6 Critical
Input Constraints: Bearer actor id of a student (detail view also staff)
Side Effects: Request inserts and guarded transitions

ENDPOINTS:
    POST   /requests        - Submit a pass request
    GET    /requests        - The caller's requests
    GET    /requests/{id}   - Request with staff actions and gate logs
    PUT    /requests/{id}   - Edit a pending request
    DELETE /requests/{id}   - Cancel a request

ERROR CODES:
    VAL-001..VAL-005 (422), ELG-001..ELG-005 (403), GPS-030/031/033 (409),
    NF-001/NF-002 (404), AUTH-001 (401), AUTH-002 (403), SYS-500 (500)

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
    http_error,
    internal_error,
)
from app.schemas.gate_pass import PassRequestIn
from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError, AuthorizationError
from services.pass_models import ActorRole

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()

student_only = require_roles(ActorRole.STUDENT.value)
student_or_staff = require_roles(ActorRole.STUDENT.value, *STAFF_ROLES)


def _public(request_dict: Dict[str, Any], include_token: bool) -> Dict[str, Any]:
    if not include_token:
        request_dict.pop("verification_token", None)
        request_dict.pop("verify_code", None)
    return request_dict


@router.post(
    "",
    status_code=201,
    summary="Submit Pass Request",
    responses={
        201: {"description": "Request created at pending"},
        403: {"description": "Eligibility block (ELG-*)"},
        422: {"description": "Validation or policy rejection (VAL-*)"},
    },
)
def create_request(
    body: PassRequestIn,
    actor: Actor = Depends(student_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())

    logger.info(
        f"[REQUESTS-API] POST /requests | "
        f"student_id={actor.actor_id} | "
        f"pass_category={body.pass_category} | "
        f"correlation_id={correlation_id}"
    )

    try:
        request = services.lifecycle.create(
            student_id=actor.actor_id,
            pass_category=body.pass_category,
            reason=body.reason,
            departure_at=body.departure_at,
            return_at=body.return_at,
            correlation_id=correlation_id,
        )
        return request.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


@router.get("", summary="My Pass Requests")
def list_my_requests(
    actor: Actor = Depends(student_only),
    services: GatePassServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    try:
        return [r.to_dict() for r in services.lifecycle.list_for_student(actor.actor_id)]
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e)


@router.get("/{request_id}", summary="Pass Request Detail")
def get_request(
    request_id: str,
    actor: Actor = Depends(student_or_staff),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    """Students see their own requests (with token); staff see any, without token."""
    try:
        detail = services.lifecycle.get_detail(request_id)
        is_owner = detail.request.student_id == actor.actor_id
        if actor.role == ActorRole.STUDENT.value and not is_owner:
            raise AuthorizationError(
                "Students can only view their own requests",
                correlation_id=detail.request.correlation_id,
            )
        payload = detail.to_dict()
        payload["request"] = _public(payload["request"], include_token=is_owner)
        return payload
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.put("/{request_id}", summary="Edit Pending Request")
def edit_request(
    request_id: str,
    body: PassRequestIn,
    actor: Actor = Depends(student_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        f"[REQUESTS-API] PUT /requests/{request_id} | "
        f"student_id={actor.actor_id}"
    )
    try:
        request = services.lifecycle.edit(
            request_id=request_id,
            student_id=actor.actor_id,
            pass_category=body.pass_category,
            reason=body.reason,
            departure_at=body.departure_at,
            return_at=body.return_at,
        )
        return request.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.delete("/{request_id}", summary="Cancel Request")
def cancel_request(
    request_id: str,
    actor: Actor = Depends(student_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        f"[REQUESTS-API] DELETE /requests/{request_id} | "
        f"student_id={actor.actor_id}"
    )
    try:
        request = services.lifecycle.cancel(request_id=request_id, student_id=actor.actor_id)
        return request.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)
