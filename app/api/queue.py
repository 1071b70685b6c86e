"""
============================================================================
Campus Gate Pass
Approval Queue API Endpoints (Mentors, Department Heads, Delegates)
============================================================================

Reliability Level: L6 Critical
Input Constraints: Bearer actor id of a staff member
Side Effects: Guarded transitions, staff action audit rows

ENDPOINTS:
    GET  /queue               - Items the caller may decide today
    PUT  /queue/{id}/status   - Stage 1 / stage 2 decision
    POST /queue/forward       - Route open items to another staff member

Stage authority (resolved mentor, department head, effective delegate,
forwarding target) is checked by the lifecycle, not by role.

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
from app.schemas.gate_pass import ReviewIn, ForwardIn, ForwardOut, DecisionStatus
from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError
from services.request_lifecycle import ReviewDecision

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()

staff_only = require_roles(*STAFF_ROLES)


def to_review_decision(status: str) -> ReviewDecision:
    if status == DecisionStatus.APPROVED.value:
        return ReviewDecision.APPROVE
    return ReviewDecision.REJECT


def _without_token(request_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_dict.pop("verification_token", None)
    request_dict.pop("verify_code", None)
    return request_dict


@router.get("", summary="Approval Queue")
def get_queue(
    actor: Actor = Depends(staff_only),
    services: GatePassServices = Depends(get_services),
) -> List[Dict[str, Any]]:
    try:
        return [_without_token(r.to_dict()) for r in services.lifecycle.queue(actor.actor_id)]
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e)


@router.put(
    "/{request_id}/status",
    summary="Stage 1/2 Decision",
    responses={
        403: {"description": "Not the stage authority (AUTH-002)"},
        409: {"description": "Request moved on (GPS-030/GPS-031)"},
    },
)
def review_request(
    request_id: str,
    body: ReviewIn,
    actor: Actor = Depends(staff_only),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        f"[QUEUE-API] PUT /queue/{request_id}/status | "
        f"actor_id={actor.actor_id} | "
        f"status={body.status}"
    )
    try:
        request = services.lifecycle.review(
            request_id=request_id,
            actor_id=actor.actor_id,
            decision=to_review_decision(body.status),
            reason=body.reason,
        )
        return _without_token(request.to_dict())
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.post("/forward", summary="Forward Requests", response_model=ForwardOut)
def forward_requests(
    body: ForwardIn,
    actor: Actor = Depends(staff_only),
    services: GatePassServices = Depends(get_services),
) -> ForwardOut:
    correlation_id = str(uuid.uuid4())
    logger.info(
        f"[QUEUE-API] POST /queue/forward | "
        f"actor_id={actor.actor_id} | "
        f"target_id={body.target_id} | "
        f"count={len(body.request_ids)} | "
        f"correlation_id={correlation_id}"
    )
    try:
        forwarded = services.lifecycle.forward(
            request_ids=body.request_ids,
            authority_id=actor.actor_id,
            target_id=body.target_id,
            correlation_id=correlation_id,
        )
        return ForwardOut(
            forwarded=forwarded,
            skipped=[r for r in body.request_ids if r not in forwarded],
            correlation_id=correlation_id,
        )
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)
