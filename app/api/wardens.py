"""
============================================================================
Campus Gate Pass
Hostel Verification API Endpoint (Stage 3)
============================================================================

Reliability Level: L6 Critical
Input Constraints: Bearer actor id of a staff member
Side Effects: Guarded transition, token issuance on approval

ENDPOINTS:
    PUT /wardens/{id}/verify - approved_stage2 -> approved_final | rejected

Approving a resident below the verification trust threshold returns
403 ELG-006 unless override_low_trust is set.

============================================================================
"""

from typing import Dict, Any

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import (
    Actor,
    STAFF_ROLES,
    get_services,
    require_roles,
    http_error,
    internal_error,
)
from app.api.queue import to_review_decision
from app.schemas.gate_pass import WardenVerifyIn
from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()


@router.put("/{request_id}/verify", summary="Hostel Verification")
def verify_request(
    request_id: str,
    body: WardenVerifyIn,
    actor: Actor = Depends(require_roles(*STAFF_ROLES)),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        f"[WARDENS-API] PUT /wardens/{request_id}/verify | "
        f"actor_id={actor.actor_id} | "
        f"status={body.status} | "
        f"override_low_trust={body.override_low_trust}"
    )
    try:
        request = services.lifecycle.verify(
            request_id=request_id,
            actor_id=actor.actor_id,
            decision=to_review_decision(body.status),
            reason=body.reason,
            override_low_trust=body.override_low_trust,
        )
        payload = request.to_dict()
        payload.pop("verification_token", None)
        payload.pop("verify_code", None)
        return payload
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)
