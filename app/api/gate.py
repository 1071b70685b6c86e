"""
============================================================================
Campus Gate Pass
Gate Checkpoint API Endpoints (Gatekeepers)
============================================================================

Reliability Level: L6 Critical
Input Constraints: Bearer actor id of a gatekeeper or admin
Side Effects: Gate log inserts and guarded transitions

ENDPOINTS:
    POST /gate/verify      - Look up a pass by token or register number
    POST /gate/log-action  - Record an exit or entry
    GET  /gate/live        - Ready / out / overdue board

ERROR CODES:
    GPS-032: Duplicate gate action (409)
    GPS-030: Action not allowed in the current gate status (409)
    NF-001: No pass found (404)

============================================================================
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, Any

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import (
    Actor,
    get_services,
    require_roles,
    http_error,
    internal_error,
)
from app.schemas.gate_pass import GateVerifyIn, GateLogIn, LiveBoardOut
from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError
from services.pass_models import ActorRole

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()

gate_staff = require_roles(ActorRole.GATEKEEPER.value, ActorRole.ADMIN.value)


@router.post("/verify", summary="Verify Pass")
def verify_pass(
    body: GateVerifyIn,
    actor: Actor = Depends(gate_staff),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    try:
        return services.gate.verify(body.identifier, correlation_id=correlation_id).to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e, correlation_id)


@router.post(
    "/log-action",
    summary="Log Exit/Entry",
    responses={409: {"description": "Duplicate or disallowed action (GPS-032/GPS-030)"}},
)
def log_action(
    body: GateLogIn,
    actor: Actor = Depends(gate_staff),
    services: GatePassServices = Depends(get_services),
) -> Dict[str, Any]:
    logger.info(
        f"[GATE-API] POST /gate/log-action | "
        f"gatekeeper_id={actor.actor_id} | "
        f"request_id={body.request_id} | "
        f"action={body.action}"
    )
    try:
        result = services.gate.log_action(
            request_id=body.request_id,
            action=body.action,
            gatekeeper_id=actor.actor_id,
            comments=body.comments,
        )
        return result.to_dict()
    except GatePassError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        raise internal_error(e)


@router.get("/live", summary="Live Gate Board", response_model=LiveBoardOut)
def live_board(
    actor: Actor = Depends(gate_staff),
    services: GatePassServices = Depends(get_services),
) -> LiveBoardOut:
    now = datetime.now(timezone.utc)
    try:
        board = services.gate.live_board(now)
        return LiveBoardOut(generated_at=now, **board)
    except GatePassError as e:
        raise http_error(e)
    except Exception as e:
        raise internal_error(e)
