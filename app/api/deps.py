"""
============================================================================
Campus Gate Pass
API Dependencies - Authentication, Role Gating and Error Mapping
============================================================================

Reliability Level: L6 Critical
Input Constraints: Authorization: Bearer <actor_id>
Side Effects: None

Identity issuance is out of scope: the bearer value is the actor id, and
the actor's role is looked up in the directory (staff first, then
students). Every router converts GatePassError subclasses into
HTTPException with the standard detail dict:

    {"error_code", "message", "timestamp", "correlation_id"}

ERROR CODES:
    AUTH-001: Missing/invalid credentials or unknown actor (401)
    AUTH-002: Role not permitted for this endpoint (403)
    SYS-500: Unexpected failure (500)

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Callable

from fastapi import Depends, Header, HTTPException

from services.gatepass_services import GatePassServices
from services.pass_errors import GatePassError, PassErrorCode
from services.pass_models import ActorRole, Student, StaffMember

import logging

# Configure module logger
logger = logging.getLogger(__name__)


STAFF_ROLES = (
    ActorRole.MENTOR.value,
    ActorRole.HOD.value,
    ActorRole.WARDEN.value,
    ActorRole.GATEKEEPER.value,
    ActorRole.ADMIN.value,
)


@dataclass
class Actor:
    """Authenticated caller."""
    actor_id: str
    role: str
    staff: Optional[StaffMember] = None
    student: Optional[Student] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN.value


# ============================================================================
# Error Mapping
# ============================================================================

def _error(status_code: int, error_code: str, message: str, correlation_id: Optional[str] = None) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={
            "error_code": error_code,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
        }
    )


def http_error(exc: GatePassError) -> HTTPException:
    """HTTPException carrying a GatePassError's status and detail."""
    return HTTPException(status_code=exc.http_status, detail=exc.to_detail())


def internal_error(exc: Exception, correlation_id: Optional[str] = None) -> HTTPException:
    logger.error(
        f"[{PassErrorCode.SYSTEM_FAILURE}] Unexpected error | "
        f"error={str(exc)} | "
        f"correlation_id={correlation_id}"
    )
    return _error(
        500,
        PassErrorCode.SYSTEM_FAILURE,
        "Internal server error. This incident has been logged.",
        correlation_id,
    )


# ============================================================================
# Service Dependency
# ============================================================================

def get_services() -> GatePassServices:
    """
    The application's wired services.

    Raises:
        HTTPException: 503 when the application has not finished starting
    """
    from app.main import get_gatepass_services

    services = get_gatepass_services()
    if services is None:
        logger.error(f"[{PassErrorCode.SYSTEM_FAILURE}] Gate pass services not initialized")
        raise _error(503, PassErrorCode.SYSTEM_FAILURE, "Service is starting, retry shortly")
    return services


# ============================================================================
# Authentication Dependency
# ============================================================================

def get_current_actor_id(
    authorization: Optional[str] = Header(None, description="Bearer <actor_id>")
) -> str:
    """
    Extract the actor id from the Authorization header.

    Raises:
        HTTPException: 401 AUTH-001 if the header is missing or malformed
    """
    if not authorization:
        logger.warning(f"[{PassErrorCode.UNAUTHENTICATED}] Missing Authorization header")
        raise _error(
            401, PassErrorCode.UNAUTHENTICATED,
            "Authorization header required. Use: Bearer <actor_id>",
        )

    if not authorization.startswith("Bearer "):
        logger.warning(f"[{PassErrorCode.UNAUTHENTICATED}] Invalid authorization format")
        raise _error(
            401, PassErrorCode.UNAUTHENTICATED,
            "Invalid authorization format. Use: Bearer <actor_id>",
        )

    actor_id = authorization[7:].strip()
    if not actor_id:
        raise _error(401, PassErrorCode.UNAUTHENTICATED, "Empty actor ID in Bearer token")

    return actor_id


def get_actor(
    actor_id: str = Depends(get_current_actor_id),
    services: GatePassServices = Depends(get_services),
) -> Actor:
    """Resolve the caller's role from the directory."""
    staff = services.directory.get_staff(actor_id)
    if staff is not None:
        return Actor(actor_id=actor_id, role=staff.role, staff=staff)

    student = services.directory.get_student(actor_id)
    if student is not None:
        return Actor(actor_id=actor_id, role=ActorRole.STUDENT.value, student=student)

    logger.warning(f"[{PassErrorCode.UNAUTHENTICATED}] Unknown actor: {actor_id}")
    raise _error(401, PassErrorCode.UNAUTHENTICATED, f"Unknown actor '{actor_id}'")


def require_roles(*roles: str) -> Callable[..., Actor]:
    """
    Dependency factory admitting only the given roles.

    Usage:
        actor: Actor = Depends(require_roles("gatekeeper", "admin"))
    """
    def dependency(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in roles:
            logger.warning(
                f"[{PassErrorCode.FORBIDDEN_STAGE}] Role not permitted | "
                f"actor_id={actor.actor_id} | "
                f"role={actor.role} | "
                f"allowed={list(roles)}"
            )
            raise _error(
                403, PassErrorCode.FORBIDDEN_STAGE,
                f"Role '{actor.role}' may not perform this action",
            )
        return actor

    return dependency


def ensure_student_authority(actor: Actor, student: Student, correlation_id: Optional[str] = None) -> None:
    """
    Staff-over-student check for authority endpoints.

    Admins act on anyone; department heads on their department; hostel
    authorities on their residence.

    Raises:
        HTTPException: 403 AUTH-002 otherwise
    """
    if actor.is_admin:
        return
    staff = actor.staff
    if staff is not None:
        if staff.role == ActorRole.HOD.value and staff.department_id == student.department_id:
            return
        if staff.role == ActorRole.WARDEN.value and staff.residence_id == student.residence_id:
            return
    raise _error(
        403, PassErrorCode.FORBIDDEN_STAGE,
        "You have no authority over this student",
        correlation_id,
    )


__all__ = [
    "Actor",
    "STAFF_ROLES",
    "http_error",
    "internal_error",
    "get_services",
    "get_current_actor_id",
    "get_actor",
    "require_roles",
    "ensure_student_authority",
]
