"""
============================================================================
Gate Pass Error Taxonomy
============================================================================

Reliability Level: L6 Critical

Every lifecycle, policy and gate violation is raised synchronously as a
GatePassError subclass carrying a machine-readable error code. The HTTP
layer maps each family to a status code:

    ValidationError      -> 422  (malformed or out-of-policy, user-correctable)
    StateConflictError   -> 409  (guarded update affected zero rows)
    AuthorizationError   -> 403  (actor lacks authority for the stage)
    EligibilityBlock     -> 403  (trust, cooldown, pass block, restriction)
    NotFoundError        -> 404  (unknown request or actor)
    PassSystemError      -> 500  (persistence/infrastructure failure)

Notification failures are never raised; they are logged by the event bus.

ERROR CODES:
    - VAL-001: Malformed input
    - VAL-002: Policy rejected the request
    - VAL-003: Departure outside the allowed booking window
    - VAL-004: Requester already has an open request
    - VAL-005: Edit lock window reached
    - GPS-030: Invalid state transition
    - GPS-031: Guarded update lost the race (stale state)
    - GPS-032: Duplicate or illegal gate action
    - GPS-033: Cancellation refused while physically out
    - AUTH-001: Missing or invalid credentials
    - AUTH-002: Actor lacks authority for the targeted stage
    - ELG-001..ELG-006: Eligibility blocks (see EligibilityCode)
    - NF-001: Request not found
    - NF-002: Actor not found
    - SYS-500: Persistence or infrastructure failure

============================================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any


# =============================================================================
# Error Codes
# =============================================================================

class PassErrorCode:
    """Gate pass error codes for audit logging and API responses."""
    VALIDATION_FAILED = "VAL-001"
    POLICY_REJECTED = "VAL-002"
    DEPARTURE_OUT_OF_RANGE = "VAL-003"
    OPEN_REQUEST_EXISTS = "VAL-004"
    EDIT_LOCKED = "VAL-005"
    INVALID_TRANSITION = "GPS-030"
    STATE_CONFLICT = "GPS-031"
    DUPLICATE_GATE_ACTION = "GPS-032"
    PHYSICALLY_OUT = "GPS-033"
    UNAUTHENTICATED = "AUTH-001"
    FORBIDDEN_STAGE = "AUTH-002"
    REQUEST_NOT_FOUND = "NF-001"
    ACTOR_NOT_FOUND = "NF-002"
    SYSTEM_FAILURE = "SYS-500"


class EligibilityCode:
    """Machine-readable block reasons carried by EligibilityBlock."""
    ACCOUNT_INACTIVE = "ELG-001"
    INDIVIDUAL_BLOCK = "ELG-002"
    YEAR_BLOCK = "ELG-003"
    TRUST_TOO_LOW = "ELG-004"
    COOLDOWN_ACTIVE = "ELG-005"
    RESIDENT_TRUST_GATE = "ELG-006"


class BlockSeverity(Enum):
    """Severity tag so clients can tell a warning from a critical block."""
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


# =============================================================================
# Exceptions
# =============================================================================

class GatePassError(Exception):
    """
    Base class for all gate pass errors.

    Args:
        message: Human-readable error message
        error_code: PassErrorCode / EligibilityCode value
        correlation_id: Audit trail identifier (optional)
    """

    http_status = 400

    def __init__(
        self,
        message: str,
        error_code: str = PassErrorCode.VALIDATION_FAILED,
        correlation_id: Optional[str] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.correlation_id = correlation_id
        super().__init__(f"[{error_code}] {message}")

    def to_detail(self) -> Dict[str, Any]:
        """Detail payload for HTTPException responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "correlation_id": self.correlation_id,
        }


class ValidationError(GatePassError):
    """Malformed or out-of-policy request; the caller can correct it."""
    http_status = 422


class StateConflictError(GatePassError):
    """The request is no longer in the expected state; re-fetch and retry."""
    http_status = 409

    def __init__(
        self,
        message: str,
        error_code: str = PassErrorCode.STATE_CONFLICT,
        correlation_id: Optional[str] = None,
        current_status: Optional[str] = None,
    ):
        self.current_status = current_status
        super().__init__(message, error_code, correlation_id)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["current_status"] = self.current_status
        return detail


class AuthorizationError(GatePassError):
    """The actor lacks authority for the targeted stage or resource."""
    http_status = 403

    def __init__(
        self,
        message: str,
        error_code: str = PassErrorCode.FORBIDDEN_STAGE,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message, error_code, correlation_id)


class EligibilityBlock(GatePassError):
    """
    The student is not eligible to request or receive a pass.

    Carries a severity tag alongside the block code.
    """
    http_status = 403

    def __init__(
        self,
        message: str,
        block_code: str,
        severity: BlockSeverity = BlockSeverity.HIGH,
        correlation_id: Optional[str] = None,
        retry_after: Optional[datetime] = None,
    ):
        self.block_code = block_code
        self.severity = severity
        self.retry_after = retry_after
        super().__init__(message, block_code, correlation_id)

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["block_code"] = self.block_code
        detail["severity"] = self.severity.value
        detail["retry_after"] = self.retry_after.isoformat() if self.retry_after else None
        return detail


class NotFoundError(GatePassError):
    """Unknown request or actor."""
    http_status = 404

    def __init__(
        self,
        message: str,
        error_code: str = PassErrorCode.REQUEST_NOT_FOUND,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message, error_code, correlation_id)


class PassSystemError(GatePassError):
    """Persistence or infrastructure failure."""
    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: str = PassErrorCode.SYSTEM_FAILURE,
        correlation_id: Optional[str] = None,
    ):
        super().__init__(message, error_code, correlation_id)


__all__ = [
    "PassErrorCode",
    "EligibilityCode",
    "BlockSeverity",
    "GatePassError",
    "ValidationError",
    "StateConflictError",
    "AuthorizationError",
    "EligibilityBlock",
    "NotFoundError",
    "PassSystemError",
]
