"""
============================================================================
Campus Gate Pass - Services Layer
============================================================================

Policy evaluation, trust accounting, approval routing, the request state
machine, gate verification and scheduled expiry.

Reliability Level: L6 Critical
============================================================================
"""

from services.pass_models import (
    PassStatus,
    StudentCategory,
    PassCategory,
    GateAction,
    GateStatus,
    PassRequest,
    Student,
    StaffMember,
    GateLog,
)

from services.pass_errors import (
    PassErrorCode,
    EligibilityCode,
    GatePassError,
    ValidationError,
    StateConflictError,
    AuthorizationError,
    EligibilityBlock,
    NotFoundError,
    PassSystemError,
)

from services.pass_config import (
    GatePassConfig,
    get_gatepass_config,
    reset_gatepass_config,
)

from services.policy_engine import (
    PolicyEngine,
    PolicyDecision,
)

from services.trust_ledger import (
    TrustLedger,
    CooldownStatus,
)

from services.escalation_resolver import (
    EscalationResolver,
    AuthorityResolution,
)

from services.request_lifecycle import (
    RequestLifecycle,
    ReviewDecision,
)

from services.gate_verifier import (
    GateVerifier,
    GateEvaluation,
)

from services.pass_expiry_worker import (
    PassExpiryWorker,
    ExpirySweepResult,
    get_pass_expiry_worker,
    reset_pass_expiry_worker,
)

from services.gatepass_services import (
    GatePassServices,
    create_gatepass_services,
)

__all__ = [
    # Models
    "PassStatus",
    "StudentCategory",
    "PassCategory",
    "GateAction",
    "GateStatus",
    "PassRequest",
    "Student",
    "StaffMember",
    "GateLog",
    # Errors
    "PassErrorCode",
    "EligibilityCode",
    "GatePassError",
    "ValidationError",
    "StateConflictError",
    "AuthorizationError",
    "EligibilityBlock",
    "NotFoundError",
    "PassSystemError",
    # Config
    "GatePassConfig",
    "get_gatepass_config",
    "reset_gatepass_config",
    # Components
    "PolicyEngine",
    "PolicyDecision",
    "TrustLedger",
    "CooldownStatus",
    "EscalationResolver",
    "AuthorityResolution",
    "RequestLifecycle",
    "ReviewDecision",
    "GateVerifier",
    "GateEvaluation",
    "PassExpiryWorker",
    "ExpirySweepResult",
    "get_pass_expiry_worker",
    "reset_pass_expiry_worker",
    "GatePassServices",
    "create_gatepass_services",
]
