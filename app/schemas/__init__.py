# ============================================================================
# Campus Gate Pass
# Pydantic Schemas - Data Validation Layer
# ============================================================================

from app.schemas.gate_pass import (
    DecisionStatus,
    PassRequestIn,
    ReviewIn,
    WardenVerifyIn,
    ForwardIn,
    GateVerifyIn,
    GateLogIn,
    ErrorResponse,
)

__all__ = [
    "DecisionStatus",
    "PassRequestIn",
    "ReviewIn",
    "WardenVerifyIn",
    "ForwardIn",
    "GateVerifyIn",
    "GateLogIn",
    "ErrorResponse",
]
