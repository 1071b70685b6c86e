# ============================================================================
# Campus Gate Pass
# API Routes Module
# ============================================================================

from app.api.requests import router as requests_router
from app.api.queue import router as queue_router
from app.api.wardens import router as wardens_router
from app.api.gate import router as gate_router
from app.api.authority import router as authority_router
from app.api.policies import router as policies_router

__all__ = [
    "requests_router",
    "queue_router",
    "wardens_router",
    "gate_router",
    "authority_router",
    "policies_router",
]
