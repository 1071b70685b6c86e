# ============================================================================
# Campus Gate Pass
# Verification Token Module
# ============================================================================

from app.auth.security import (
    issue_verification_token,
    generate_verify_code,
    normalize_token,
    is_token_format,
    TokenSigningError,
)

__all__ = [
    "issue_verification_token",
    "generate_verify_code",
    "normalize_token",
    "is_token_format",
    "TokenSigningError",
]
