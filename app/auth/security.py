"""
============================================================================
Campus Gate Pass - Verification Token Signing
============================================================================

Reliability Level: L6 Critical
Input Constraints: Request identifiers and a secret of at least 32 chars
Side Effects: None (pure signing)

A pass reaching final approval is issued:
- an opaque verification token: HMAC-SHA256 over the request identity,
  the issue time and a random nonce, rendered as 64 hex characters and
  encoded in the QR code shown at the gate
- a 5-digit verify code the gatekeeper reads back to the student

The token is looked up, not decoded: possession of a well-formed token
that matches a stored request is what the gate trusts. Signing with a
secret keeps tokens unguessable and lets a leaked database dump be
re-verified against the key.

Error Codes:
    SEC-002: Missing or invalid secret key
    SEC-004: Invalid token format

============================================================================
"""

import hmac
import hashlib
import os
import secrets
from datetime import datetime
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


# ============================================================================
# CONSTANTS
# ============================================================================

# Environment variable name for the signing key
SECRET_KEY_ENV_VAR = "GATEPASS_TOKEN_SECRET"

MIN_SECRET_LENGTH = 32

TOKEN_LENGTH = 64

HEX_CHARS = frozenset("0123456789abcdef")


# ============================================================================
# EXCEPTIONS
# ============================================================================

class TokenSigningError(Exception):
    """
    Raised when a verification token cannot be issued or is malformed.

    Error Codes:
        SEC-002: Missing or invalid secret key
        SEC-004: Invalid token format
    """

    def __init__(self, error_code: str, message: str):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# ============================================================================
# TOKEN SIGNING
# ============================================================================

def get_secret_key(secret_key: Optional[str] = None) -> str:
    """
    Return the signing key, falling back to GATEPASS_TOKEN_SECRET.

    Raises:
        TokenSigningError: If the key is missing or shorter than 32 chars (SEC-002)
    """
    if secret_key is None:
        secret_key = os.getenv(SECRET_KEY_ENV_VAR)

    if not secret_key:
        raise TokenSigningError(
            "SEC-002",
            f"{SECRET_KEY_ENV_VAR} is not set. "
            f"Verification tokens cannot be issued without a signing key."
        )

    if len(secret_key) < MIN_SECRET_LENGTH:
        raise TokenSigningError(
            "SEC-002",
            f"{SECRET_KEY_ENV_VAR} is too short ({len(secret_key)} chars). "
            f"Minimum {MIN_SECRET_LENGTH} characters required."
        )

    return secret_key


def compute_token_signature(payload: bytes, secret_key: str) -> str:
    """Hexadecimal HMAC-SHA256 of payload."""
    signature = hmac.new(
        key=secret_key.encode("utf-8"),
        msg=payload,
        digestmod=hashlib.sha256
    )
    return signature.hexdigest()


def issue_verification_token(
    request_id: str,
    student_id: str,
    issued_at: datetime,
    secret_key: Optional[str] = None
) -> str:
    """
    Issue the opaque token stored on a finally approved request.

    Returns:
        str: 64 lowercase hex characters

    Raises:
        TokenSigningError: If the signing key is unusable (SEC-002)
    """
    key = get_secret_key(secret_key)
    nonce = secrets.token_hex(16)
    payload = f"{request_id}|{student_id}|{issued_at.isoformat()}|{nonce}".encode("utf-8")
    return compute_token_signature(payload, key)


def generate_verify_code() -> str:
    """Random 5-digit code shown alongside the QR token."""
    return str(10000 + secrets.randbelow(90000))


def is_token_format(value: str) -> bool:
    """True if value looks like a verification token (64 hex chars)."""
    candidate = value.strip().lower()
    if len(candidate) != TOKEN_LENGTH:
        return False
    return all(c in HEX_CHARS for c in candidate)


def normalize_token(value: Optional[str]) -> str:
    """
    Validate and normalize a scanned token.

    Raises:
        TokenSigningError: If the value is not a well-formed token (SEC-004)
    """
    if not value or not is_token_format(value):
        raise TokenSigningError(
            "SEC-004",
            f"Invalid token format. Expected {TOKEN_LENGTH} hex characters."
        )
    return value.strip().lower()


def tokens_match(expected: Optional[str], provided: Optional[str]) -> bool:
    """Timing-safe comparison of two tokens."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.lower(), provided.strip().lower())


# ============================================================================
# END OF SECURITY MODULE
# ============================================================================
