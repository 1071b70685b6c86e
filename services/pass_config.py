"""
============================================================================
Gate Pass Service - Configuration
============================================================================

Reliability Level: L6 Critical
Traceability: Configuration is logged on load

This module provides configuration management for the gate pass services:
- Environment variable parsing with type safety
- Default values for every policy threshold and buffer duration
- Validation of required configuration
- Fail-closed behavior on missing required config (CFG-040)

ENVIRONMENT VARIABLES:
    - GATEPASS_MAX_ADVANCE_DAYS: Furthest departure a request may book (default: 7)
    - GATEPASS_PAST_GRACE_MINUTES: Tolerated departure in the past (default: 15)
    - GATEPASS_MIN_TRUST_SCORE: Trust score required to request (default: 30)
    - GATEPASS_RESIDENT_VERIFY_MIN_TRUST: Trust required at hostel verify (default: 50)
    - GATEPASS_COOLDOWN_CANCEL_LIMIT: Cancellations that trigger cooldown (default: 3)
    - GATEPASS_COOLDOWN_WINDOW_HOURS: Rolling cooldown window (default: 24)
    - GATEPASS_MONTHLY_REQUEST_THRESHOLD: Nth monthly request that is penalised (default: 5)
    - GATEPASS_MONTHLY_EXCESS_PENALTY: Points deducted past the threshold (default: 5)
    - GATEPASS_STAGE2_CANCEL_PENALTY: Points for cancelling after stage 2 (default: 20)
    - GATEPASS_LATE_CANCEL_PENALTY: Points for cancelling a gate-ready pass (default: 30)
    - GATEPASS_EDIT_LOCK_HOURS: Edits refused this close to departure (default: 2)
    - GATEPASS_DEPARTURE_BUFFER_MINUTES: Late departure grace (default: 30)
    - GATEPASS_EMERGENCY_BUFFER_HOURS: Late departure grace for emergencies (default: 24)
    - GATEPASS_EARLY_DEPARTURE_HOURS: Early departure flag threshold (default: 2)
    - GATEPASS_NO_EXIT_EXPIRY_HOURS: Gate-ready passes never used expire after (default: 2)
    - GATEPASS_EXPIRY_INTERVAL_SECONDS: Expiry sweep interval (default: 300)
    - GATEPASS_EXPIRY_JITTER_SECONDS: Random jitter added per sweep (default: 30)
    - GATEPASS_REST_DAYS: Weekly rest days, comma-separated (default: SAT,SUN)
    - GATEPASS_CAMPUS_TIMEZONE: IANA zone for policy windows (default: UTC)
    - GATEPASS_TOKEN_SECRET: HMAC key for verification tokens (REQUIRED, >= 32 chars)
    - GATEPASS_NOTIFY_MAX_RETRIES: Notification delivery attempts (default: 3)
    - GATEPASS_NOTIFY_BASE_DELAY_SECONDS: First retry delay (default: 0.5)
    - GATEPASS_NOTIFY_WEBHOOK_URL: External notification service (optional)

ERROR CODES:
    - CFG-040: Required configuration missing or invalid

============================================================================
"""

from typing import Optional, List, Set, Dict, Any
from dataclasses import dataclass, field
import logging
import os

import pytz

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class GatePassConfigErrorCode:
    """Configuration-specific error codes for audit logging."""
    CONFIG_MISSING = "CFG-040"


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_MAX_ADVANCE_DAYS = 7
DEFAULT_PAST_GRACE_MINUTES = 15
DEFAULT_MIN_TRUST_SCORE = 30
DEFAULT_RESIDENT_VERIFY_MIN_TRUST = 50
DEFAULT_COOLDOWN_CANCEL_LIMIT = 3
DEFAULT_COOLDOWN_WINDOW_HOURS = 24
DEFAULT_MONTHLY_REQUEST_THRESHOLD = 5
DEFAULT_MONTHLY_EXCESS_PENALTY = 5
DEFAULT_STAGE2_CANCEL_PENALTY = 20
DEFAULT_LATE_CANCEL_PENALTY = 30
DEFAULT_EDIT_LOCK_HOURS = 2
DEFAULT_DEPARTURE_BUFFER_MINUTES = 30
DEFAULT_EMERGENCY_BUFFER_HOURS = 24
DEFAULT_EARLY_DEPARTURE_HOURS = 2
DEFAULT_NO_EXIT_EXPIRY_HOURS = 2
DEFAULT_EXPIRY_INTERVAL_SECONDS = 300
DEFAULT_EXPIRY_JITTER_SECONDS = 30
DEFAULT_REST_DAYS = "SAT,SUN"
DEFAULT_CAMPUS_TIMEZONE = "UTC"
DEFAULT_NOTIFY_MAX_RETRIES = 3
DEFAULT_NOTIFY_BASE_DELAY_SECONDS = 0.5

# Minimum HMAC key length for verification tokens
MIN_TOKEN_SECRET_LENGTH = 32

WEEKDAY_NAMES: Dict[str, int] = {
    "MON": 0, "TUE": 1, "WED": 2, "THU": 3, "FRI": 4, "SAT": 5, "SUN": 6,
}


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class GatePassConfigurationError(Exception):
    """
    Raised when gate pass configuration is invalid or missing.

    Raised during startup so a misconfigured service never accepts requests.
    """

    def __init__(self, message: str, error_code: str = GatePassConfigErrorCode.CONFIG_MISSING):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# Parsing Helpers
# =============================================================================

def parse_rest_days(value: str) -> Set[int]:
    """
    Parse "SAT,SUN" or "5,6" into a set of weekday numbers (Monday = 0).

    Raises:
        ValueError: If an entry is neither a weekday name nor 0..6
    """
    days: Set[int] = set()
    for raw in value.split(","):
        token = raw.strip().upper()
        if not token:
            continue
        if token[:3] in WEEKDAY_NAMES:
            days.add(WEEKDAY_NAMES[token[:3]])
        elif token.isdigit() and 0 <= int(token) <= 6:
            days.add(int(token))
        else:
            raise ValueError(f"Unrecognised weekday: {raw!r}")
    return days


def _read_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[GATEPASS-CONFIG] Invalid {name} value: {raw}, "
            f"using default: {default}"
        )
        return default


def _read_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(
            f"[GATEPASS-CONFIG] Invalid {name} value: {raw}, "
            f"using default: {default}"
        )
        return default


# =============================================================================
# GatePassConfig Class
# =============================================================================

@dataclass
class GatePassConfig:
    """
    Gate pass service configuration.

    Every threshold, penalty and buffer duration used by the lifecycle, the
    gate verifier and the expiry scheduler lives here so deployments can
    tune them without code changes.

    Reliability Level: L6 Critical
    Input Constraints: token_secret must be at least 32 characters
    Side Effects: Logs configuration on load
    """

    # Booking window
    max_advance_days: int = DEFAULT_MAX_ADVANCE_DAYS
    past_grace_minutes: int = DEFAULT_PAST_GRACE_MINUTES

    # Eligibility
    min_trust_score: int = DEFAULT_MIN_TRUST_SCORE
    resident_verify_min_trust: int = DEFAULT_RESIDENT_VERIFY_MIN_TRUST
    cooldown_cancel_limit: int = DEFAULT_COOLDOWN_CANCEL_LIMIT
    cooldown_window_hours: int = DEFAULT_COOLDOWN_WINDOW_HOURS

    # Trust penalties
    monthly_request_threshold: int = DEFAULT_MONTHLY_REQUEST_THRESHOLD
    monthly_excess_penalty: int = DEFAULT_MONTHLY_EXCESS_PENALTY
    stage2_cancel_penalty: int = DEFAULT_STAGE2_CANCEL_PENALTY
    late_cancel_penalty: int = DEFAULT_LATE_CANCEL_PENALTY

    # Edit and gate buffers
    edit_lock_hours: int = DEFAULT_EDIT_LOCK_HOURS
    departure_buffer_minutes: int = DEFAULT_DEPARTURE_BUFFER_MINUTES
    emergency_buffer_hours: int = DEFAULT_EMERGENCY_BUFFER_HOURS
    early_departure_hours: int = DEFAULT_EARLY_DEPARTURE_HOURS

    # Expiry scheduler
    no_exit_expiry_hours: int = DEFAULT_NO_EXIT_EXPIRY_HOURS
    expiry_interval_seconds: int = DEFAULT_EXPIRY_INTERVAL_SECONDS
    expiry_jitter_seconds: int = DEFAULT_EXPIRY_JITTER_SECONDS

    # Calendar
    rest_days: Set[int] = field(default_factory=lambda: parse_rest_days(DEFAULT_REST_DAYS))
    campus_timezone: str = DEFAULT_CAMPUS_TIMEZONE

    # Verification tokens
    token_secret: str = ""

    # Notification delivery
    notify_max_retries: int = DEFAULT_NOTIFY_MAX_RETRIES
    notify_base_delay_seconds: float = DEFAULT_NOTIFY_BASE_DELAY_SECONDS
    notify_webhook_url: Optional[str] = None

    @property
    def tz(self) -> pytz.BaseTzInfo:
        """Campus time zone used for policy hour windows and day boundaries."""
        return pytz.timezone(self.campus_timezone)

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            GatePassConfigurationError: If any value is missing or invalid
        """
        errors: List[str] = []

        positive_fields = [
            "max_advance_days",
            "min_trust_score",
            "cooldown_cancel_limit",
            "cooldown_window_hours",
            "monthly_request_threshold",
            "expiry_interval_seconds",
            "departure_buffer_minutes",
            "emergency_buffer_hours",
            "no_exit_expiry_hours",
        ]
        for name in positive_fields:
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive, got: {getattr(self, name)}")

        non_negative_fields = [
            "past_grace_minutes",
            "resident_verify_min_trust",
            "monthly_excess_penalty",
            "stage2_cancel_penalty",
            "late_cancel_penalty",
            "edit_lock_hours",
            "early_departure_hours",
            "expiry_jitter_seconds",
            "notify_max_retries",
        ]
        for name in non_negative_fields:
            if getattr(self, name) < 0:
                errors.append(f"{name} must be non-negative, got: {getattr(self, name)}")

        for score_field in ("min_trust_score", "resident_verify_min_trust"):
            if getattr(self, score_field) > 100:
                errors.append(f"{score_field} must be within 0..100")

        if any(day < 0 or day > 6 for day in self.rest_days):
            errors.append(f"rest_days must be weekday numbers 0..6, got: {sorted(self.rest_days)}")

        try:
            self.tz
        except pytz.UnknownTimeZoneError:
            errors.append(f"GATEPASS_CAMPUS_TIMEZONE is not a known zone: {self.campus_timezone}")

        if len(self.token_secret or "") < MIN_TOKEN_SECRET_LENGTH:
            errors.append(
                f"GATEPASS_TOKEN_SECRET must be set with at least "
                f"{MIN_TOKEN_SECRET_LENGTH} characters"
            )

        if errors:
            error_msg = "Gate pass configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{GatePassConfigErrorCode.CONFIG_MISSING}] {error_msg}")
            raise GatePassConfigurationError(error_msg)

        logger.info(
            f"[GATEPASS-CONFIG] Configuration validated | "
            f"max_advance_days={self.max_advance_days} | "
            f"min_trust_score={self.min_trust_score} | "
            f"cooldown={self.cooldown_cancel_limit}/{self.cooldown_window_hours}h | "
            f"campus_timezone={self.campus_timezone}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "GatePassConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading

        Returns:
            GatePassConfig with values from the environment

        Raises:
            GatePassConfigurationError: If required configuration is missing (CFG-040)
        """
        rest_days_str = os.environ.get("GATEPASS_REST_DAYS", DEFAULT_REST_DAYS)
        try:
            rest_days = parse_rest_days(rest_days_str)
        except ValueError:
            logger.warning(
                f"[GATEPASS-CONFIG] Invalid GATEPASS_REST_DAYS value: {rest_days_str}, "
                f"using default: {DEFAULT_REST_DAYS}"
            )
            rest_days = parse_rest_days(DEFAULT_REST_DAYS)

        webhook_url = os.environ.get("GATEPASS_NOTIFY_WEBHOOK_URL", "").strip() or None

        config = cls(
            max_advance_days=_read_int("GATEPASS_MAX_ADVANCE_DAYS", DEFAULT_MAX_ADVANCE_DAYS),
            past_grace_minutes=_read_int("GATEPASS_PAST_GRACE_MINUTES", DEFAULT_PAST_GRACE_MINUTES),
            min_trust_score=_read_int("GATEPASS_MIN_TRUST_SCORE", DEFAULT_MIN_TRUST_SCORE),
            resident_verify_min_trust=_read_int(
                "GATEPASS_RESIDENT_VERIFY_MIN_TRUST", DEFAULT_RESIDENT_VERIFY_MIN_TRUST
            ),
            cooldown_cancel_limit=_read_int(
                "GATEPASS_COOLDOWN_CANCEL_LIMIT", DEFAULT_COOLDOWN_CANCEL_LIMIT
            ),
            cooldown_window_hours=_read_int(
                "GATEPASS_COOLDOWN_WINDOW_HOURS", DEFAULT_COOLDOWN_WINDOW_HOURS
            ),
            monthly_request_threshold=_read_int(
                "GATEPASS_MONTHLY_REQUEST_THRESHOLD", DEFAULT_MONTHLY_REQUEST_THRESHOLD
            ),
            monthly_excess_penalty=_read_int(
                "GATEPASS_MONTHLY_EXCESS_PENALTY", DEFAULT_MONTHLY_EXCESS_PENALTY
            ),
            stage2_cancel_penalty=_read_int(
                "GATEPASS_STAGE2_CANCEL_PENALTY", DEFAULT_STAGE2_CANCEL_PENALTY
            ),
            late_cancel_penalty=_read_int("GATEPASS_LATE_CANCEL_PENALTY", DEFAULT_LATE_CANCEL_PENALTY),
            edit_lock_hours=_read_int("GATEPASS_EDIT_LOCK_HOURS", DEFAULT_EDIT_LOCK_HOURS),
            departure_buffer_minutes=_read_int(
                "GATEPASS_DEPARTURE_BUFFER_MINUTES", DEFAULT_DEPARTURE_BUFFER_MINUTES
            ),
            emergency_buffer_hours=_read_int(
                "GATEPASS_EMERGENCY_BUFFER_HOURS", DEFAULT_EMERGENCY_BUFFER_HOURS
            ),
            early_departure_hours=_read_int(
                "GATEPASS_EARLY_DEPARTURE_HOURS", DEFAULT_EARLY_DEPARTURE_HOURS
            ),
            no_exit_expiry_hours=_read_int(
                "GATEPASS_NO_EXIT_EXPIRY_HOURS", DEFAULT_NO_EXIT_EXPIRY_HOURS
            ),
            expiry_interval_seconds=_read_int(
                "GATEPASS_EXPIRY_INTERVAL_SECONDS", DEFAULT_EXPIRY_INTERVAL_SECONDS
            ),
            expiry_jitter_seconds=_read_int(
                "GATEPASS_EXPIRY_JITTER_SECONDS", DEFAULT_EXPIRY_JITTER_SECONDS
            ),
            rest_days=rest_days,
            campus_timezone=os.environ.get("GATEPASS_CAMPUS_TIMEZONE", DEFAULT_CAMPUS_TIMEZONE).strip(),
            token_secret=os.environ.get("GATEPASS_TOKEN_SECRET", ""),
            notify_max_retries=_read_int("GATEPASS_NOTIFY_MAX_RETRIES", DEFAULT_NOTIFY_MAX_RETRIES),
            notify_base_delay_seconds=_read_float(
                "GATEPASS_NOTIFY_BASE_DELAY_SECONDS", DEFAULT_NOTIFY_BASE_DELAY_SECONDS
            ),
            notify_webhook_url=webhook_url,
        )

        logger.info(
            f"[GATEPASS-CONFIG] Loading configuration from environment | "
            f"GATEPASS_CAMPUS_TIMEZONE={config.campus_timezone} | "
            f"GATEPASS_REST_DAYS={sorted(config.rest_days)} | "
            f"GATEPASS_EXPIRY_INTERVAL_SECONDS={config.expiry_interval_seconds} | "
            f"GATEPASS_TOKEN_SECRET_SET={bool(config.token_secret)} | "
            f"GATEPASS_NOTIFY_WEBHOOK={'set' if webhook_url else 'unset'}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Configuration as a dict, secrets redacted."""
        return {
            "max_advance_days": self.max_advance_days,
            "past_grace_minutes": self.past_grace_minutes,
            "min_trust_score": self.min_trust_score,
            "resident_verify_min_trust": self.resident_verify_min_trust,
            "cooldown_cancel_limit": self.cooldown_cancel_limit,
            "cooldown_window_hours": self.cooldown_window_hours,
            "monthly_request_threshold": self.monthly_request_threshold,
            "monthly_excess_penalty": self.monthly_excess_penalty,
            "stage2_cancel_penalty": self.stage2_cancel_penalty,
            "late_cancel_penalty": self.late_cancel_penalty,
            "edit_lock_hours": self.edit_lock_hours,
            "departure_buffer_minutes": self.departure_buffer_minutes,
            "emergency_buffer_hours": self.emergency_buffer_hours,
            "early_departure_hours": self.early_departure_hours,
            "no_exit_expiry_hours": self.no_exit_expiry_hours,
            "expiry_interval_seconds": self.expiry_interval_seconds,
            "expiry_jitter_seconds": self.expiry_jitter_seconds,
            "rest_days": sorted(self.rest_days),
            "campus_timezone": self.campus_timezone,
            "token_secret_set": bool(self.token_secret),
            "notify_max_retries": self.notify_max_retries,
            "notify_base_delay_seconds": self.notify_base_delay_seconds,
            "notify_webhook_url": self.notify_webhook_url,
        }


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[GatePassConfig] = None


def get_gatepass_config(validate: bool = True) -> GatePassConfig:
    """
    Get the global configuration, loading it from the environment on first use.

    Raises:
        GatePassConfigurationError: If required configuration is missing (CFG-040)
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = GatePassConfig.from_environment(validate=validate)

    return _config_instance


def reset_gatepass_config() -> None:
    """Reset the global configuration instance (for testing)."""
    global _config_instance
    _config_instance = None
    logger.debug("[GATEPASS-CONFIG] Configuration instance reset")


__all__ = [
    "GatePassConfig",
    "GatePassConfigErrorCode",
    "GatePassConfigurationError",
    "parse_rest_days",
    "get_gatepass_config",
    "reset_gatepass_config",
    "MIN_TOKEN_SECRET_LENGTH",
]
