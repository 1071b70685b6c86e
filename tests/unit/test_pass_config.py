"""
============================================================================
Unit Tests - Gate Pass Configuration
============================================================================

Tests GatePassConfig loading and validation:
- Defaults for thresholds, penalties and buffers
- CFG-040 on a missing or short token secret
- Environment parsing, including invalid values falling back to defaults
- Rest-day parsing
============================================================================
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.pass_config import (
    GatePassConfig,
    GatePassConfigurationError,
    parse_rest_days,
    get_gatepass_config,
    reset_gatepass_config,
)


VALID_SECRET = "k" * 32


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch):
    for name in list(os.environ):
        if name.startswith("GATEPASS_"):
            monkeypatch.delenv(name, raising=False)
    reset_gatepass_config()
    yield
    reset_gatepass_config()


class TestDefaults:

    def test_default_thresholds(self) -> None:
        config = GatePassConfig()

        assert config.max_advance_days == 7
        assert config.min_trust_score == 30
        assert config.resident_verify_min_trust == 50
        assert config.cooldown_cancel_limit == 3
        assert config.cooldown_window_hours == 24
        assert config.monthly_request_threshold == 5
        assert config.stage2_cancel_penalty == 20
        assert config.late_cancel_penalty == 30
        assert config.rest_days == {5, 6}

    def test_to_dict_redacts_secret(self) -> None:
        config = GatePassConfig(token_secret=VALID_SECRET)

        data = config.to_dict()

        assert "token_secret" not in data
        assert data["token_secret_set"] is True
        assert data["rest_days"] == [5, 6]


class TestValidate:

    def test_missing_secret_fails_closed(self) -> None:
        with pytest.raises(GatePassConfigurationError) as exc_info:
            GatePassConfig().validate()

        assert exc_info.value.error_code == "CFG-040"
        assert "GATEPASS_TOKEN_SECRET" in exc_info.value.message

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(GatePassConfigurationError):
            GatePassConfig(token_secret="short").validate()

    def test_valid_config_passes(self) -> None:
        GatePassConfig(token_secret=VALID_SECRET).validate()

    def test_non_positive_interval_rejected(self) -> None:
        config = GatePassConfig(token_secret=VALID_SECRET, expiry_interval_seconds=0)

        with pytest.raises(GatePassConfigurationError) as exc_info:
            config.validate()

        assert "expiry_interval_seconds" in exc_info.value.message

    def test_unknown_timezone_rejected(self) -> None:
        config = GatePassConfig(token_secret=VALID_SECRET, campus_timezone="Mars/Olympus")

        with pytest.raises(GatePassConfigurationError) as exc_info:
            config.validate()

        assert "Mars/Olympus" in exc_info.value.message

    def test_trust_threshold_above_ceiling_rejected(self) -> None:
        config = GatePassConfig(token_secret=VALID_SECRET, min_trust_score=101)

        with pytest.raises(GatePassConfigurationError):
            config.validate()


class TestParseRestDays:

    def test_names(self) -> None:
        assert parse_rest_days("SAT,SUN") == {5, 6}

    def test_long_names_and_case(self) -> None:
        assert parse_rest_days("friday, saturday") == {4, 5}

    def test_numbers(self) -> None:
        assert parse_rest_days("0,6") == {0, 6}

    def test_empty_means_no_rest_days(self) -> None:
        assert parse_rest_days("") == set()

    def test_garbage_rejected(self) -> None:
        with pytest.raises(ValueError):
            parse_rest_days("SAT,HOLIDAY")


class TestFromEnvironment:

    def test_reads_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEPASS_TOKEN_SECRET", VALID_SECRET)
        monkeypatch.setenv("GATEPASS_MIN_TRUST_SCORE", "40")
        monkeypatch.setenv("GATEPASS_REST_DAYS", "FRI")
        monkeypatch.setenv("GATEPASS_CAMPUS_TIMEZONE", "Asia/Kolkata")
        monkeypatch.setenv("GATEPASS_NOTIFY_WEBHOOK_URL", "https://notify.example/hook")

        config = GatePassConfig.from_environment()

        assert config.min_trust_score == 40
        assert config.rest_days == {4}
        assert config.campus_timezone == "Asia/Kolkata"
        assert config.notify_webhook_url == "https://notify.example/hook"

    def test_invalid_integer_falls_back_to_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEPASS_TOKEN_SECRET", VALID_SECRET)
        monkeypatch.setenv("GATEPASS_MAX_ADVANCE_DAYS", "a week")

        config = GatePassConfig.from_environment()

        assert config.max_advance_days == 7

    def test_invalid_rest_days_fall_back_to_default(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEPASS_TOKEN_SECRET", VALID_SECRET)
        monkeypatch.setenv("GATEPASS_REST_DAYS", "weekends")

        config = GatePassConfig.from_environment()

        assert config.rest_days == {5, 6}

    def test_missing_secret_raises_on_load(self) -> None:
        with pytest.raises(GatePassConfigurationError):
            GatePassConfig.from_environment()

    def test_load_without_validation(self) -> None:
        config = GatePassConfig.from_environment(validate=False)

        assert config.token_secret == ""


class TestSingleton:

    def test_get_returns_same_instance(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEPASS_TOKEN_SECRET", VALID_SECRET)

        assert get_gatepass_config() is get_gatepass_config()

    def test_reset_reloads(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GATEPASS_TOKEN_SECRET", VALID_SECRET)
        first = get_gatepass_config()

        reset_gatepass_config()

        assert get_gatepass_config() is not first
