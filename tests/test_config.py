"""
tests/test_config.py -- Settings validation and fail-closed lookups.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings, get_settings
from core.errors import Misconfiguration

KEY_A = "a" * 40
KEY_B = "b" * 40


def _settings(**overrides) -> Settings:
    values = {"debug": False, "secret_key": KEY_A, "jwt_secret": KEY_B}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_valid_production_settings() -> None:
    settings = _settings()
    assert settings.secret_key == KEY_A
    assert settings.session_ttl_seconds == 1800
    assert settings.otp_max_per_window == 5


@pytest.mark.parametrize("field", ["secret_key", "jwt_secret"])
def test_short_key_rejected(field) -> None:
    with pytest.raises(ValidationError, match="at least 32 characters"):
        _settings(**{field: "too-short"})


def test_equal_keys_rejected() -> None:
    with pytest.raises(ValidationError, match="must differ"):
        _settings(jwt_secret=KEY_A)


@pytest.mark.parametrize("field", ["secret_key", "jwt_secret"])
def test_missing_key_fails_in_production(field) -> None:
    with pytest.raises(ValidationError, match="required in production"):
        _settings(**{field: ""})


def test_debug_generates_distinct_keys() -> None:
    settings = _settings(debug=True, secret_key="", jwt_secret="")
    assert len(settings.secret_key) == 64
    assert len(settings.jwt_secret) == 64
    assert settings.secret_key != settings.jwt_secret


@pytest.mark.parametrize("value", ["", "   "])
def test_require_blank_is_misconfiguration(value) -> None:
    settings = _settings(admin_secret_code=value)
    with pytest.raises(Misconfiguration) as exc_info:
        settings.require("admin_secret_code")
    assert exc_info.value.status_code == 500
    assert exc_info.value.detail == "ADMIN_SECRET_CODE is not configured"
    assert "ADMIN_SECRET_CODE" not in exc_info.value.message


def test_require_returns_configured_value() -> None:
    assert _settings(admin_secret_code="s3cret").require("admin_secret_code") == "s3cret"


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
