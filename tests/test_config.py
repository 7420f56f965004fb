"""
tests/test_config.py -- Unit tests for Settings secret validation.

Settings is instantiated directly (not through get_settings()) so the cached
singleton the rest of the suite signs tokens with is never replaced.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

KEY_A = "a" * 32
KEY_B = "b" * 32


def test_debug_mode_generates_missing_secrets():
    settings = Settings(debug=True, secret_key="", refresh_secret_key="")
    assert len(settings.secret_key) >= 32
    assert len(settings.refresh_secret_key) >= 32
    assert settings.secret_key != settings.refresh_secret_key


def test_production_requires_secrets():
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(debug=False, secret_key="", refresh_secret_key=KEY_B)


def test_production_requires_refresh_secret():
    with pytest.raises(ValidationError, match="REFRESH_SECRET_KEY is required"):
        Settings(debug=False, secret_key=KEY_A, refresh_secret_key="")


def test_short_secret_is_rejected():
    with pytest.raises(ValidationError, match="at least 32 characters"):
        Settings(debug=False, secret_key="too-short", refresh_secret_key=KEY_B)


def test_secrets_must_differ():
    with pytest.raises(ValidationError, match="must be different"):
        Settings(debug=False, secret_key=KEY_A, refresh_secret_key=KEY_A)


@pytest.mark.parametrize("rounds", [3, 32])
def test_bcrypt_rounds_bounds(rounds):
    with pytest.raises(ValidationError, match="BCRYPT_ROUNDS"):
        Settings(debug=False, secret_key=KEY_A, refresh_secret_key=KEY_B, bcrypt_rounds=rounds)


def test_valid_production_settings():
    settings = Settings(debug=False, secret_key=KEY_A, refresh_secret_key=KEY_B)
    assert settings.access_token_expire_seconds == 15 * 60
    assert settings.refresh_token_expire_days == 30
