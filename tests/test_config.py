"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from adminguard.config import IdentityProviderMode, Settings, get_settings, reset_settings_cache


def test_env_values_and_csv_lists(monkeypatch):
    monkeypatch.setenv("ADMIN_RATE_LIMIT", "5")
    monkeypatch.setenv("SEED_ADMIN_SUBJECTS", "admin-0000001, admin-0000002,,")
    monkeypatch.setenv("IDENTITY_PROVIDER", "remote")
    monkeypatch.setenv("EXPOSE_FIELD_ERRORS", "false")
    settings = Settings.from_env()
    assert settings.admin_rate_limit == 5
    assert settings.seed_admin_subjects == ["admin-0000001", "admin-0000002"]
    assert settings.identity_provider == IdentityProviderMode.REMOTE
    assert settings.expose_field_errors is False


def test_short_token_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(token_secret="too-short")


def test_missing_token_secret_generated():
    settings = Settings(token_secret=None)
    assert len(settings.token_secret) >= 32


@pytest.mark.parametrize("value", [-1, 6])
def test_retry_bounds(value):
    with pytest.raises(ValidationError):
        Settings(store_read_retries=value)


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("GENERAL_RATE_LIMIT", "7")
    first = get_settings()
    assert first.general_rate_limit == 7
    assert get_settings() is first
    reset_settings_cache()
    monkeypatch.setenv("GENERAL_RATE_LIMIT", "8")
    assert get_settings().general_rate_limit == 8
    reset_settings_cache()
