import pytest
from pydantic import ValidationError

from tenantauth.config import Settings, get_settings, reset_settings_cache

SECRET = "x" * 40


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("MAX_FAILED_LOGINS", "7")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")
    monkeypatch.setenv("ROTATE_REFRESH_TOKENS", "true")
    settings = Settings.from_env()
    assert settings.max_failed_logins == 7
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.rotate_refresh_tokens is True


def test_defaults():
    settings = Settings(jwt_secret=SECRET)
    assert settings.jwt_access_expiry == "15m"
    assert settings.jwt_refresh_expiry == "7d"
    assert settings.lockout_minutes == 30
    assert settings.otp_max_attempts == 3
    assert settings.trial_days == 30
    assert settings.rotate_refresh_tokens is False


def test_previous_secrets_split():
    settings = Settings(jwt_secret=SECRET, jwt_previous_secrets="old-one,old-two")
    assert settings.jwt_previous_secrets == ["old-one", "old-two"]


def test_malformed_expiry_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, jwt_access_expiry="soon")


def test_short_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="short")


def test_missing_secret_outside_test_mode():
    with pytest.raises(ValidationError):
        Settings(test_mode=False)


def test_missing_secret_in_test_mode_is_generated():
    first = Settings(test_mode=True)
    second = Settings(test_mode=True)
    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret != second.jwt_secret


def test_otp_secret_falls_back_to_jwt_secret():
    assert Settings(jwt_secret=SECRET).otp_secret == SECRET
    assert Settings(jwt_secret=SECRET, otp_hash_secret="otp-key").otp_secret == "otp-key"


def test_lockout_threshold_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(jwt_secret=SECRET, max_failed_logins=0)


def test_get_settings_is_cached(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("TRIAL_DAYS", "14")
    reset_settings_cache()
    assert get_settings().trial_days == 14
    monkeypatch.delenv("TRIAL_DAYS")
    reset_settings_cache()
