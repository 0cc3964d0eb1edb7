from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from tenantauth.logging import get_logger
from tenantauth.service.tokens import validate_expiry

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and access service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tenantauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_state_dir: str | None = env_field(
        None,
        "MEMORY_STATE_DIR",
        description="Directory for the in-memory store's JSON snapshot; unset keeps state in process only",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (ephemeral secrets, sync Redis client).",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    # Token issuance. test_mode must stay declared above jwt_secret so the
    # secret validator can see it.
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_previous_secrets: list[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Comma separated secrets still accepted for verification during key rotation",
    )
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    jwt_access_expiry: str = env_field(
        "15m", "JWT_ACCESS_EXPIRY", description="Access token lifetime, e.g. 15m"
    )
    jwt_refresh_expiry: str = env_field(
        "7d", "JWT_REFRESH_EXPIRY", description="Refresh token lifetime, e.g. 7d"
    )
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS")
    rotate_refresh_tokens: bool = env_field(
        False,
        "ROTATE_REFRESH_TOKENS",
        description="Issue a new refresh token and revoke the presented one on every refresh",
    )

    # Account lockout and password policy
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS", ge=1)
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", ge=1)
    password_history_limit: int = env_field(5, "PASSWORD_HISTORY_LIMIT", ge=1)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # One-time passcodes
    otp_expiry_minutes: int = env_field(10, "OTP_EXPIRY_MINUTES", ge=1)
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS", ge=1)
    otp_hash_secret: str | None = env_field(
        None, "OTP_HASH_SECRET", description="Key for OTP digests; defaults to JWT_SECRET"
    )
    otp_dev_log_codes: bool = env_field(
        False,
        "OTP_DEV_LOG_CODES",
        description="Include plaintext OTP codes in dev-mode delivery logs",
    )
    sms_gateway_url: str | None = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: str | None = env_field(None, "SMS_GATEWAY_TOKEN")
    sms_gateway_timeout_seconds: float = env_field(10.0, "SMS_GATEWAY_TIMEOUT_SECONDS")

    # Registration
    trial_days: int = env_field(30, "TRIAL_DAYS", ge=1)

    # Rate limits
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    otp_rate_limit_per_minute: int = env_field(1, "OTP_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_hour: int = env_field(5, "OTP_RATE_LIMIT_PER_HOUR")
    reset_rate_limit_per_hour: int = env_field(3, "RESET_RATE_LIMIT_PER_HOUR")
    register_rate_limit_per_hour: int = env_field(3, "REGISTER_RATE_LIMIT_PER_HOUR")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", "jwt_previous_secrets", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_access_expiry", "jwt_refresh_expiry")
    @classmethod
    def _validate_expiry(cls, value: str) -> str:
        return validate_expiry(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_SECRET_LENGTH} characters"
                )
            return value
        if info.data.get("test_mode"):
            logger.warning(
                "jwt_secret_generated",
                message="JWT_SECRET not set; using an ephemeral secret under TEST_MODE",
            )
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")

    @property
    def otp_secret(self) -> str:
        return self.otp_hash_secret or self.jwt_secret


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
