from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core and its HTTP surface."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (no SMTP, no login delays)",
    )
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token TTL; remembered sessions use remember_me_ttl_days",
    )
    # Session lifetimes
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    remember_me_ttl_days: int = env_field(30, "REMEMBER_ME_TTL_DAYS")
    # Brute force protection
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    progressive_delay_enabled: bool = env_field(
        True,
        "PROGRESSIVE_DELAY_ENABLED",
        description="Sleep before answering logins for accounts with repeated failures",
    )
    # MFA
    mfa_challenge_ttl_minutes: int = env_field(5, "MFA_CHALLENGE_TTL_MINUTES")
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS")
    backup_code_count: int = env_field(8, "MFA_BACKUP_CODE_COUNT")
    mfa_issuer_name: str = env_field("AuthCore", "MFA_ISSUER_NAME")
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )
    # Account recovery
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    security_log_retention_days: int = env_field(90, "SECURITY_LOG_RETENTION_DAYS")
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("jwt_secret", "mfa_encryption_key")
    @classmethod
    def _strip_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_hours",
        "remember_me_ttl_days",
        "max_failed_attempts",
        "mfa_challenge_ttl_minutes",
        "trusted_device_ttl_days",
        "backup_code_count",
        "password_reset_ttl_minutes",
        "email_verification_ttl_hours",
        "security_log_retention_days",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if not _settings_cache.jwt_secret:
            logger.warning(
                "jwt_secret_missing",
                message="JWT_SECRET is not set; token issuance will fail until it is",
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
