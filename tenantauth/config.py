from __future__ import annotations

import os
import re
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tenantauth.logging import get_logger

logger = get_logger(__name__)

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the tenant authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors: generated secrets and in-memory ledger fallback.",
    )

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tenantauth", "JWT_ISSUER")
    jwt_audience: str = env_field("tenantauth-clients", "JWT_AUDIENCE")
    access_token_expires_in: str = env_field("1h", "JWT_ACCESS_TOKEN_EXPIRES_IN")
    refresh_token_expires_in: str = env_field("7d", "JWT_REFRESH_TOKEN_EXPIRES_IN")
    password_reset_token_expires_in: str = env_field(
        "30m", "PASSWORD_RESET_TOKEN_EXPIRES_IN"
    )

    # MFA
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="64 hex characters (32 bytes) used for AES-256-GCM secret encryption",
    )
    mfa_issuer: str = env_field("TenantAuth", "MFA_ISSUER")

    # SSO providers
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    microsoft_client_id: str | None = env_field(None, "MICROSOFT_CLIENT_ID")
    microsoft_client_secret: str | None = env_field(None, "MICROSOFT_CLIENT_SECRET")
    microsoft_redirect_uri: str | None = env_field(None, "MICROSOFT_REDIRECT_URI")
    microsoft_tenant_id: str | None = env_field(
        None,
        "MICROSOFT_TENANT_ID",
        description="Azure AD directory used in authorize/token URLs; 'common' when unset",
    )

    # Notification channels
    twilio_account_sid: str | None = env_field(None, "TWILIO_ACCOUNT_SID")
    twilio_auth_token: str | None = env_field(None, "TWILIO_AUTH_TOKEN")
    twilio_phone_number: str | None = env_field(None, "TWILIO_PHONE_NUMBER")
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM")
    email_from_name: str = env_field("TenantAuth", "EMAIL_FROM_NAME")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    otp_ttl_seconds: int = env_field(300, "OTP_TTL_SECONDS")

    # Outbound calls (IdPs, SMS, SMTP); no retries
    external_timeout_seconds: float = env_field(10.0, "EXTERNAL_TIMEOUT_SECONDS")

    # Throttling; a limit of 0 disables the check
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT")
    login_rate_window: str = env_field("15m", "LOGIN_RATE_WINDOW")
    reset_rate_limit: int = env_field(3, "RESET_RATE_LIMIT")
    reset_rate_window: str = env_field("1h", "RESET_RATE_WINDOW")

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

    @field_validator("mfa_encryption_key")
    @classmethod
    def _validate_mfa_key(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if not _HEX_KEY_RE.match(value):
            raise ValueError(
                "MFA_ENCRYPTION_KEY must be a 64 character hexadecimal key (32 bytes)"
            )
        return value.lower()

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET is required outside test mode")
            self.jwt_secret = secrets.token_urlsafe(64)
            logger.warning("jwt_secret_generated", reason="test_mode")
        elif len(self.jwt_secret) < 32 and not self.test_mode:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        if not self.mfa_encryption_key:
            if not self.test_mode:
                raise ValueError("MFA_ENCRYPTION_KEY is required outside test mode")
            self.mfa_encryption_key = secrets.token_hex(32)
            logger.warning("mfa_encryption_key_generated", reason="test_mode")
        return self


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
