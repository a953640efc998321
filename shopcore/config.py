from __future__ import annotations

import os
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from shopcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class Settings(BaseModel):
    """Process settings for the session and ledger services."""

    database_url: str = env_field(
        "postgresql://localhost:5432/shopcore", "DATABASE_URL"
    )
    database_connect_timeout: int = env_field(5, "DATABASE_CONNECT_TIMEOUT")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("shopcore", "JWT_ISSUER")
    jwt_audience: str = env_field("shop-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    token_leeway_seconds: int = env_field(
        30,
        "TOKEN_LEEWAY_SECONDS",
        description="Clock skew tolerated when checking token expiry",
    )

    # OTP challenge settings
    otp_ttl_seconds: int = env_field(600, "OTP_TTL_SECONDS")
    otp_cooldown_seconds: int = env_field(30, "OTP_COOLDOWN_SECONDS")
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS")
    otp_rate_limit_count: int = env_field(5, "OTP_RATE_LIMIT_COUNT")
    otp_rate_limit_window_seconds: int = env_field(900, "OTP_RATE_LIMIT_WINDOW_SECONDS")

    revocation_fail_open: bool = env_field(
        True,
        "REVOCATION_FAIL_OPEN",
        description=(
            "When the revocation cache is unreachable, treat tokens as not revoked. "
            "Set false to reject requests instead."
        ),
    )
    upstream_timeout_seconds: float = env_field(5.0, "UPSTREAM_TIMEOUT_SECONDS")
    upstream_retry_attempts: int = env_field(3, "UPSTREAM_RETRY_ATTEMPTS")
    ledger_cas_retries: int = env_field(5, "LEDGER_CAS_RETRIES")

    default_modules: List[str] = env_field(["shop"], "DEFAULT_MODULES")
    required_module: str = env_field("shop", "REQUIRED_MODULE")

    # External collaborators
    sms_provider_url: Optional[str] = env_field(None, "SMS_PROVIDER_URL")
    sms_auth_key: Optional[str] = env_field(None, "SMS_AUTH_KEY")
    sms_template_id: Optional[str] = env_field(None, "SMS_TEMPLATE_ID")
    partner_sync_url: Optional[str] = env_field(None, "PARTNER_SYNC_URL")
    partner_api_key: Optional[str] = env_field(None, "PARTNER_API_KEY")
    internal_secret: Optional[str] = env_field(
        None,
        "INTERNAL_SECRET",
        description="Shared secret for service-to-service wallet credits; unset disables the endpoint",
    )

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("default_modules", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_csv(value)

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # Cooperating services verify each other's tokens, so the key cannot be generated locally
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < 16:
            logger.warning("jwt_secret_short", length=len(value))
        return value

    @field_validator("otp_max_attempts", "otp_cooldown_seconds", "otp_ttl_seconds")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


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
