from __future__ import annotations

import os
import secrets
from ipaddress import ip_network
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from identity_engine.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity engine and its HTTP adapter."""

    # Storage
    database_url: str = env_field(
        "postgresql://localhost:5432/identity_engine", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets and ephemeral secrets.",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Bearer tokens and sessions
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("identity-engine", "JWT_ISSUER")
    jwt_audience: str = env_field("identity-clients", "JWT_AUDIENCE")
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")

    # Password hashing (argon2id)
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")

    # Token lifetimes
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")
    email_verification_resend_cooldown_seconds: int = env_field(
        120, "EMAIL_VERIFICATION_RESEND_COOLDOWN_SECONDS"
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    pending_registration_ttl_days: int = env_field(7, "PENDING_REGISTRATION_TTL_DAYS")
    pending_registration_token_ttl_hours: int = env_field(
        24, "PENDING_REGISTRATION_TOKEN_TTL_HOURS"
    )

    # Retention and maintenance
    security_log_retention_days: int = env_field(90, "SECURITY_LOG_RETENTION_DAYS")
    rate_limit_retention_hours: int = env_field(24, "RATE_LIMIT_RETENTION_HOURS")
    maintenance_interval_seconds: int = env_field(3600, "MAINTENANCE_INTERVAL_SECONDS")
    rate_limit_overrides: dict[str, tuple[int, int, int]] = env_field(
        {},
        "RATE_LIMIT_OVERRIDES",
        description="endpoint=max/window_minutes/lockout_minutes pairs, comma separated",
    )

    # Policy
    require_verified_email_for_sensitive_actions: bool = env_field(
        False,
        "REQUIRE_VERIFIED_EMAIL_FOR_SENSITIVE_ACTIONS",
        description="Refuse password management and audit history for unverified accounts",
    )

    # Federated identity
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_tokeninfo_url: str = env_field(
        "https://oauth2.googleapis.com/tokeninfo", "OAUTH_GOOGLE_TOKENINFO_URL"
    )
    oauth_clock_skew_seconds: int = env_field(300, "OAUTH_CLOCK_SKEW_SECONDS")

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Quanby Task Manager", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:4200", "APP_BASE_URL")

    # HTTP adapter
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:4200"], "CORS_ALLOW_ORIGINS"
    )
    trusted_proxies: list[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peer addresses or CIDR ranges whose X-Forwarded-For header is honoured",
    )

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

    @field_validator("cors_allow_origins", "trusted_proxies", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("trusted_proxies")
    @classmethod
    def _check_proxy_networks(cls, value: list[str]) -> list[str]:
        for entry in value:
            try:
                ip_network(entry, strict=False)
            except ValueError:
                raise ValueError(f"invalid trusted proxy: {entry!r}") from None
        return value

    @field_validator("rate_limit_overrides", mode="before")
    @classmethod
    def _parse_rate_limit_overrides(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        parsed: dict[str, tuple[int, int, int]] = {}
        for item in value.split(","):
            item = item.strip()
            if not item:
                continue
            endpoint, _, limits = item.partition("=")
            parts = limits.split("/")
            if not endpoint or len(parts) != 3:
                raise ValueError(f"invalid rate limit override: {item!r}")
            max_attempts, window, lockout = (int(p) for p in parts)
            if max_attempts < 1 or window < 1 or lockout < 1:
                raise ValueError(f"rate limit override values must be positive: {item!r}")
            parsed[endpoint.strip()] = (max_attempts, window, lockout)
        return parsed

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        if info.data.get("test_mode"):
            # ephemeral secret; tokens do not survive a restart
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")


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
