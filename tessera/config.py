from __future__ import annotations

import os
import uuid
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tessera.logging import get_logger

logger = get_logger(__name__)

# 256 bits
MIN_SIGNING_SECRET_BYTES = 32
DEFAULT_APP_ID = "00000000-0000-0000-0000-000000000001"


class ReplayPolicy(str, Enum):
    """What to do when an already-rotated refresh token is presented again.

    - REVOKE_FAMILY: treat it as theft and revoke every token descended from
      the same login, including the current legitimate one
    - REJECT: refuse only the replayed token
    """

    REVOKE_FAMILY = "revoke_family"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity and session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tessera", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tessera", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_hours: int = env_field(720, "REFRESH_TOKEN_TTL_HOURS")
    pending_auth_ttl_minutes: int = env_field(5, "PENDING_AUTH_TTL_MINUTES")
    refresh_replay_policy: ReplayPolicy = env_field(
        ReplayPolicy.REVOKE_FAMILY,
        "REFRESH_REPLAY_POLICY",
        description="revoke_family or reject",
    )
    # Two-factor
    two_factor_issuer: str = env_field("Tessera", "TWO_FACTOR_ISSUER")
    pending_two_factor_ttl_minutes: int = env_field(
        10, "PENDING_TWO_FACTOR_TTL_MINUTES"
    )
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    totp_drift_steps: int = env_field(1, "TOTP_DRIFT_STEPS")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_single_use: bool = env_field(
        True,
        "TOTP_SINGLE_USE",
        description="Reject a TOTP code whose time step was already accepted for the user",
    )
    mfa_max_attempts: int = env_field(5, "MFA_MAX_ATTEMPTS")
    mfa_lockout_seconds: int = env_field(300, "MFA_LOCKOUT_SECONDS")
    email_code_ttl_seconds: int = env_field(
        300,
        "EMAIL_CODE_TTL_SECONDS",
        description="Lifetime of a second-factor code delivered by email",
    )
    # Accounts and tenancy
    require_verified_email: bool = env_field(False, "REQUIRE_VERIFIED_EMAIL")
    default_app_id: str = env_field(DEFAULT_APP_ID, "DEFAULT_APP_ID")
    field_encryption_key: str | None = env_field(
        None,
        "FIELD_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets and provider tokens; defaults to JWT_SECRET",
    )
    # Deadlines (seconds)
    session_store_timeout_seconds: float = env_field(
        2.0, "SESSION_STORE_TIMEOUT_SECONDS"
    )
    datastore_timeout_seconds: float = env_field(5.0, "DATASTORE_TIMEOUT_SECONDS")
    oauth_timeout_seconds: float = env_field(10.0, "OAUTH_TIMEOUT_SECONDS")
    # OAuth settings (per-application configs override these)
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_facebook_client_id: str | None = env_field(None, "OAUTH_FACEBOOK_CLIENT_ID")
    oauth_facebook_client_secret: str | None = env_field(
        None, "OAUTH_FACEBOOK_CLIENT_SECRET"
    )
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET is required")
        if len(value.encode()) < MIN_SIGNING_SECRET_BYTES:
            logger.error(
                "jwt_secret_too_short",
                length=len(value.encode()),
                required=MIN_SIGNING_SECRET_BYTES,
            )
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SIGNING_SECRET_BYTES} bytes"
            )
        return value

    @field_validator("refresh_replay_policy")
    @classmethod
    def _validate_replay_policy(cls, value: ReplayPolicy) -> ReplayPolicy:
        return ReplayPolicy(value)

    @field_validator("default_app_id")
    @classmethod
    def _validate_default_app_id(cls, value: str) -> str:
        return str(uuid.UUID(str(value)))

    @field_validator("totp_drift_steps", "recovery_code_count")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    def oauth_credentials(self, provider: str) -> tuple[str | None, str | None]:
        return (
            getattr(self, f"oauth_{provider}_client_id", None),
            getattr(self, f"oauth_{provider}_client_secret", None),
        )


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
