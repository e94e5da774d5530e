from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from gallerycore.logging import get_logger

logger = get_logger(__name__)


class Tier(str, Enum):
    """Subscription tiers known to the quota table."""

    FREE = "free"
    PRO = "pro"


DEFAULT_TIER_LIMITS: Mapping[str, int] = MappingProxyType(
    {Tier.FREE.value: 100_000, Tier.PRO.value: 400_000}
)


@dataclass(frozen=True)
class QuotaPolicy:
    """Per-period token budget table.

    The unit is opaque cost; callers may meter any countable resource.
    """

    tier_limits: Mapping[str, int] = field(default_factory=lambda: DEFAULT_TIER_LIMITS)
    period: timedelta = timedelta(days=7)
    warning_ratio: float = 0.8
    default_tier: str = Tier.FREE.value

    def __post_init__(self) -> None:
        if self.period <= timedelta(0):
            raise ValueError("quota period must be positive")
        if not 0 < self.warning_ratio < 1:
            raise ValueError("warning_ratio must be between 0 and 1")
        if self.default_tier not in self.tier_limits:
            raise ValueError(f"default tier {self.default_tier!r} missing from tier table")
        if any(limit < 0 for limit in self.tier_limits.values()):
            raise ValueError("tier limits must be non-negative")
        # Private read-only copy of the table
        object.__setattr__(self, "tier_limits", MappingProxyType(dict(self.tier_limits)))

    def limit_for(self, tier: str | None) -> int:
        if tier and tier in self.tier_limits:
            return self.tier_limits[tier]
        return self.tier_limits[self.default_tier]


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(minutes=15)

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if self.duration <= timedelta(0):
            raise ValueError("lockout duration must be positive")


@dataclass(frozen=True)
class TokenPolicy:
    secret: str
    issuer: str = "gallerycore"
    audience: str = "gallery-clients"
    token_class: str = "gallery"
    access_ttl: timedelta = timedelta(minutes=15)
    refresh_ttl: timedelta = timedelta(days=7)
    # Allowance for small clock skew across nodes
    leeway: timedelta = timedelta(seconds=30)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the quota and token-lifecycle kernel."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gallery", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (ephemeral JWT secret, no Redis).",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("gallerycore", "JWT_ISSUER")
    jwt_audience: str = env_field("gallery-clients", "JWT_AUDIENCE")
    token_class: str = env_field(
        "gallery",
        "TOKEN_CLASS",
        description="Class marker embedded in access tokens; tokens of another class are rejected",
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    # Quota table
    free_tier_limit: int = env_field(100_000, "QUOTA_FREE_LIMIT", ge=0)
    pro_tier_limit: int = env_field(400_000, "QUOTA_PRO_LIMIT", ge=0)
    quota_period_days: int = env_field(7, "QUOTA_PERIOD_DAYS", gt=0)
    quota_warning_ratio: float = env_field(0.8, "QUOTA_WARNING_RATIO", gt=0, lt=1)
    # Login lockout
    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES", gt=0)
    # Scheduled quota sweep
    sweep_enabled: bool = env_field(True, "QUOTA_SWEEP_ENABLED")
    sweep_interval_seconds: int = env_field(3600, "QUOTA_SWEEP_INTERVAL_SECONDS", gt=0)
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gallery", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    # OAuth authorization-code exchange
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_github_client_id: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "OAUTH_GITHUB_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field_info in cls.model_fields.items():
            extra = field_info.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        if info.data.get("test_mode"):
            # Ephemeral secret: tokens do not survive a restart in test mode
            logger.warning("jwt_secret_generated_ephemeral")
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET is required outside TEST_MODE")

    def quota_policy(self) -> QuotaPolicy:
        return QuotaPolicy(
            tier_limits={
                Tier.FREE.value: self.free_tier_limit,
                Tier.PRO.value: self.pro_tier_limit,
            },
            period=timedelta(days=self.quota_period_days),
            warning_ratio=self.quota_warning_ratio,
        )

    def lockout_policy(self) -> LockoutPolicy:
        return LockoutPolicy(
            threshold=self.lockout_threshold,
            duration=timedelta(minutes=self.lockout_minutes),
        )

    def token_policy(self) -> TokenPolicy:
        return TokenPolicy(
            secret=self.jwt_secret or "",
            issuer=self.jwt_issuer,
            audience=self.jwt_audience,
            token_class=self.token_class,
            access_ttl=timedelta(minutes=self.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.refresh_token_ttl_minutes),
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
