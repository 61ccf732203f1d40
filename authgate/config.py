"""Application settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import AnyHttpUrl, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "authgate"}


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"]
    service: str = "authgate"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    frontend_url: AnyHttpUrl

    @property
    def default_redirect_url(self) -> str:
        """Landing page used when a login did not request a destination."""
        return f"{str(self.frontend_url).rstrip('/')}/dashboard"


class ProviderSettings(BaseModel):
    """OpenID Connect identity provider and OAuth client settings."""

    region: str = ""
    user_pool_id: str = ""
    issuer_url: AnyHttpUrl | None = None
    client_id: str = Field(min_length=1)
    client_secret: SecretStr
    redirect_uri: AnyHttpUrl
    scopes: list[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    domain: AnyHttpUrl | None = Field(
        default=None, description="Hosted UI base URL used for provider logout."
    )
    http_timeout_seconds: float = Field(default=10.0, gt=0)

    @field_validator("scopes")
    @classmethod
    def validate_openid_scope(cls, value: list[str]) -> list[str]:
        """Ensure the openid scope is always requested."""
        if "openid" not in value:
            raise ValueError("provider.scopes must include 'openid'.")
        return value

    @property
    def issuer(self) -> str:
        """Resolve the expected token issuer."""
        if self.issuer_url is not None:
            return str(self.issuer_url).rstrip("/")
        if not self.region or not self.user_pool_id:
            raise ValueError(
                "provider.issuer_url or both provider.region and provider.user_pool_id "
                "must be configured."
            )
        return f"https://cognito-idp.{self.region}.amazonaws.com/{self.user_pool_id}"


class StateSettings(BaseModel):
    """Encrypted OAuth state token settings."""

    encryption_key: SecretStr | None = None
    max_age_seconds: int = Field(default=300, ge=1)
    max_clock_skew_seconds: int = Field(default=60, ge=0)


class FlowSettings(BaseModel):
    """Authorization-code flow retry settings."""

    max_retry_attempts: int = Field(default=3, ge=0)
    retry_query_param: str = "oauth_retry"


class IdentitySettings(BaseModel):
    """Claims normalization and role resolution settings."""

    role_claim: str = "custom:role"
    fallback_role: str = Field(default="user", min_length=1)
    default_role_callable: str | None = Field(
        default=None,
        description="Import path 'package.module:function' computing a default role.",
    )


class FederationSettings(BaseModel):
    """Temporary cloud credential exchange settings."""

    role_arn: str | None = None
    session_name_prefix: str = "user-session"
    duration_seconds: int = Field(default=3600, ge=900, le=43200)
    cache_safety_buffer_seconds: int = Field(default=300, ge=0)
    cache_maxsize: int = Field(default=10000, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0)
    region: str | None = None


class CookieSettings(BaseModel):
    """Identity token cookie settings."""

    name: str = "jwt"
    domain: str | None = None


class Settings(BaseSettings):
    """Root application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings
    provider: ProviderSettings
    state: StateSettings = Field(default_factory=StateSettings)
    flow: FlowSettings = Field(default_factory=FlowSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)
    federation: FederationSettings = Field(default_factory=FederationSettings)
    cookie: CookieSettings = Field(default_factory=CookieSettings)


def _standard_log_fields(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Inject required structured logging fields."""
    context_vars = structlog.contextvars.get_contextvars()
    event_dict.setdefault("correlation_id", str(context_vars.get("correlation_id", "unknown")))
    event_dict.setdefault("environment", _LOG_CONTEXT["environment"])
    event_dict.setdefault("service", _LOG_CONTEXT["service"])
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def configure_structlog(settings: Settings) -> None:
    """Configure structlog for JSON output with required fields."""
    _LOG_CONTEXT["environment"] = settings.app.environment
    _LOG_CONTEXT["service"] = settings.app.service

    log_level = getattr(logging, settings.app.log_level, logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _standard_log_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Load and cache application settings from environment variables."""
    return Settings()
