"""Settings and logging configuration."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from guestsession.schemas.rate_limit import RateLimitPolicy

_LOG_CONTEXT: dict[str, str] = {"environment": "development", "service": "guest-session"}

_HOUR_MS = 60 * 60 * 1000
_MINUTE_MS = 60 * 1000


def _default_rate_limit_policies() -> dict[str, RateLimitPolicy]:
    """Return the built-in operation class table."""
    return {
        "qr_code": RateLimitPolicy(
            window_ms=_HOUR_MS,
            max_requests=10,
            block_duration_ms=_HOUR_MS,
            block_failure_threshold=10,
        ),
        "whatsapp": RateLimitPolicy(
            window_ms=24 * _HOUR_MS,
            max_requests=3,
            block_duration_ms=24 * _HOUR_MS,
            block_failure_threshold=5,
        ),
        "otp": RateLimitPolicy(
            window_ms=_HOUR_MS,
            max_requests=5,
            block_duration_ms=6 * _HOUR_MS,
            block_failure_threshold=5,
        ),
        "fingerprint": RateLimitPolicy(
            window_ms=_HOUR_MS,
            max_requests=100,
            block_duration_ms=2 * _HOUR_MS,
            skip_successful=True,
            block_failure_threshold=20,
        ),
        "session_creation": RateLimitPolicy(
            window_ms=_HOUR_MS,
            max_requests=30,
            block_duration_ms=_HOUR_MS,
            block_failure_threshold=10,
        ),
        "address_lookup": RateLimitPolicy(
            window_ms=15 * _MINUTE_MS,
            max_requests=60,
            block_duration_ms=30 * _MINUTE_MS,
            block_failure_threshold=20,
        ),
        "general": RateLimitPolicy(
            window_ms=15 * _MINUTE_MS,
            max_requests=50,
            block_duration_ms=30 * _MINUTE_MS,
            block_failure_threshold=15,
        ),
    }


class AppSettings(BaseModel):
    """Application identity and runtime settings."""

    environment: Literal["development", "staging", "production"] = "development"
    service: str = "guest-session"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class RedisSettings(BaseModel):
    """Redis connection and key layout settings."""

    url: str = Field(default="redis://localhost:6379/0", description="Redis URL.")
    session_key: str = "guestsession:sessions"
    change_channel: str = "guestsession:sessions:changed"
    key_prefix: str = "rate_limit"

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, value: str) -> str:
        """Ensure the Redis URL uses a supported scheme."""
        if not value.startswith(("redis://", "rediss://")):
            raise ValueError("redis.url must start with 'redis://' or 'rediss://'.")
        return value


class SessionSettings(BaseModel):
    """Session duration, capacity and cleanup policy."""

    table_duration_minutes: int = Field(default=240, ge=15)
    delivery_duration_minutes: int = Field(default=120, ge=15)
    activity_timeout_minutes: int = Field(default=30, ge=1)
    max_sessions_per_fingerprint: int = Field(default=3, ge=1)
    max_sessions_per_table: int = Field(default=10, ge=1)
    enable_auto_cleanup: bool = True
    cleanup_interval_minutes: int = Field(default=60, ge=1)
    cleanup_grace_minutes: int = Field(default=60, ge=0)
    max_session_duration_minutes: int = Field(default=480, ge=15)
    fingerprint_retention_hours: int = Field(default=24, ge=1)


class RateLimitSettings(BaseModel):
    """Per-operation-class rate limiting policies."""

    policies: dict[str, RateLimitPolicy] = Field(default_factory=_default_rate_limit_policies)
    attempt_retention_ms: int = Field(default=7 * 24 * _HOUR_MS, ge=1)
    max_attempts_retained: int = Field(default=100, ge=1)

    @field_validator("policies", mode="before")
    @classmethod
    def merge_default_policies(cls, value: Any) -> Any:
        """Overlay configured policies, field by field, on the built-in table."""
        if not isinstance(value, dict):
            return value
        merged: dict[str, Any] = {
            name: policy.model_dump() for name, policy in _default_rate_limit_policies().items()
        }
        for name, override in value.items():
            if isinstance(override, RateLimitPolicy):
                override = override.model_dump()
            if isinstance(override, dict):
                merged[name] = {**merged.get(name, {}), **override}
            else:
                merged[name] = override
        return merged


class Settings(BaseSettings):
    """Root settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)


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
    """Load and cache settings from environment variables."""
    return Settings()
