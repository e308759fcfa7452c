"""Rate limiting records and policy schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RateLimitPolicy(BaseModel):
    """Sliding-window and block policy for one operation class."""

    window_ms: int = Field(default=15 * 60 * 1000, ge=1)
    max_requests: int = Field(default=50, ge=1)
    block_duration_ms: int = Field(default=30 * 60 * 1000, ge=1)
    skip_successful: bool = False
    skip_failed: bool = False
    block_failure_threshold: int = Field(default=15, ge=1)

    @model_validator(mode="after")
    def validate_skip_flags(self) -> RateLimitPolicy:
        """Reject policies that would never count any attempt."""
        if self.skip_successful and self.skip_failed:
            raise ValueError("skip_successful and skip_failed cannot both be enabled.")
        return self


class RateLimitAttempt(BaseModel):
    """Append-only record of one rate-limited attempt."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    operation_class: str
    succeeded: bool
    timestamp: datetime
    metadata: dict[str, Any] | None = None
    nonce: str = ""


class BlockedIdentifier(BaseModel):
    """Temporary block placed on an identifier for one operation class."""

    identifier: str
    operation_class: str
    reason: str
    blocked_at: datetime
    expires_at: datetime
    attempt_count_at_block: int = Field(default=0, ge=0)


class RateLimitResult(BaseModel):
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int = Field(ge=0)
    reset_at: datetime
    retry_after: int | None = None
    reason: str | None = None


class RateLimitStatistics(BaseModel):
    """Aggregate attempt and block counters."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    blocked_identifiers: int = 0
    top_identifiers: list[tuple[str, int]] = Field(default_factory=list)
