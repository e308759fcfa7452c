"""Redis-backed sliding-window rate limiting with escalating blocks."""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import AsyncIterator, Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

import structlog
from redis.exceptions import RedisError

from guestsession.schemas.rate_limit import (
    BlockedIdentifier,
    RateLimitAttempt,
    RateLimitPolicy,
    RateLimitResult,
    RateLimitStatistics,
)

logger = structlog.get_logger(__name__)

FAILURE_LOOKBACK = timedelta(minutes=15)
_DEFAULT_CLASS = "general"
_BLOCK_RECORD_GRACE_MS = 24 * 60 * 60 * 1000
_TOP_IDENTIFIERS = 10


class RateLimitRedis(Protocol):
    """Protocol for Redis operations used by the rate limiter."""

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        """Add one or more scored members to sorted set."""

    async def zrangebyscore(self, key: str, min: str | float, max: str | float) -> list[str]:
        """Return members with score inside an inclusive range."""

    async def zremrangebyscore(self, key: str, min: str | float, max: str | float) -> int:
        """Delete members with score inside an inclusive range."""

    async def zremrangebyrank(self, key: str, min: int, max: int) -> int:
        """Delete members by rank range."""

    async def pexpire(self, key: str, ttl_ms: int) -> bool:
        """Apply millisecond TTL to key."""

    async def get(self, key: str) -> str | None:
        """Return stored value for key."""

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        """Store value with optional millisecond TTL."""

    async def delete(self, *keys: str) -> int:
        """Delete keys."""

    def scan_iter(self, match: str | None = None) -> AsyncIterator[str]:
        """Iterate keys matching a glob pattern."""


def _epoch_ms(moment: datetime) -> int:
    """Convert an aware datetime to epoch milliseconds."""
    return int(moment.timestamp() * 1000)


class RateLimiter:
    """Track attempts per identifier and operation class and enforce budgets."""

    def __init__(
        self,
        redis_client: RateLimitRedis,
        policies: Mapping[str, RateLimitPolicy],
        key_prefix: str = "rate_limit",
        attempt_retention_ms: int = 7 * 24 * 60 * 60 * 1000,
        max_attempts_retained: int = 100,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._redis = redis_client
        self._policies = dict(policies)
        self._key_prefix = key_prefix
        self._attempt_retention_ms = attempt_retention_ms
        self._max_attempts_retained = max_attempts_retained
        self._now = now or (lambda: datetime.now(UTC))

    def policy_for(self, operation_class: str) -> RateLimitPolicy:
        """Resolve the policy of a class, defaulting to the general policy."""
        policy = self._policies.get(operation_class) or self._policies.get(_DEFAULT_CLASS)
        return policy or RateLimitPolicy()

    def register_policy(self, operation_class: str, policy: RateLimitPolicy) -> None:
        """Add or replace an operation class policy."""
        self._policies[operation_class] = policy

    async def check(self, identifier: str, operation_class: str) -> RateLimitResult:
        """Decide whether one more attempt is allowed right now."""
        now = self._now()
        policy = self.policy_for(operation_class)
        window = timedelta(milliseconds=policy.window_ms)

        try:
            block = await self._read_block(identifier, operation_class, now)
            if block is not None:
                return RateLimitResult(
                    allowed=False,
                    remaining=0,
                    reset_at=block.expires_at,
                    retry_after=max(math.ceil((block.expires_at - now).total_seconds()), 1),
                    reason=f"Temporarily blocked: {block.reason}",
                )

            lookback_start = min(now - window, now - FAILURE_LOOKBACK)
            attempts = await self._attempts_since(identifier, operation_class, lookback_start)
        except (RedisError, ValueError) as exc:
            logger.warning(
                "rate_limit_backend_unavailable",
                identifier=identifier,
                operation_class=operation_class,
                error=str(exc),
            )
            return RateLimitResult(
                allowed=True,
                remaining=max(policy.max_requests - 1, 0),
                reset_at=now + window,
                reason="Rate limiting temporarily unavailable.",
            )

        in_window = [attempt for attempt in attempts if attempt.timestamp >= now - window]
        request_count = len(self._counted(in_window, policy))
        reset_at = now + window

        if request_count >= policy.max_requests:
            if self._should_block(attempts, policy, now):
                await self.block(
                    identifier,
                    operation_class,
                    reason="Too many failed attempts.",
                )
            logger.info(
                "rate_limit_exceeded",
                identifier=identifier,
                operation_class=operation_class,
                request_count=request_count,
                max_requests=policy.max_requests,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=math.ceil(policy.window_ms / 1000),
                reason=(
                    f"Limit of {policy.max_requests} requests per "
                    f"{self._format_duration(policy.window_ms)} exceeded."
                ),
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(policy.max_requests - request_count - 1, 0),
            reset_at=reset_at,
        )

    async def record(
        self,
        identifier: str,
        operation_class: str,
        succeeded: bool,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append one attempt to the class log and prune old entries."""
        now = self._now()
        attempt = RateLimitAttempt(
            identifier=identifier,
            operation_class=operation_class,
            succeeded=succeeded,
            timestamp=now,
            metadata=metadata,
            nonce=uuid4().hex,
        )
        key = self._attempts_key(identifier, operation_class)
        now_ms = _epoch_ms(now)
        retention_ms = self._retention_ms(operation_class)

        try:
            await self._redis.zadd(key, {attempt.model_dump_json(): now_ms})
            await self._redis.zremrangebyrank(key, 0, -(self._max_attempts_retained + 1))
            await self._redis.zremrangebyscore(key, "-inf", now_ms - retention_ms)
            await self._redis.pexpire(key, retention_ms)
        except RedisError as exc:
            logger.warning(
                "rate_limit_record_failed",
                identifier=identifier,
                operation_class=operation_class,
                error=str(exc),
            )

    async def consume(
        self,
        identifier: str,
        operation_class: str,
        metadata: dict[str, Any] | None = None,
    ) -> RateLimitResult:
        """Check the budget and record a successful attempt when allowed."""
        result = await self.check(identifier, operation_class)
        if result.allowed:
            await self.record(identifier, operation_class, succeeded=True, metadata=metadata)
        return result

    async def get_block(self, identifier: str, operation_class: str) -> BlockedIdentifier | None:
        """Return the live block for an identifier, if any."""
        try:
            return await self._read_block(identifier, operation_class, self._now())
        except (RedisError, ValueError) as exc:
            logger.warning(
                "rate_limit_backend_unavailable",
                identifier=identifier,
                operation_class=operation_class,
                error=str(exc),
            )
            return None

    async def is_blocked(self, identifier: str, operation_class: str) -> bool:
        """Return True while a non-expired block exists."""
        return await self.get_block(identifier, operation_class) is not None

    async def block(
        self,
        identifier: str,
        operation_class: str,
        reason: str,
        duration_ms: int | None = None,
    ) -> BlockedIdentifier | None:
        """Block an identifier for the class block duration or an explicit one."""
        now = self._now()
        policy = self.policy_for(operation_class)
        effective_duration_ms = duration_ms or policy.block_duration_ms
        key = self._block_key(identifier, operation_class)

        try:
            attempt_count = len(
                await self._redis.zrangebyscore(
                    self._attempts_key(identifier, operation_class), "-inf", "+inf"
                )
            )
            blocked = BlockedIdentifier(
                identifier=identifier,
                operation_class=operation_class,
                reason=reason,
                blocked_at=now,
                expires_at=now + timedelta(milliseconds=effective_duration_ms),
                attempt_count_at_block=attempt_count,
            )
            await self._redis.set(
                key,
                blocked.model_dump_json(),
                px=effective_duration_ms + _BLOCK_RECORD_GRACE_MS,
            )
        except RedisError as exc:
            logger.error(
                "rate_limit_block_failed",
                identifier=identifier,
                operation_class=operation_class,
                error=str(exc),
            )
            return None

        logger.warning(
            "rate_limit_identifier_blocked",
            identifier=identifier,
            operation_class=operation_class,
            reason=reason,
            duration_seconds=effective_duration_ms // 1000,
            expires_at=blocked.expires_at.isoformat(),
        )
        return blocked

    async def unblock(self, identifier: str, operation_class: str) -> None:
        """Remove a block record."""
        try:
            await self._redis.delete(self._block_key(identifier, operation_class))
        except RedisError as exc:
            logger.error(
                "rate_limit_unblock_failed",
                identifier=identifier,
                operation_class=operation_class,
                error=str(exc),
            )
            return
        logger.info(
            "rate_limit_identifier_unblocked",
            identifier=identifier,
            operation_class=operation_class,
        )

    async def get_blocked(self, operation_class: str | None = None) -> list[BlockedIdentifier]:
        """List live blocks, removing expired ones along the way."""
        now = self._now()
        pattern = f"{self._key_prefix}:block:{operation_class or '*'}:*"
        blocked: list[BlockedIdentifier] = []
        try:
            async for key in self._redis.scan_iter(match=pattern):
                raw = await self._redis.get(key)
                if raw is None:
                    continue
                record = BlockedIdentifier.model_validate_json(raw)
                if record.expires_at <= now:
                    await self._redis.delete(key)
                    continue
                blocked.append(record)
        except (RedisError, ValueError) as exc:
            logger.warning(
                "rate_limit_backend_unavailable", operation="get_blocked", error=str(exc)
            )
        return blocked

    async def get_statistics(self, operation_class: str | None = None) -> RateLimitStatistics:
        """Summarize retained attempts and live blocks."""
        pattern = f"{self._key_prefix}:attempts:{operation_class or '*'}:*"
        attempts: list[RateLimitAttempt] = []
        try:
            async for key in self._redis.scan_iter(match=pattern):
                members = await self._redis.zrangebyscore(key, "-inf", "+inf")
                attempts.extend(RateLimitAttempt.model_validate_json(member) for member in members)
        except (RedisError, ValueError) as exc:
            logger.warning("rate_limit_backend_unavailable", operation="statistics", error=str(exc))
            return RateLimitStatistics()

        per_identifier = Counter(attempt.identifier for attempt in attempts)
        successful = sum(1 for attempt in attempts if attempt.succeeded)
        return RateLimitStatistics(
            total_attempts=len(attempts),
            successful_attempts=successful,
            failed_attempts=len(attempts) - successful,
            blocked_identifiers=len(await self.get_blocked(operation_class)),
            top_identifiers=per_identifier.most_common(_TOP_IDENTIFIERS),
        )

    async def cleanup(self) -> int:
        """Drop attempts past retention and expired blocks; return attempts removed."""
        now_ms = _epoch_ms(self._now())
        removed = 0
        try:
            async for key in self._redis.scan_iter(match=f"{self._key_prefix}:attempts:*"):
                operation_class = key.split(":")[len(self._key_prefix.split(":")) + 1]
                cutoff = now_ms - self._retention_ms(operation_class)
                removed += await self._redis.zremrangebyscore(key, "-inf", cutoff)
        except RedisError as exc:
            logger.warning("rate_limit_backend_unavailable", operation="cleanup", error=str(exc))
            return removed

        await self.get_blocked()
        logger.info("rate_limit_cleanup_completed", removed_attempts=removed)
        return removed

    async def _read_block(
        self, identifier: str, operation_class: str, now: datetime
    ) -> BlockedIdentifier | None:
        """Read a block record, lazily deleting it once expired."""
        key = self._block_key(identifier, operation_class)
        raw = await self._redis.get(key)
        if raw is None:
            return None
        block = BlockedIdentifier.model_validate_json(raw)
        if block.expires_at <= now:
            await self._redis.delete(key)
            logger.info(
                "rate_limit_block_expired",
                identifier=identifier,
                operation_class=operation_class,
            )
            return None
        return block

    async def _attempts_since(
        self, identifier: str, operation_class: str, start: datetime
    ) -> list[RateLimitAttempt]:
        """Load attempts recorded at or after start."""
        members = await self._redis.zrangebyscore(
            self._attempts_key(identifier, operation_class), _epoch_ms(start), "+inf"
        )
        return [RateLimitAttempt.model_validate_json(member) for member in members]

    @staticmethod
    def _counted(
        attempts: list[RateLimitAttempt], policy: RateLimitPolicy
    ) -> list[RateLimitAttempt]:
        """Apply skip flags to attempts inside the window."""
        if policy.skip_successful:
            return [attempt for attempt in attempts if not attempt.succeeded]
        if policy.skip_failed:
            return [attempt for attempt in attempts if attempt.succeeded]
        return attempts

    @staticmethod
    def _should_block(
        attempts: list[RateLimitAttempt], policy: RateLimitPolicy, now: datetime
    ) -> bool:
        """Escalate to a block when recent failures reach the class threshold."""
        recent_failures = [
            attempt
            for attempt in attempts
            if not attempt.succeeded and attempt.timestamp > now - FAILURE_LOOKBACK
        ]
        return len(recent_failures) >= policy.block_failure_threshold

    def _retention_ms(self, operation_class: str) -> int:
        """Return how long attempts of a class are kept."""
        policy = self.policy_for(operation_class)
        lookback_ms = int(FAILURE_LOOKBACK.total_seconds() * 1000)
        return max(self._attempt_retention_ms, policy.window_ms, lookback_ms)

    def _attempts_key(self, identifier: str, operation_class: str) -> str:
        """Build the sorted-set key holding attempts."""
        return f"{self._key_prefix}:attempts:{operation_class}:{identifier}"

    def _block_key(self, identifier: str, operation_class: str) -> str:
        """Build the key holding a block record."""
        return f"{self._key_prefix}:block:{operation_class}:{identifier}"

    @staticmethod
    def _format_duration(milliseconds: int) -> str:
        """Render a window length for user-facing messages."""
        seconds = milliseconds // 1000
        minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
        if days > 0:
            return f"{days} day(s)"
        if hours > 0:
            return f"{hours} hour(s)"
        if minutes > 0:
            return f"{minutes} minute(s)"
        return f"{seconds} second(s)"
