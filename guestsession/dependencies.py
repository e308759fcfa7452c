"""Cached factories wiring production components from settings."""

from __future__ import annotations

from functools import lru_cache

import redis.asyncio as redis_async
from redis.asyncio.client import Redis

from guestsession.config import get_settings
from guestsession.core.fingerprint import FingerprintGenerator
from guestsession.core.persistence import RedisSessionPersistence
from guestsession.core.rate_limit import RateLimiter
from guestsession.core.session_store import SessionStore
from guestsession.services.audit_service import AuditService
from guestsession.services.fingerprint_detection import FingerprintDetectionService
from guestsession.services.session_events import SessionEventBus
from guestsession.services.session_service import SessionService


@lru_cache
def get_redis_client() -> Redis:
    """Create and cache the shared Redis client."""
    settings = get_settings()
    return redis_async.from_url(settings.redis.url, decode_responses=True)


@lru_cache
def get_rate_limiter() -> RateLimiter:
    """Create and cache the rate limiter."""
    settings = get_settings()
    return RateLimiter(
        redis_client=get_redis_client(),
        policies=settings.rate_limit.policies,
        key_prefix=settings.redis.key_prefix,
        attempt_retention_ms=settings.rate_limit.attempt_retention_ms,
        max_attempts_retained=settings.rate_limit.max_attempts_retained,
    )


@lru_cache
def get_session_store() -> SessionStore:
    """Create and cache the Redis-backed session store."""
    settings = get_settings()
    persistence = RedisSessionPersistence(
        redis_client=get_redis_client(),
        key=settings.redis.session_key,
        change_channel=settings.redis.change_channel,
    )
    return SessionStore(persistence)


@lru_cache
def get_fingerprint_detection_service() -> FingerprintDetectionService:
    """Create and cache the fingerprint anomaly detector."""
    return FingerprintDetectionService(generator=FingerprintGenerator())


@lru_cache
def get_audit_service() -> AuditService:
    """Create and cache the audit listener."""
    return AuditService()


@lru_cache
def get_session_service() -> SessionService:
    """Create and cache the session service with auditing attached."""
    settings = get_settings()
    event_bus = SessionEventBus()
    get_audit_service().attach(event_bus)
    return SessionService(
        store=get_session_store(),
        settings=settings.session,
        fingerprint_validator=get_fingerprint_detection_service(),
        rate_limiter=get_rate_limiter(),
        event_bus=event_bus,
    )
