"""Integration tests for the Redis-backed limiter and session persistence."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import timedelta

from redis.asyncio.client import Redis

from guestsession.config import RateLimitSettings, SessionSettings
from guestsession.core.persistence import RedisSessionPersistence
from guestsession.core.rate_limit import RateLimiter
from guestsession.core.session_store import SessionStore
from guestsession.schemas.session import SessionContext
from guestsession.services.session_service import SessionService

SESSION_KEY = "guestsession:test:sessions"
CHANNEL = "guestsession:test:changed"


def _persistence(redis_client: Redis) -> RedisSessionPersistence:
    return RedisSessionPersistence(redis_client, key=SESSION_KEY, change_channel=CHANNEL)


async def test_rate_limiter_enforces_budget_against_real_redis(redis_client: Redis) -> None:
    """The sorted-set window counts down and denies the fourth verification."""
    limiter = RateLimiter(redis_client, RateLimitSettings().policies)

    remaining = [(await limiter.consume("ip1", "whatsapp")).remaining for _ in range(3)]
    denied = await limiter.check("ip1", "whatsapp")

    assert remaining == [2, 1, 0]
    assert not denied.allowed
    assert await redis_client.pttl("rate_limit:attempts:whatsapp:ip1") > 0


async def test_block_records_expire_in_redis(redis_client: Redis) -> None:
    """Block keys carry a TTL and can be listed and removed."""
    limiter = RateLimiter(redis_client, RateLimitSettings().policies)

    await limiter.block("ip1", "otp", reason="manual", duration_ms=60_000)

    assert [block.identifier for block in await limiter.get_blocked("otp")] == ["ip1"]
    assert await redis_client.pttl("rate_limit:block:otp:ip1") > 60_000
    await limiter.unblock("ip1", "otp")
    assert await limiter.get_blocked("otp") == []


async def test_sessions_survive_process_restart(redis_client: Redis) -> None:
    """A second store over the same key rehydrates sessions and indices."""
    service = SessionService(
        store=SessionStore(_persistence(redis_client)),
        settings=SessionSettings(enable_auto_cleanup=False),
    )
    session = await service.create_session(
        SessionContext(
            store_id="store-1",
            table_id="T1",
            fingerprint="a1b2c3d4e5f60718",
            ip_address="203.0.113.7",
        )
    )

    restarted = SessionStore(_persistence(redis_client))
    restored = await restarted.get(session.id)

    assert restored == session
    assert restored.expires_at - restored.created_at == timedelta(minutes=240)
    assert [s.id for s in await restarted.get_active_by_table("T1")] == [session.id]


async def test_external_writes_trigger_resync(redis_client: Redis) -> None:
    """A store watching the change channel picks up another writer's session."""
    watcher_store = SessionStore(_persistence(redis_client))
    await watcher_store.initialize()
    watcher = asyncio.create_task(watcher_store.watch_external_changes())
    await asyncio.sleep(0.2)

    writer = SessionService(
        store=SessionStore(_persistence(redis_client)),
        settings=SessionSettings(enable_auto_cleanup=False),
    )
    session = await writer.create_session(
        SessionContext(
            store_id="store-1",
            is_delivery=True,
            fingerprint="b1b2c3d4e5f60718",
            ip_address="203.0.113.8",
        )
    )

    try:
        for _ in range(50):
            if await watcher_store.peek(session.id) is not None:
                break
            await asyncio.sleep(0.05)
        assert await watcher_store.peek(session.id) is not None
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
