"""Unit tests for operational CLI commands."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from guestsession import cli as cli_module
from guestsession.config import RateLimitSettings, SessionSettings
from guestsession.core.persistence import MemorySessionPersistence
from guestsession.core.rate_limit import RateLimiter
from guestsession.core.session_store import SessionStore
from guestsession.schemas.session import Session
from guestsession.services.session_service import SessionService
from tests.unit.fakes import FakeClock, FakeRedis


@pytest.fixture
def wired(
    monkeypatch: pytest.MonkeyPatch, clock: FakeClock, fake_redis: FakeRedis
) -> tuple[SessionStore, RateLimiter]:
    """Point CLI dependency factories at in-memory components."""
    store = SessionStore(MemorySessionPersistence(), now=clock)
    limiter = RateLimiter(fake_redis, RateLimitSettings().policies, now=clock)
    service = SessionService(
        store=store,
        settings=SessionSettings(enable_auto_cleanup=False),
        rate_limiter=limiter,
        now=clock,
    )
    monkeypatch.setattr(cli_module, "configure_structlog", lambda settings: None)
    monkeypatch.setattr(cli_module, "get_session_service", lambda: service)
    monkeypatch.setattr(cli_module, "get_rate_limiter", lambda: limiter)
    monkeypatch.setattr(cli_module, "get_redis_client", lambda: fake_redis)
    return store, limiter


def _last_json_line(capsys: pytest.CaptureFixture[str]) -> dict:
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def _session(clock: FakeClock, session_id: str, minutes: int) -> Session:
    created = clock()
    return Session(
        id=session_id,
        store_id="store-1",
        table_id="T1",
        is_delivery=False,
        fingerprint="a1b2c3d4e5f60718",
        ip_address="203.0.113.7",
        created_at=created,
        expires_at=created + timedelta(minutes=minutes),
        last_activity=created,
    )


def test_cleanup_command_sweeps_expired_sessions(
    wired: tuple[SessionStore, RateLimiter],
    clock: FakeClock,
    fake_redis: FakeRedis,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """cleanup removes sessions expired past the grace period."""
    store, _ = wired
    asyncio.run(store.set(_session(clock, "s1", minutes=30)))
    clock.advance(hours=3)

    assert cli_module.main(["cleanup"]) == 0
    assert _last_json_line(capsys) == {"removed": 1}
    assert fake_redis.closed


def test_stats_command_prints_counters(
    wired: tuple[SessionStore, RateLimiter],
    clock: FakeClock,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """stats prints session counters for one store."""
    store, _ = wired
    asyncio.run(store.set(_session(clock, "s1", minutes=240)))

    assert cli_module.main(["stats", "--store-id", "store-1"]) == 0
    output = _last_json_line(capsys)
    assert output["store_id"] == "store-1"
    assert output["total"] == 1
    assert output["active"] == 1


def test_unblock_command_lifts_block(
    wired: tuple[SessionStore, RateLimiter],
    capsys: pytest.CaptureFixture[str],
) -> None:
    """unblock removes a rate limiter block."""
    _, limiter = wired
    asyncio.run(limiter.block("203.0.113.7", "otp", reason="manual"))

    assert cli_module.main(["unblock", "203.0.113.7", "otp"]) == 0
    assert _last_json_line(capsys) == {"identifier": "203.0.113.7", "operation_class": "otp"}
    assert not asyncio.run(limiter.is_blocked("203.0.113.7", "otp"))


def test_rate_limit_stats_command(
    wired: tuple[SessionStore, RateLimiter],
    capsys: pytest.CaptureFixture[str],
) -> None:
    """rate-limit-stats prints attempt counters."""
    _, limiter = wired
    asyncio.run(limiter.record("203.0.113.7", "otp", succeeded=False))

    assert cli_module.main(["rate-limit-stats", "--operation-class", "otp"]) == 0
    output = _last_json_line(capsys)
    assert output["operation_class"] == "otp"
    assert output["failed_attempts"] == 1
    assert output["top_identifiers"] == [["203.0.113.7", 1]]


def test_unknown_command_exits_with_usage_error() -> None:
    """Unsupported commands are rejected by the parser."""
    with pytest.raises(SystemExit) as exc_info:
        cli_module.main(["rotate-everything"])

    assert exc_info.value.code == 2
