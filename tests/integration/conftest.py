"""Integration fixtures backed by a Redis testcontainer."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator

import pytest
import redis.asyncio as redis_async
from redis.asyncio.client import Redis
from testcontainers.redis import RedisContainer

from docker.errors import DockerException


def _redis_connection_url(redis: RedisContainer) -> str:
    """Return a redis:// URL across testcontainers versions."""
    get_url = getattr(redis, "get_connection_url", None)
    if callable(get_url):
        redis_url = get_url()
    else:
        host = redis.get_container_host_ip()
        port = redis.get_exposed_port(6379)
        redis_url = f"redis://{host}:{port}"
    if not redis_url.endswith("/0"):
        redis_url = f"{redis_url}/0"
    return redis_url


@pytest.fixture(scope="session")
def redis_url() -> Iterator[str]:
    """Start one Redis container for the integration session."""
    try:
        container = RedisContainer("redis:7")
        container.start()
    except DockerException as exc:
        if os.environ.get("CI", "").lower() in {"1", "true", "yes"}:
            pytest.fail(f"Docker daemon unavailable in CI for Redis integration tests: {exc}")
        pytest.skip(f"Docker daemon unavailable for Redis integration tests: {exc}")

    try:
        yield _redis_connection_url(container)
    finally:
        container.stop()


@pytest.fixture
async def redis_client(redis_url: str) -> AsyncIterator[Redis]:
    """Provide a flushed client per test."""
    client = redis_async.from_url(redis_url, decode_responses=True)
    await client.flushdb()
    try:
        yield client
    finally:
        await client.aclose()
