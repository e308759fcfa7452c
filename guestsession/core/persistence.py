"""Durable media for the session store document."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol
from uuid import uuid4

import structlog
from redis.asyncio.client import Redis
from redis.exceptions import RedisError, ResponseError

from guestsession.exceptions import StorageCapacityError, StorageError

logger = structlog.get_logger(__name__)


class SessionPersistence(Protocol):
    """Durable medium holding one serialized session document."""

    async def load(self) -> str | None:
        """Return the stored document, or None when nothing is stored."""

    async def save(self, payload: str) -> None:
        """Replace the stored document."""

    async def clear(self) -> None:
        """Remove the stored document."""

    def changes(self) -> AsyncIterator[str]:
        """Yield origin tokens of writes made by other processes."""


class MemorySessionPersistence:
    """Process-local medium with an optional capacity limit."""

    def __init__(self, capacity_bytes: int | None = None) -> None:
        self.payload: str | None = None
        self.capacity_bytes = capacity_bytes
        self.save_count = 0
        self._changes: asyncio.Queue[str] = asyncio.Queue()

    async def load(self) -> str | None:
        return self.payload

    async def save(self, payload: str) -> None:
        if self.capacity_bytes is not None and len(payload.encode("utf-8")) > self.capacity_bytes:
            raise StorageCapacityError("Storage quota exceeded.")
        self.payload = payload
        self.save_count += 1

    async def clear(self) -> None:
        self.payload = None

    def notify_external_change(self, payload: str, origin: str = "external") -> None:
        """Simulate another writer replacing the stored document."""
        self.payload = payload
        self._changes.put_nowait(origin)

    async def changes(self) -> AsyncIterator[str]:
        while True:
            yield await self._changes.get()


class RedisSessionPersistence:
    """Store the session document under one Redis key and announce writes."""

    def __init__(
        self,
        redis_client: Redis,
        key: str,
        change_channel: str,
        origin: str | None = None,
    ) -> None:
        self._redis = redis_client
        self._key = key
        self._change_channel = change_channel
        self.origin = origin or uuid4().hex

    async def load(self) -> str | None:
        try:
            return await self._redis.get(self._key)
        except RedisError as exc:
            raise StorageError("Session storage unavailable.") from exc

    async def save(self, payload: str) -> None:
        try:
            await self._redis.set(self._key, payload)
        except ResponseError as exc:
            if str(exc).startswith("OOM"):
                raise StorageCapacityError("Session storage is full.") from exc
            raise StorageError("Session storage rejected the write.") from exc
        except RedisError as exc:
            raise StorageError("Session storage unavailable.") from exc

        try:
            await self._redis.publish(self._change_channel, self.origin)
        except RedisError as exc:
            logger.warning(
                "session_change_publish_failed",
                channel=self._change_channel,
                error=str(exc),
            )

    async def clear(self) -> None:
        try:
            await self._redis.delete(self._key)
        except RedisError as exc:
            raise StorageError("Session storage unavailable.") from exc

    async def changes(self) -> AsyncIterator[str]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(self._change_channel)
        try:
            async for message in pubsub.listen():
                if not self._is_external_change(message):
                    continue
                yield str(message["data"])
        finally:
            await pubsub.unsubscribe(self._change_channel)
            await pubsub.aclose()

    def _is_external_change(self, message: dict[str, Any]) -> bool:
        """Return True for publish messages sent by other writers."""
        return message.get("type") == "message" and message.get("data") != self.origin
