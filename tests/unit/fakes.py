"""In-memory doubles for Redis and time."""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from fnmatch import fnmatchcase

from redis.exceptions import RedisError

START = datetime(2026, 3, 14, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock injected as the ``now`` callable."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        """Move time forward by timedelta keyword arguments."""
        self.current += timedelta(**delta)
        return self.current


def _bound(value: str | float) -> float:
    """Parse a Redis score bound."""
    if value == "-inf":
        return float("-inf")
    if value == "+inf":
        return float("inf")
    return float(value)


class FakeRedis:
    """In-memory subset of the async Redis API used by the package."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.sorted_sets: dict[str, dict[str, float]] = {}
        self.ttls_ms: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []
        self.fail = False
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise RedisError("redis unavailable")

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        """Add scored members to a sorted set."""
        self._check()
        members = self.sorted_sets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in members)
        members.update(mapping)
        return added

    def _ordered(self, key: str) -> list[tuple[str, float]]:
        return sorted(self.sorted_sets.get(key, {}).items(), key=lambda item: item[1])

    async def zrangebyscore(self, key: str, min: str | float, max: str | float) -> list[str]:
        """Return members with scores in the inclusive range."""
        self._check()
        low, high = _bound(min), _bound(max)
        return [member for member, score in self._ordered(key) if low <= score <= high]

    async def zremrangebyscore(self, key: str, min: str | float, max: str | float) -> int:
        """Remove members with scores in the inclusive range."""
        self._check()
        low, high = _bound(min), _bound(max)
        members = self.sorted_sets.get(key, {})
        doomed = [member for member, score in members.items() if low <= score <= high]
        for member in doomed:
            del members[member]
        return len(doomed)

    async def zremrangebyrank(self, key: str, min: int, max: int) -> int:
        """Remove members by rank, accepting negative indices."""
        self._check()
        ordered = self._ordered(key)
        size = len(ordered)
        start = min if min >= 0 else size + min
        stop = max if max >= 0 else size + max
        start = 0 if start < 0 else start
        stop = size - 1 if stop >= size else stop
        if start > stop:
            return 0
        members = self.sorted_sets[key]
        for member, _ in ordered[start : stop + 1]:
            del members[member]
        return stop - start + 1

    async def pexpire(self, key: str, ttl_ms: int) -> bool:
        """Record a TTL without enforcing it."""
        self._check()
        self.ttls_ms[key] = ttl_ms
        return key in self.values or key in self.sorted_sets

    async def get(self, key: str) -> str | None:
        """Return a string value."""
        self._check()
        return self.values.get(key)

    async def set(self, key: str, value: str, px: int | None = None) -> bool:
        """Store a string value with an optional TTL."""
        self._check()
        self.values[key] = value
        if px is not None:
            self.ttls_ms[key] = px
        return True

    async def delete(self, *keys: str) -> int:
        """Delete string values and sorted sets."""
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            if self.sorted_sets.pop(key, None) is not None:
                removed += 1
            self.ttls_ms.pop(key, None)
        return removed

    async def scan_iter(self, match: str | None = None) -> AsyncIterator[str]:
        """Iterate keys matching a glob pattern."""
        self._check()
        for key in [*self.values, *self.sorted_sets]:
            if match is None or fnmatchcase(key, match):
                yield key

    async def publish(self, channel: str, message: str) -> int:
        """Record a published message."""
        self._check()
        self.published.append((channel, message))
        return 0

    async def aclose(self) -> None:
        """Mark the client closed."""
        self.closed = True
