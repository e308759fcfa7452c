"""Shared unit-test fixtures."""

from __future__ import annotations

import pytest

from tests.unit.fakes import FakeClock, FakeRedis


@pytest.fixture
def clock() -> FakeClock:
    """Provide a fresh manually advanced clock."""
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Provide an empty in-memory Redis."""
    return FakeRedis()
