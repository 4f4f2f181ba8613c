"""
Shared test configuration and fixtures.

Provides a controllable clock, an in-memory gateway with failure
injection and call counting, and the cache components wired to them.
"""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from community_cache.cache import CacheStore
from community_cache.config import CacheConfig
from community_cache.durable import MemoryDurableStore
from community_cache.fallback import FallbackQueue
from community_cache.gateway import InMemoryGateway
from community_cache.sync import Synchronizer

logger = logging.getLogger(__name__)


class FakeClock:
    """Manually advanced time source, in epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ts(seconds: float) -> str:
    """ISO timestamp ``seconds`` after a fixed base, for ordering fixtures."""
    base = datetime(2024, 1, 1, tzinfo=UTC)
    return (base + timedelta(seconds=seconds)).isoformat()


def message_row(n: int, author_id: str = "u1") -> dict:
    """Wire row ``m{n}`` created ``n`` seconds after the base."""
    return {
        "id": f"m{n}",
        "author_id": author_id,
        "content": f"message {n}",
        "created_at": ts(n),
        "profiles": {"name": "Awa", "avatar_url": "https://img/awa.png"},
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return CacheConfig.default()


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def durable():
    return MemoryDurableStore()


@pytest.fixture
def cache(config, clock):
    return CacheStore(config, clock)


@pytest.fixture
def fallback(durable):
    return FallbackQueue(durable)


@pytest.fixture
def sync(gateway, cache, fallback):
    return Synchronizer(gateway, cache, fallback)
