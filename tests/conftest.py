"""Shared pytest fixtures for agent memory engine tests."""

import sys
import zlib
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Sequence

import pytest

# Add lib directory to path
sys.path.insert(0, str(Path(__file__).parent.parent / "lib"))

import fakeredis

from agent_memory.backends import InMemoryBackend, RedisBackend
from agent_memory.config import MemoryConfig
from agent_memory.engine import MemoryEngine
from agent_memory.store import FactStore
from agent_memory.telemetry import MemoryMetrics
from agent_memory.tracing import Tracer


START = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class HashingEmbedder:
    """Deterministic bag-of-words embedder for retrieval tests."""

    def __init__(self, dimensions: int = 64):
        self.dimensions = dimensions
        self.calls: List[int] = []

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(len(texts))
        vectors = []
        for text in texts:
            vector = [0.0] * self.dimensions
            for word in text.lower().split():
                vector[zlib.crc32(word.strip(".,:").encode()) % self.dimensions] += 1.0
            vectors.append(vector)
        return vectors


@pytest.fixture
def mock_redis():
    """Create a fake Redis client for testing."""
    return fakeredis.FakeStrictRedis(decode_responses=True)


@pytest.fixture
def mock_redis_bytes():
    """Create a fake Redis client that returns bytes."""
    return fakeredis.FakeStrictRedis(decode_responses=False)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def metrics():
    return MemoryMetrics('agent-memory-test')


@pytest.fixture
def tracer():
    return Tracer('agent-memory-test')


@pytest.fixture(params=["memory", "redis"])
def backend(request, mock_redis):
    """Every backend-agnostic test runs against both backends."""
    if request.param == "memory":
        return InMemoryBackend()
    return RedisBackend(mock_redis)


@pytest.fixture
def store(backend, clock, metrics, tracer):
    return FactStore(backend, clock=clock, metrics=metrics, tracer=tracer)


@pytest.fixture
def config():
    return MemoryConfig()


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def engine(backend, config, clock, metrics, tracer, embedder):
    return MemoryEngine(
        backend=backend,
        config=config,
        embedder=embedder,
        clock=clock,
        metrics=metrics,
        tracer=tracer,
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: tests exercising several components against fakeredis"
    )
    config.addinivalue_line(
        "markers", "e2e: marks end-to-end tests"
    )
    config.addinivalue_line(
        "markers", "slow: marks slow-running tests"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "e2e" in str(item.fspath):
            item.add_marker(pytest.mark.e2e)
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
