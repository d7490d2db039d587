"""Pytest Configuration - Shared fixtures and configuration.

This module provides shared fixtures and pytest configuration
for all test modules. Embedding providers are replaced by a
deterministic bag-of-words provider so no model is ever downloaded.
"""

import hashlib
import re
import tempfile
from typing import Generator, List

import pytest

from kiro_memory.config import (
    AppConfig,
    EmbeddingConfig,
    SearchConfig,
    ServerConfig,
    StorageConfig,
)
from kiro_memory.db import DatabaseManager
from kiro_memory.embeddings.base import EmbeddingProvider
from kiro_memory.embeddings.service import EmbeddingService
from kiro_memory.memory import MemoryManager


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (deselect with '-m \"not integration\"')"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


# =============================================================================
# Fake embedding providers
# =============================================================================

class FakeEmbeddingProvider(EmbeddingProvider):
    """Hashes lowercase words into a fixed number of buckets."""

    def __init__(self, dimensions: int = 64, name: str = "fake"):
        self.dimensions = dimensions
        self.name = name
        self.calls = 0

    def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls += 1
        return [self._vector(text) for text in texts]

    def _vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        return vector

    def get_name(self) -> str:
        return self.name

    def get_dimensions(self) -> int:
        return self.dimensions


class BrokenEmbeddingProvider(FakeEmbeddingProvider):
    """Loads fine but fails on every call."""

    def embed(self, texts: List[str]) -> List[List[float]]:
        raise RuntimeError("model crashed")


def fake_embedding_service(config: AppConfig, provider: EmbeddingProvider = None) -> EmbeddingService:
    provider = provider or FakeEmbeddingProvider()
    return EmbeddingService(config, factories=[("fake", lambda: provider)])


def unavailable_embedding_service(config: AppConfig) -> EmbeddingService:
    return EmbeddingService(config, factories=[])


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture
def temp_dir() -> Generator[str, None, None]:
    """Create a temporary directory.

    Yields:
        Path to temporary directory
    """
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def test_config(temp_dir: str) -> AppConfig:
    """Configuration rooted in a temporary directory with embeddings disabled."""
    return AppConfig(
        storage=StorageConfig(data_dir=temp_dir),
        embeddings=EmbeddingConfig(providers=["none"]),
        search=SearchConfig(vector_threshold=0.1),
        server=ServerConfig(worker_token="test-token"),
    )


@pytest.fixture
async def db(temp_dir: str):
    db = DatabaseManager(f"{temp_dir}/kiro-memory.db")
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
async def manager(test_config: AppConfig):
    """MemoryManager backed by the fake embedding provider."""
    manager = MemoryManager(test_config, embedding_service=fake_embedding_service(test_config))
    await manager.initialize()
    yield manager
    await manager.close()


@pytest.fixture
async def keyword_manager(test_config: AppConfig):
    """MemoryManager with no embedding provider available."""
    manager = MemoryManager(test_config, embedding_service=unavailable_embedding_service(test_config))
    await manager.initialize()
    yield manager
    await manager.close()
