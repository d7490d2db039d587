import asyncio

import pytest

from conftest import BrokenEmbeddingProvider, FakeEmbeddingProvider
from kiro_memory.config import AppConfig, EmbeddingConfig
from kiro_memory.embeddings.base import EmbeddingProvider
from kiro_memory.embeddings.service import EmbeddingService, _provider_factories, build_embedding_text


class ZeroProvider(FakeEmbeddingProvider):
    def embed(self, texts):
        return [[0.0] * self.dimensions for _ in texts]


def _config(**embeddings) -> AppConfig:
    return AppConfig(embeddings=EmbeddingConfig(**embeddings))


@pytest.mark.asyncio
async def test_embed_returns_unit_vector():
    service = EmbeddingService(_config(), factories=[("fake", FakeEmbeddingProvider)])
    vector = await service.embed("fixed the race in the watcher")

    assert vector is not None
    assert sum(v * v for v in vector) == pytest.approx(1.0, rel=1e-5)
    assert service.provider_name == "fake"
    assert service.dimensions == 64
    assert service.is_available()


@pytest.mark.asyncio
async def test_first_loadable_provider_wins():
    def _fails() -> EmbeddingProvider:
        raise ImportError("package not installed")

    service = EmbeddingService(
        _config(),
        factories=[("missing", _fails), ("second", lambda: FakeEmbeddingProvider(name="second"))],
    )
    assert await service.initialize() is True
    assert service.provider_name == "second"


@pytest.mark.asyncio
async def test_concurrent_initialization_loads_once():
    loads = []

    def _factory() -> EmbeddingProvider:
        loads.append(1)
        return FakeEmbeddingProvider()

    service = EmbeddingService(_config(), factories=[("fake", _factory)])
    results = await asyncio.gather(*(service.initialize() for _ in range(10)))

    assert all(results)
    assert len(loads) == 1


@pytest.mark.asyncio
async def test_unavailable_service_returns_none():
    service = EmbeddingService(_config(), factories=[])
    assert await service.initialize() is False
    assert await service.embed("anything") is None
    assert service.provider_name is None
    assert service.dimensions == 0


@pytest.mark.asyncio
async def test_embed_failures_degrade_to_none():
    broken = EmbeddingService(_config(), factories=[("broken", BrokenEmbeddingProvider)])
    assert await broken.embed("text") is None
    # Provider stays selected, only the call failed
    assert broken.is_available()

    zero = EmbeddingService(_config(), factories=[("zero", ZeroProvider)])
    assert await zero.embed("text") is None


@pytest.mark.asyncio
async def test_empty_text_is_not_embedded():
    provider = FakeEmbeddingProvider()
    service = EmbeddingService(_config(), factories=[("fake", lambda: provider)])
    assert await service.embed("") is None
    assert await service.embed("   ") is None
    assert provider.calls == 0


@pytest.mark.asyncio
async def test_input_is_truncated():
    seen = []

    class Recording(FakeEmbeddingProvider):
        def embed(self, texts):
            seen.extend(texts)
            return super().embed(texts)

    service = EmbeddingService(_config(max_input_chars=10), factories=[("rec", Recording)])
    await service.embed("abcdefghijklmnopqrstuvwxyz")
    assert seen == ["abcdefghij"]


def test_provider_factories_follow_configured_order():
    names = [name for name, _ in _provider_factories(_config(providers=["sentence-transformers", "fastembed"]))]
    assert names == ["sentence-transformers", "fastembed"]

    assert _provider_factories(_config(providers=["none", "fastembed"])) == []
    assert [n for n, _ in _provider_factories(_config(providers=["bogus", "fastembed"]))] == ["fastembed"]


def test_build_embedding_text_skips_empty_parts():
    assert build_embedding_text("Title", None, "", "a, b") == "Title a, b"
    assert build_embedding_text("Title", "body") == "Title body"
