"""Embedding Service - lazy provider selection with graceful degradation.

Providers are tried in the configured order the first time an embedding
is needed. The first one that loads stays active for the lifetime of the
service; if none loads the service reports itself unavailable and every
``embed`` call returns None.
"""

import asyncio
from typing import Callable, List, Optional, Sequence, Tuple, TYPE_CHECKING

import numpy as np

from ..exceptions import EmbeddingError
from ..logging_config import get_logger
from .base import EmbeddingProvider

if TYPE_CHECKING:
    from ..config import AppConfig

logger = get_logger("embeddings")

ProviderFactory = Callable[[], EmbeddingProvider]


def build_embedding_text(
    title: Optional[str],
    text: Optional[str] = None,
    narrative: Optional[str] = None,
    concepts: Optional[str] = None,
) -> str:
    """Text that represents an observation in vector space."""
    return " ".join(part for part in (title, text, narrative, concepts) if part)


def _provider_factories(config: "AppConfig") -> List[Tuple[str, ProviderFactory]]:
    factories: List[Tuple[str, ProviderFactory]] = []
    for name in config.embeddings.providers:
        key = name.lower()
        if key == "fastembed":
            def _fastembed() -> EmbeddingProvider:
                from .fastembed import FastEmbedProvider

                return FastEmbedProvider(
                    model_name=config.embeddings.fastembed_model,
                    dimensions=config.embeddings.dimensions,
                )

            factories.append(("fastembed", _fastembed))
        elif key in {"sentence-transformers", "sentence_transformers"}:
            def _sentence_transformers() -> EmbeddingProvider:
                from .sentence_transformer import SentenceTransformerProvider

                return SentenceTransformerProvider(
                    model_name=config.embeddings.sentence_transformers_model,
                )

            factories.append(("sentence-transformers", _sentence_transformers))
        elif key == "none":
            break
        else:
            logger.warning(f"Unknown embedding provider '{name}' ignored")
    return factories


class EmbeddingService:
    """Generates normalized embedding vectors for observations and queries.

    Usage:
        service = EmbeddingService(config)
        vector = await service.embed("fixed race in file watcher")
        if vector is None:
            ...  # keyword-only search
    """

    def __init__(
        self,
        config: "AppConfig",
        factories: Optional[Sequence[Tuple[str, ProviderFactory]]] = None,
    ):
        """Initialize embedding service.

        Args:
            config: Application configuration
            factories: Ordered (name, factory) pairs overriding the configured
                provider list
        """
        self.config = config
        self.max_input_chars = config.embeddings.max_input_chars
        self._factories = list(factories) if factories is not None else _provider_factories(config)
        self._provider: Optional[EmbeddingProvider] = None
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def provider_name(self) -> Optional[str]:
        return self._provider.get_name() if self._provider else None

    @property
    def dimensions(self) -> int:
        return self._provider.get_dimensions() if self._provider else 0

    def is_available(self) -> bool:
        return self._provider is not None

    async def initialize(self) -> bool:
        """Load the first available provider. Concurrent calls share one attempt.

        Returns:
            True if a provider is active
        """
        if self._initialized:
            return self.is_available()
        async with self._init_lock:
            if self._initialized:
                return self.is_available()
            for name, factory in self._factories:
                try:
                    provider = await asyncio.to_thread(factory)
                except Exception as e:
                    logger.info(f"Embedding provider '{name}' unavailable: {e}")
                    continue
                self._provider = provider
                logger.info(f"Embedding provider active: {provider.get_name()} ({provider.get_dimensions()}d)")
                break
            else:
                logger.warning("No embedding provider could be loaded, semantic search disabled")
            self._initialized = True
        return self.is_available()

    async def embed(self, text: str) -> Optional[List[float]]:
        """Embed a single text.

        Args:
            text: Input text, truncated to the configured maximum length

        Returns:
            Unit-length vector, or None when embeddings are unavailable or fail
        """
        if not text or not text.strip():
            return None
        if not await self.initialize():
            return None
        try:
            return await self._embed_one(text[: self.max_input_chars])
        except Exception as e:
            logger.warning(f"Embedding failed, continuing without vector: {e}")
            return None

    async def _embed_one(self, text: str) -> List[float]:
        vectors = await asyncio.to_thread(self._provider.embed, [text])
        if not vectors:
            raise EmbeddingError("Provider returned no vectors", provider=self.provider_name)
        vector = np.asarray(vectors[0], dtype=np.float32)
        norm = float(np.linalg.norm(vector))
        if not np.isfinite(norm) or norm == 0.0:
            raise EmbeddingError("Provider returned a degenerate vector", provider=self.provider_name)
        return (vector / norm).tolist()
