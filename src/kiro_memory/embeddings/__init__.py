from .base import EmbeddingProvider
from .service import EmbeddingService, build_embedding_text

__all__ = ["EmbeddingProvider", "EmbeddingService", "build_embedding_text"]
