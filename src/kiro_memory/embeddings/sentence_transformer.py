from typing import List

from sentence_transformers import SentenceTransformer

from .base import EmbeddingProvider


class SentenceTransformerProvider(EmbeddingProvider):
    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self.model = SentenceTransformer(model_name)

    def embed(self, texts: List[str]) -> List[List[float]]:
        vectors = self.model.encode(texts, normalize_embeddings=True)
        return [[float(x) for x in vector] for vector in vectors]

    def get_name(self) -> str:
        return "sentence-transformers"

    def get_dimensions(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())
