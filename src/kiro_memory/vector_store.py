"""SQLite BLOB vector store with linear cosine search.

Vectors are stored as float32 bytes next to the observations. A linear
scan is fine for a single-user local corpus; a larger deployment would
put an approximate nearest-neighbour index behind the same methods.
"""

import time
from typing import List, Optional, Sequence, TYPE_CHECKING

import numpy as np

from .db import now_stamp
from .embeddings.service import build_embedding_text
from .exceptions import MaintenanceError
from .logging_config import get_logger
from .models import EmbeddingStats, VectorHit

if TYPE_CHECKING:
    from .config import AppConfig
    from .db import DatabaseManager
    from .embeddings.service import EmbeddingService

logger = get_logger("vector_store")


def serialize_f32(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def deserialize_f32(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


class VectorStore:
    """Persists observation embeddings and answers nearest-neighbour queries.

    Usage:
        store = VectorStore(db, embedding_service, config)
        await store.store_embedding(obs_id, vector, model="fastembed")
        hits = await store.search(query_vector, project="acme", limit=10)
    """

    def __init__(
        self,
        db: "DatabaseManager",
        embedding_service: "EmbeddingService",
        config: "AppConfig",
    ):
        self.db = db
        self.embedding_service = embedding_service
        self.config = config

    async def store_embedding(self, observation_id: int, vector: Sequence[float], model: str) -> None:
        created_at, _ = now_stamp()
        async with self.db.transaction() as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO observation_embeddings
                    (observation_id, embedding, model, dimensions, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (observation_id, serialize_f32(vector), model, len(vector), created_at),
            )

    async def has_embedding(self, observation_id: int) -> bool:
        row = await self.db.fetchone(
            "SELECT 1 FROM observation_embeddings WHERE observation_id = ?", (observation_id,)
        )
        return row is not None

    async def search(
        self,
        query_vector: Sequence[float],
        project: Optional[str] = None,
        limit: int = 10,
        threshold: Optional[float] = None,
    ) -> List[VectorHit]:
        """Cosine similarity search over stored vectors.

        Args:
            query_vector: Normalized query embedding
            project: Restrict candidates to one project
            limit: Maximum hits
            threshold: Minimum similarity, defaults to the configured one

        Returns:
            Hits sorted by similarity, highest first
        """
        if threshold is None:
            threshold = self.config.search.vector_threshold
        query = np.asarray(query_vector, dtype=np.float32)
        if query.size == 0:
            return []
        start = time.perf_counter()

        params: list = []
        sql = """
            SELECT e.observation_id, e.embedding, o.title, o.text, o.narrative, o.type, o.project,
                   o.created_at, o.created_at_epoch, o.is_stale
            FROM observation_embeddings e
            JOIN observations o ON o.id = e.observation_id
        """
        if project:
            sql += " WHERE o.project = ?"
            params.append(project)
        rows = await self.db.fetchall(sql, params)

        hits: List[VectorHit] = []
        for row in rows:
            vector = deserialize_f32(row["embedding"])
            if vector.shape != query.shape:
                # Written by a provider with different dimensions
                continue
            similarity = float(np.dot(query, vector))
            if similarity < threshold:
                continue
            hits.append(
                VectorHit(
                    observation_id=row["observation_id"],
                    similarity=similarity,
                    title=row["title"],
                    text=row["text"],
                    narrative=row["narrative"],
                    type=row["type"],
                    project=row["project"],
                    created_at=row["created_at"],
                    created_at_epoch=row["created_at_epoch"],
                    is_stale=bool(row["is_stale"]),
                )
            )

        hits.sort(key=lambda h: (-h.similarity, -h.created_at_epoch, -h.observation_id))
        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Vector search scanned {len(rows)} vectors in {duration_ms:.2f}ms, {len(hits)} above {threshold}")
        return hits[:limit]

    async def embed_observation(
        self,
        observation_id: int,
        title: str,
        text: Optional[str] = None,
        narrative: Optional[str] = None,
        concepts: Optional[str] = None,
    ) -> bool:
        """Generate and store the embedding of one observation.

        Returns:
            True if a vector was stored
        """
        vector = await self.embedding_service.embed(build_embedding_text(title, text, narrative, concepts))
        if vector is None:
            return False
        await self.store_embedding(observation_id, vector, self.embedding_service.provider_name or "unknown")
        return True

    async def backfill_embeddings(self, batch_size: Optional[int] = None) -> int:
        """Embed observations that have no vector yet, newest first.

        Args:
            batch_size: Maximum observations processed in this call

        Returns:
            Number of embeddings generated
        """
        if batch_size is None:
            batch_size = self.config.maintenance.backfill_batch_size
        if not await self.embedding_service.initialize():
            logger.warning("Backfill skipped: no embedding provider available")
            return 0

        rows = await self.db.fetchall(
            """
            SELECT o.id, o.title, o.text, o.narrative, o.concepts
            FROM observations o
            LEFT JOIN observation_embeddings e ON e.observation_id = o.id
            WHERE e.observation_id IS NULL
            ORDER BY o.created_at_epoch DESC, o.id DESC
            LIMIT ?
            """,
            (batch_size,),
        )

        generated = 0
        for row in rows:
            try:
                stored = await self.embed_observation(
                    row["id"], row["title"], row["text"], row["narrative"], row["concepts"]
                )
                if not stored:
                    raise MaintenanceError(row["id"], "embedding provider returned no vector")
                generated += 1
            except Exception as e:
                logger.warning(f"Backfill skipped observation {row['id']}: {e}")
                continue

        logger.info(f"Backfill generated {generated}/{len(rows)} embeddings")
        return generated

    async def get_stats(self) -> EmbeddingStats:
        total_row = await self.db.fetchone("SELECT COUNT(*) AS count FROM observations")
        embedded_row = await self.db.fetchone("SELECT COUNT(*) AS count FROM observation_embeddings")
        total = total_row["count"] if total_row else 0
        embedded = embedded_row["count"] if embedded_row else 0
        return EmbeddingStats(
            total=total,
            embedded=embedded,
            percentage=round(embedded / total * 100) if total else 0,
            provider=self.embedding_service.provider_name,
            dimensions=self.embedding_service.dimensions,
            available=self.embedding_service.is_available(),
        )
