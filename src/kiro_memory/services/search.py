"""Hybrid Search Service - merge full-text and vector candidates into one ranking.

Flow per query:
1. vector candidates (when embeddings are available)
2. full-text candidates with their raw rank
3. union by observation id, per-signal scores, composite score
4. sort, truncate, and schedule a best-effort access-time update
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, TYPE_CHECKING

from ..logging_config import get_logger
from ..models import HybridResult, Observation, ScoreSignals, SearchFilters
from ..scoring import (
    composite_score,
    normalize_fts_rank,
    access_recency_score,
    project_match_score,
    recency_score,
    staleness_penalty,
    weights_from_config,
)

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..db import DatabaseManager
    from ..embeddings.service import EmbeddingService
    from ..vector_store import VectorStore

logger = get_logger("services.search")


@dataclass
class _Candidate:
    id: int
    title: str
    content: str
    type: str
    project: str
    created_at: str
    created_at_epoch: int
    is_stale: bool
    last_accessed_epoch: Optional[int] = None
    similarity: Optional[float] = None
    rank: Optional[float] = None


class HybridSearchService:
    """Ranks observations by semantic, lexical, recency and project signals.

    Usage:
        service = HybridSearchService(db, vector_store, embedding_service, config)
        results = await service.search("websocket reconnect", project="acme", limit=10)
        ranked = service.rank_for_context(observations, project="acme")
    """

    def __init__(
        self,
        db: "DatabaseManager",
        vector_store: "VectorStore",
        embedding_service: "EmbeddingService",
        config: "AppConfig",
    ):
        """Initialize hybrid search.

        Args:
            db: Database manager
            vector_store: Embedding storage and similarity search
            embedding_service: Query embedding generation
            config: Application configuration
        """
        self.db = db
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.config = config
        self._background: Set[asyncio.Task] = set()

    async def search(
        self,
        query: str,
        project: Optional[str] = None,
        limit: Optional[int] = None,
        obs_type: Optional[str] = None,
    ) -> List[HybridResult]:
        """Run a hybrid query.

        Args:
            query: Free-text query
            project: Target project, also used for the project-match signal
            limit: Maximum results
            obs_type: Restrict keyword candidates to one observation type

        Returns:
            Results sorted by composite score, highest first
        """
        search_config = self.config.search
        limit = limit or search_config.default_limit
        query = (query or "").strip()
        if not query:
            return []
        start = time.perf_counter()
        candidates: Dict[int, _Candidate] = {}
        fetch = limit * 2

        for hit in await self._vector_candidates(query, project, fetch):
            candidates[hit.observation_id] = _Candidate(
                id=hit.observation_id,
                title=hit.title,
                content=hit.text or hit.narrative or "",
                type=hit.type,
                project=hit.project,
                created_at=hit.created_at,
                created_at_epoch=hit.created_at_epoch,
                is_stale=hit.is_stale,
                similarity=hit.similarity,
            )

        lexical = await self.db.search_observations_fts(
            query, SearchFilters(project=project, type=obs_type, limit=fetch)
        )
        for hit in lexical:
            obs = hit.observation
            candidate = candidates.get(obs.id)
            if candidate is None:
                candidate = self._candidate_from_observation(obs)
                candidates[obs.id] = candidate
            candidate.rank = hit.rank

        results = self._score(list(candidates.values()), project, with_query=True)
        results = results[:limit]

        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Hybrid search '{query[:50]}' merged {len(candidates)} candidates "
            f"({len(lexical)} keyword) in {duration_ms:.2f}ms"
        )
        if results:
            self._schedule_access_update([r.id for r in results])
        return results

    async def _vector_candidates(self, query: str, project: Optional[str], limit: int):
        if not await self.embedding_service.initialize():
            return []
        vector = await self.embedding_service.embed(query)
        if vector is None:
            logger.warning("Query embedding failed, hybrid search degraded to keyword-only")
            return []
        try:
            return await self.vector_store.search(
                vector,
                project=project,
                limit=limit,
                threshold=self.config.search.vector_threshold,
            )
        except Exception as e:
            logger.warning(f"Vector search failed, hybrid search degraded to keyword-only: {e}")
            return []

    def _candidate_from_observation(self, obs: Observation) -> _Candidate:
        return _Candidate(
            id=obs.id,
            title=obs.title,
            content=obs.text or obs.narrative or "",
            type=obs.type,
            project=obs.project,
            created_at=obs.created_at,
            created_at_epoch=obs.created_at_epoch,
            is_stale=obs.is_stale,
            last_accessed_epoch=obs.last_accessed_epoch,
        )

    def _score(
        self,
        candidates: List[_Candidate],
        project: Optional[str],
        with_query: bool,
    ) -> List[HybridResult]:
        search_config = self.config.search
        weights = weights_from_config(search_config, with_query=with_query)
        ranks = [c.rank for c in candidates if c.rank is not None]
        now_ms = int(time.time() * 1000)

        results: List[HybridResult] = []
        for c in candidates:
            recency = recency_score(c.created_at_epoch, search_config.recency_half_life_hours, now_ms)
            if not with_query:
                # Recently retrieved memories stay in context even when old
                recency = max(
                    recency,
                    access_recency_score(c.last_accessed_epoch, search_config.access_half_life_hours, now_ms),
                )
            signals = ScoreSignals(
                semantic=c.similarity or 0.0,
                fts=normalize_fts_rank(c.rank, ranks) if c.rank is not None else 0.0,
                recency=recency,
                project_match=project_match_score(c.project, project),
            )
            score = composite_score(signals, weights)
            if c.similarity is not None and c.rank is not None:
                source = "hybrid"
                score = min(1.0, score * search_config.hybrid_boost)
            elif c.similarity is not None:
                source = "vector"
            else:
                source = "keyword"
            score *= staleness_penalty(c.is_stale, search_config.stale_penalty)

            results.append(
                HybridResult(
                    id=c.id,
                    title=c.title,
                    content=c.content,
                    type=c.type,
                    project=c.project,
                    created_at=c.created_at,
                    created_at_epoch=c.created_at_epoch,
                    score=score,
                    source=source,
                    is_stale=c.is_stale,
                    signals=signals,
                )
            )

        # Ties resolve to the newer observation, then the higher id
        results.sort(key=lambda r: (-r.score, -r.created_at_epoch, -r.id))
        return results

    def rank_for_context(self, observations: List[Observation], project: str) -> List[HybridResult]:
        """Order observations for ambient context injection (no query)."""
        candidates = [self._candidate_from_observation(obs) for obs in observations]
        return self._score(candidates, project, with_query=False)

    def _schedule_access_update(self, ids: List[int]) -> None:
        task = asyncio.create_task(self._touch(ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch(self, ids: List[int]) -> None:
        try:
            await self.db.touch_last_accessed(ids)
        except Exception as e:
            logger.debug(f"Access-time update skipped for {len(ids)} observations: {e}")

    async def drain(self) -> None:
        """Wait for pending access-time updates."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
