"""Scoring Engine - pure functions for per-signal and composite scores.

Every signal is normalized to [0, 1]:
- semantic: cosine similarity from the vector store
- fts: min-max normalized full-text rank, best match maps to 1
- recency: exponential decay on the creation timestamp; context ranking
  also counts decay on the last access time
- project_match: 1 when the candidate belongs to the target project
"""

import math
import time
from dataclasses import dataclass
from typing import Optional, Sequence, TYPE_CHECKING

from .models import ScoreSignals

if TYPE_CHECKING:
    from .config import SearchConfig

DEFAULT_HALF_LIFE_HOURS = 168.0
ACCESS_HALF_LIFE_HOURS = 48.0
STALE_PENALTY = 0.5


@dataclass(frozen=True)
class ScoringWeights:
    semantic: float
    fts: float
    recency: float
    project_match: float


# Used when the caller supplies a query
SEARCH_WEIGHTS = ScoringWeights(semantic=0.4, fts=0.3, recency=0.2, project_match=0.1)
# Ambient context injection without a query
CONTEXT_WEIGHTS = ScoringWeights(semantic=0.0, fts=0.0, recency=0.7, project_match=0.3)


def weights_from_config(search: "SearchConfig", with_query: bool = True) -> ScoringWeights:
    if with_query:
        return ScoringWeights(
            semantic=search.semantic_weight,
            fts=search.fts_weight,
            recency=search.recency_weight,
            project_match=search.project_weight,
        )
    return ScoringWeights(
        semantic=0.0,
        fts=0.0,
        recency=search.context_recency_weight,
        project_match=search.context_project_weight,
    )


def _now_ms() -> int:
    return int(time.time() * 1000)


def recency_score(
    epoch_ms: Optional[float],
    half_life_hours: float = DEFAULT_HALF_LIFE_HOURS,
    now_ms: Optional[int] = None,
) -> float:
    """Exponential decay: exp(-age_hours * ln2 / half_life_hours).

    Future timestamps score 1; missing or invalid ones score 0.
    """
    if epoch_ms is None or half_life_hours <= 0:
        return 0.0
    try:
        epoch_ms = float(epoch_ms)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(epoch_ms) or epoch_ms <= 0:
        return 0.0
    if now_ms is None:
        now_ms = _now_ms()
    age_hours = (now_ms - epoch_ms) / 3_600_000
    if age_hours <= 0:
        return 1.0
    return math.exp(-age_hours * math.log(2) / half_life_hours)


def access_recency_score(
    last_accessed_epoch: Optional[float],
    half_life_hours: float = ACCESS_HALF_LIFE_HOURS,
    now_ms: Optional[int] = None,
) -> float:
    return recency_score(last_accessed_epoch, half_life_hours, now_ms)


def normalize_fts_rank(rank: float, all_ranks: Sequence[float]) -> float:
    """Min-max normalize a raw rank within its batch, inverted so lower ranks score higher."""
    if not all_ranks:
        return 0.0
    if len(all_ranks) == 1:
        return 1.0
    lowest = min(all_ranks)
    highest = max(all_ranks)
    spread = highest - lowest
    if spread == 0:
        return 1.0
    return max(0.0, min(1.0, (highest - rank) / spread))


def project_match_score(candidate_project: Optional[str], target_project: Optional[str]) -> float:
    if not candidate_project or not target_project:
        return 0.0
    return 1.0 if candidate_project.lower() == target_project.lower() else 0.0


def composite_score(signals: ScoreSignals, weights: ScoringWeights = SEARCH_WEIGHTS) -> float:
    return (
        signals.semantic * weights.semantic
        + signals.fts * weights.fts
        + signals.recency * weights.recency
        + signals.project_match * weights.project_match
    )


def staleness_penalty(is_stale: bool, penalty: float = STALE_PENALTY) -> float:
    return penalty if is_stale else 1.0


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate, four characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)
