import math

import pytest

from kiro_memory.config import SearchConfig
from kiro_memory.models import ScoreSignals
from kiro_memory.scoring import (
    CONTEXT_WEIGHTS,
    SEARCH_WEIGHTS,
    access_recency_score,
    composite_score,
    estimate_tokens,
    normalize_fts_rank,
    project_match_score,
    recency_score,
    staleness_penalty,
    weights_from_config,
)

HOUR_MS = 3_600_000
NOW = 1_700_000_000_000


def test_recency_halves_every_half_life():
    assert recency_score(NOW, now_ms=NOW) == 1.0
    assert recency_score(NOW - 168 * HOUR_MS, now_ms=NOW) == pytest.approx(0.5)
    assert recency_score(NOW - 336 * HOUR_MS, now_ms=NOW) == pytest.approx(0.25)
    assert recency_score(NOW - 24 * HOUR_MS, half_life_hours=24, now_ms=NOW) == pytest.approx(0.5)


def test_recency_edge_cases():
    assert recency_score(NOW + HOUR_MS, now_ms=NOW) == 1.0
    assert recency_score(None, now_ms=NOW) == 0.0
    assert recency_score(0, now_ms=NOW) == 0.0
    assert recency_score(-5, now_ms=NOW) == 0.0
    assert recency_score("garbage", now_ms=NOW) == 0.0
    assert recency_score(float("nan"), now_ms=NOW) == 0.0


def test_access_recency_uses_shorter_half_life():
    assert access_recency_score(NOW - 48 * HOUR_MS, now_ms=NOW) == pytest.approx(0.5)
    assert access_recency_score(None, now_ms=NOW) == 0.0


def test_normalize_fts_rank():
    ranks = [-10.0, -5.0, -2.5]
    assert normalize_fts_rank(-10.0, ranks) == 1.0
    assert normalize_fts_rank(-2.5, ranks) == 0.0
    assert normalize_fts_rank(-5.0, ranks) == pytest.approx(2.5 / 7.5)

    assert normalize_fts_rank(-3.0, []) == 0.0
    assert normalize_fts_rank(-3.0, [-3.0]) == 1.0
    assert normalize_fts_rank(0.0, [0.0, 0.0, 0.0]) == 1.0


def test_project_match_is_case_insensitive():
    assert project_match_score("Acme", "acme") == 1.0
    assert project_match_score("acme", "globex") == 0.0
    assert project_match_score("acme", None) == 0.0
    assert project_match_score(None, "acme") == 0.0


def test_composite_score_presets():
    signals = ScoreSignals(semantic=1.0, fts=0.5, recency=0.25, project_match=1.0)
    assert composite_score(signals, SEARCH_WEIGHTS) == pytest.approx(0.4 + 0.15 + 0.05 + 0.1)
    assert composite_score(signals, CONTEXT_WEIGHTS) == pytest.approx(0.175 + 0.3)

    perfect = ScoreSignals(semantic=1.0, fts=1.0, recency=1.0, project_match=1.0)
    assert composite_score(perfect, SEARCH_WEIGHTS) == pytest.approx(1.0)
    assert composite_score(perfect, CONTEXT_WEIGHTS) == pytest.approx(1.0)


def test_weights_from_config_matches_presets():
    config = SearchConfig()
    assert weights_from_config(config) == SEARCH_WEIGHTS
    assert weights_from_config(config, with_query=False) == CONTEXT_WEIGHTS


def test_staleness_penalty():
    assert staleness_penalty(True) == 0.5
    assert staleness_penalty(False) == 1.0
    assert staleness_penalty(True, penalty=0.25) == 0.25


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("x" * 400) == math.ceil(400 / 4)
