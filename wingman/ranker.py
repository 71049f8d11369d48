from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Set, Union

from .config import MIN_POOL_MULTIPLIER, RankingWeights
from .models import (
    Intent,
    LearnedPreferences,
    PoolCandidate,
    ScoreBreakdown,
    ScoredCandidate,
    Sentinel,
)
from .preferences import preference_score
from .retriever import candidate_pool


def filter_fraction(filter_match: int, active_filters: int) -> float:
    return min(1.0, filter_match / max(1, active_filters))


def total_score(
    vector: float, preference: float, filters: float, weights: RankingWeights
) -> float:
    """Fixed convex combination of the three sub-scores, each in [0, 1]."""
    return (
        weights.w_vector * vector
        + weights.w_preference * preference
        + weights.w_filter * filters
    )


def score_candidate(
    candidate: PoolCandidate,
    intent: Intent,
    preferences: Union[LearnedPreferences, Sentinel],
    weights: RankingWeights,
) -> ScoredCandidate:
    pref = preference_score(candidate.profile, preferences)
    total = total_score(
        candidate.vector,
        pref,
        filter_fraction(candidate.filter_match, intent.filters.count()),
        weights,
    )
    return ScoredCandidate(
        profile=candidate.profile,
        scores=ScoreBreakdown(
            vector=candidate.vector, preference=pref, filter_match=candidate.filter_match
        ),
        total=total,
    )


def rank_candidates(
    pool: Sequence[PoolCandidate],
    intent: Intent,
    preferences: Union[LearnedPreferences, Sentinel],
    weights: RankingWeights = RankingWeights(),
) -> List[ScoredCandidate]:
    """Score and sort the pool: total desc, then filter hits desc, then user id asc."""
    scored = [score_candidate(c, intent, preferences, weights) for c in pool]
    scored.sort(key=lambda s: (-s.total, -s.scores.filter_match, s.profile.user_id))
    return scored


@dataclass(frozen=True)
class RankedPage:
    page: List[ScoredCandidate]
    pool_size: int
    has_more: bool


def rank_page(
    ordered: Sequence[PoolCandidate],
    intent: Intent,
    preferences: Union[LearnedPreferences, Sentinel],
    weights: RankingWeights = RankingWeights(),
    limit: int = 20,
    offset: int = 0,
    pool_multiplier: int = MIN_POOL_MULTIPLIER,
) -> RankedPage:
    """Rank the page starting at ``offset`` out of the full retrieval order.

    Every page ranks a pool of ``limit * pool_multiplier`` candidates taken in
    retrieval order from those not shown on an earlier page. The earlier pages
    are replayed from ``offset``, so following ``offset += limit`` never repeats
    a candidate and reaches every eligible one.
    """
    shown: Set[str] = set()
    pool_size = limit * pool_multiplier
    position = 0
    while True:
        take = limit if position >= offset else min(limit, offset - position)
        pool = candidate_pool(ordered, shown, pool_size)
        ranked = rank_candidates(pool, intent, preferences, weights)[:take]
        if position >= offset or not ranked:
            return RankedPage(
                page=ranked,
                pool_size=len(pool),
                has_more=position + len(ranked) < len(ordered),
            )
        shown.update(c.profile.user_id for c in ranked)
        position += len(ranked)
