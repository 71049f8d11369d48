"""Candidate retrieval: hard exclusions, then vector and filter sub-scores.

Pipeline:
1. Build the exclusion set (self, blocked either way, already swiped, caller excludes).
2. Drop ineligible profiles (hidden, incomplete, no embedding, outside gender targets).
3. Score what is left: cosine similarity to the intent vector and filter hits.
4. Order deterministically. Pages are cut from this order by ``candidate_pool``.

Retrieval has no fallback. Any failure surfaces as ``RetrievalError``.
"""
from __future__ import annotations

import logging
from itertools import islice
from typing import AbstractSet, Collection, List, Optional, Sequence, Set, Union

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity  # type: ignore

from .capabilities import ProfileStore
from .concurrency import call_with_timeout
from .config import MIN_POOL_MULTIPLIER
from .errors import RetrievalError
from .models import CandidateProfile, Intent, IntentFilters, PoolCandidate, Sentinel

logger = logging.getLogger(__name__)


def target_genders(requester: Optional[CandidateProfile]) -> List[str]:
    """Genders the requester wants to see; empty means no restriction."""
    if requester is None:
        return []
    if requester.interested_in:
        return [g.lower() for g in requester.interested_in]
    if (requester.gender or "").lower() == "male":
        return ["female"]
    if (requester.gender or "").lower() == "female":
        return ["male"]
    return []


def build_exclusion_set(
    user_id: str, store: ProfileStore, extra: Collection[str] = ()
) -> Set[str]:
    excluded = {user_id}
    excluded.update(store.blocked_ids(user_id))
    excluded.update(store.acted_on_ids(user_id))
    excluded.update(str(x) for x in extra)
    return excluded


def is_eligible(profile: CandidateProfile, excluded: Set[str], genders: Sequence[str]) -> bool:
    if profile.user_id in excluded:
        return False
    if not profile.is_visible or not profile.profile_completed:
        return False
    if not profile.embedding:
        return False
    if genders and (profile.gender or "").lower() not in genders:
        return False
    return True


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return a is not None and b is not None and a.strip().lower() == b.strip().lower()


def count_filter_matches(profile: CandidateProfile, filters: IntentFilters) -> int:
    """Number of active intent filters this profile satisfies."""
    hits = 0
    for key, value in filters.active().items():
        if key == "gender":
            ok = (profile.gender or "").lower() in {g.lower() for g in value}
        elif key == "year_of_study":
            ok = profile.year_of_study is not None and profile.year_of_study in value
        elif key == "course":
            ok = bool(profile.course) and value.lower() in profile.course.lower()
        elif key == "university":
            ok = _same(profile.university, value)
        elif key == "age_range":
            ok = (
                profile.age is not None
                and (value.min is None or profile.age >= value.min)
                and (value.max is None or profile.age <= value.max)
            )
        elif key == "religion":
            ok = _same(profile.religion, value)
        elif key == "smoking":
            ok = _same(profile.smoking, value)
        elif key == "drinking":
            ok = _same(profile.drinking_preference, value)
        else:
            ok = False
        hits += int(ok)
    return hits


def vector_scores(
    intent_vector: Union[List[float], Sentinel], profiles: Sequence[CandidateProfile]
) -> List[float]:
    """Cosine similarity clamped to [0, 1]; exactly 0.0 when there is no intent vector."""
    scores = [0.0] * len(profiles)
    if isinstance(intent_vector, Sentinel) or not intent_vector or not profiles:
        return scores

    query = np.asarray(intent_vector, dtype=float).reshape(1, -1)
    dim = query.shape[1]
    rows = [i for i, p in enumerate(profiles) if p.embedding and len(p.embedding) == dim]
    skipped = len(profiles) - len(rows)
    if skipped:
        logger.debug("Skipped %d candidates with embedding size != %d", skipped, dim)
    if not rows:
        return scores

    matrix = np.vstack([np.asarray(profiles[i].embedding, dtype=float) for i in rows])
    sims = cosine_similarity(query, matrix).flatten()
    for i, sim in zip(rows, sims):
        scores[i] = float(min(1.0, max(0.0, sim)))
    return scores


def candidate_pool(
    ordered: Sequence[PoolCandidate], shown: AbstractSet[str], size: int
) -> List[PoolCandidate]:
    """The first ``size`` candidates in retrieval order not already shown."""
    return list(islice((c for c in ordered if c.profile.user_id not in shown), size))


class CandidateRetriever:
    """Scores and orders every eligible candidate for one request.

    Args:
        store: Profile store with block/swipe lookups.
        pool_multiplier: Ranking pool size as a multiple of the page size (>= 3).
        timeout: Seconds allowed for one retrieval; exceeding it is fatal.
    """

    def __init__(
        self,
        store: ProfileStore,
        pool_multiplier: int = MIN_POOL_MULTIPLIER,
        timeout: Optional[float] = None,
    ) -> None:
        if pool_multiplier < MIN_POOL_MULTIPLIER:
            raise ValueError(f"pool_multiplier must be >= {MIN_POOL_MULTIPLIER}")
        self.store = store
        self.pool_multiplier = pool_multiplier
        self.timeout = timeout

    def retrieve(
        self,
        user_id: str,
        intent: Intent,
        intent_vector: Union[List[float], Sentinel],
        exclude_ids: Collection[str] = (),
    ) -> List[PoolCandidate]:
        """Eligible candidates ordered by filter hits, similarity, then user id.

        Raises:
            RetrievalError: The store failed or the call timed out.
        """
        try:
            return call_with_timeout(
                self._retrieve,
                user_id,
                intent,
                intent_vector,
                exclude_ids,
                timeout=self.timeout,
                stage="retrieve",
            )
        except RetrievalError:
            raise
        except Exception as exc:
            logger.error("Candidate retrieval failed for user %s: %s", user_id, exc)
            raise RetrievalError(f"Candidate retrieval failed: {exc}") from exc

    def _retrieve(
        self,
        user_id: str,
        intent: Intent,
        intent_vector: Union[List[float], Sentinel],
        exclude_ids: Collection[str],
    ) -> List[PoolCandidate]:
        requester = self.store.get_profile(user_id)
        excluded = build_exclusion_set(user_id, self.store, exclude_ids)
        genders = target_genders(requester)

        eligible = [p for p in self.store.iter_profiles() if is_eligible(p, excluded, genders)]
        if not eligible:
            return []

        vectors = vector_scores(intent_vector, eligible)
        scored = [
            PoolCandidate(
                profile=p,
                vector=v,
                filter_match=count_filter_matches(p, intent.filters),
            )
            for p, v in zip(eligible, vectors)
        ]
        # Filter hits first, then similarity; user id keeps the order total.
        scored.sort(key=lambda c: (-c.filter_match, -c.vector, c.profile.user_id))
        logger.debug(
            "Retrieved %d eligible candidates (excluded=%d) for user %s",
            len(scored),
            len(excluded),
            user_id,
        )
        return scored
