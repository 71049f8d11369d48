"""The wingman search pipeline.

parse intent -> embed intent -> retrieve pool -> rank -> explain -> sanitize

Every stage except retrieval has a fallback, so a slow or broken model makes
the answer worse rather than making the request fail. Stages that fell back
are listed in ``SearchResponse.meta.degraded_stages``.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Collection, Dict, Iterator, List, Optional, Tuple

from .capabilities import (
    AnalyticsSink,
    EmbeddingModel,
    ExplanationModel,
    IntentModel,
    PreferenceStore,
    ProfileStore,
)
from .concurrency import LatestRequestGate
from .config import MAX_REFINED_QUERY_CHARS, WingmanSettings
from .embedder import embed_intent
from .errors import InvalidRequestError, QuotaExceededError
from .explainer import explain_with_failures, result_commentary
from .intent_parser import parse_intent
from .models import (
    NO_EMBEDDING,
    Explanation,
    Intent,
    MatchResult,
    MatchScores,
    ScoredCandidate,
    SearchMeta,
    SearchRequest,
    SearchResponse,
)
from .preferences import read_learned_preferences
from .ranker import rank_page
from .retriever import CandidateRetriever
from .validation import validate_page, validate_query, validate_user_id

logger = logging.getLogger(__name__)

SEARCH_EVENTS = ("agent_search", "agent_refine")

_LEADING_CONJUNCTION = re.compile(r"^(but|and)\s+", re.I)

REFINEMENT_HINTS = [
    "more outgoing",
    "same course",
    "different personality type",
    "more academically focused",
    "more spontaneous",
]


@dataclass(frozen=True)
class SearchQuota:
    used: int
    limit: int
    resets_at: datetime

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def utc_day_bounds(now: datetime) -> Tuple[datetime, datetime]:
    start = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def refinement_hints(query: str, n: int = 4) -> List[str]:
    """Suggested follow-ups the query does not already cover."""
    lowered = query.lower()
    return [h for h in REFINEMENT_HINTS if h.split(" ")[1] not in lowered][:n]


def to_match_result(candidate: ScoredCandidate, explanation: Explanation) -> MatchResult:
    return MatchResult(
        profile=candidate.profile.sanitized(),
        explanation=explanation,
        scores=MatchScores(
            total=candidate.total,
            vector=round(candidate.scores.vector * 100),
            preference=round(candidate.scores.preference * 100),
            filter_match=candidate.scores.filter_match,
        ),
    )


class WingmanPipeline:
    """Stateless pipeline over injected collaborators.

    Holds nothing per request, so one instance can serve concurrent requests.

    Args:
        profiles: Profile store used for retrieval.
        intent_model: Free text -> IntentExtraction.
        embedding_model: Text -> vectors.
        explanation_model: Candidate + Intent -> ExplanationDraft.
        preferences: Read-only learned-preference store.
        analytics: Optional event sink; enables the daily search quota.
        settings: Timeouts, pool multiplier, weights and quota.
    """

    def __init__(
        self,
        profiles: ProfileStore,
        intent_model: IntentModel,
        embedding_model: EmbeddingModel,
        explanation_model: ExplanationModel,
        preferences: PreferenceStore,
        analytics: Optional[AnalyticsSink] = None,
        settings: Optional[WingmanSettings] = None,
    ) -> None:
        self.settings = settings or WingmanSettings()
        self.intent_model = intent_model
        self.embedding_model = embedding_model
        self.explanation_model = explanation_model
        self.preferences = preferences
        self.analytics = analytics
        self.retriever = CandidateRetriever(
            profiles,
            pool_multiplier=self.settings.pool_multiplier,
            timeout=self.settings.retrieval_timeout,
        )
        self.gate = LatestRequestGate()
        self._quota_lock = threading.Lock()
        self._in_flight: Dict[str, int] = {}

    # Quota

    def quota(self, user_id: str, now: Optional[datetime] = None) -> SearchQuota:
        start, end = utc_day_bounds(now or datetime.now(timezone.utc))
        used = 0
        if self.analytics is not None:
            used = self.analytics.count_since(user_id, SEARCH_EVENTS, start)
        return SearchQuota(used=used, limit=self.settings.daily_search_limit, resets_at=end)

    @contextmanager
    def _reserve_quota(self, user_id: str) -> Iterator[None]:
        """Hold one quota slot while a search runs.

        Searches still in flight count against the limit, so concurrent
        requests near the limit cannot all pass before any of them is recorded.
        """
        if self.analytics is None:
            yield
            return
        with self._quota_lock:
            quota = self.quota(user_id)
            used = quota.used + self._in_flight.get(user_id, 0)
            if used >= quota.limit:
                raise QuotaExceededError(used, quota.limit, quota.resets_at.isoformat())
            self._in_flight[user_id] = self._in_flight.get(user_id, 0) + 1
        try:
            yield
        finally:
            with self._quota_lock:
                left = self._in_flight[user_id] - 1
                if left:
                    self._in_flight[user_id] = left
                else:
                    del self._in_flight[user_id]

    def _track(self, user_id: str, event_type: str, response: SearchResponse) -> None:
        if self.analytics is None:
            return
        try:
            self.analytics.record(
                user_id,
                event_type,
                {
                    "query": response.effective_query,
                    "result_count": len(response.matches),
                    "latency_ms": response.meta.latency_ms,
                    "degraded_stages": list(response.meta.degraded_stages),
                },
            )
        except Exception as exc:
            logger.warning("Failed to record %s for user %s: %s", event_type, user_id, exc)

    # Entry points

    def search(self, request: SearchRequest) -> SearchResponse:
        """Validate, check quota, run the pipeline and record the search."""
        user_id = validate_user_id(request.user_id)
        validate_page(request.limit, request.offset)
        query = validate_query(request.query_text)
        with self._reserve_quota(user_id):
            response = self.run(
                user_id,
                query,
                prior_intent=request.prior_intent,
                exclude_ids=request.exclude_ids,
                limit=request.limit,
                offset=request.offset,
            )
            self._track(user_id, "agent_search", response)
        return response

    def search_latest(self, request: SearchRequest) -> Optional[SearchResponse]:
        """``search`` that returns None when a newer request for the same user started meanwhile."""
        key = validate_user_id(request.user_id)
        ticket = self.gate.issue(key)
        try:
            response = self.search(request)
        except Exception:
            self.gate.discard(key, ticket)
            raise
        return self.gate.accept(key, ticket, response)

    def refine(
        self,
        user_id: str,
        refinement: str,
        prior_intent: Optional[Intent] = None,
        original_query: Optional[str] = None,
        exclude_ids: Collection[str] = (),
        limit: int = 20,
        offset: int = 0,
    ) -> SearchResponse:
        """Apply a short follow-up onto a previous search.

        With a prior Intent the follow-up is parsed as a refinement and merged
        onto it. Without one, "<original>, but <refinement>" is searched fresh.
        """
        user_id = validate_user_id(user_id)
        validate_page(limit, offset)
        delta = validate_query(refinement)
        base = original_query or (prior_intent.semantic_query if prior_intent else "")
        if not base.strip():
            raise InvalidRequestError(
                "empty", "Nothing to refine yet. Start with a search first."
            )
        effective = f"{base.strip()}, but {_LEADING_CONJUNCTION.sub('', delta)}"
        if len(effective) > MAX_REFINED_QUERY_CHARS:
            raise InvalidRequestError(
                "too_long", f"Refined query too long (max {MAX_REFINED_QUERY_CHARS} chars)."
            )
        with self._reserve_quota(user_id):
            if prior_intent is not None:
                # A failed parse falls back to the combined text, not the bare delta.
                response = self.run(
                    user_id,
                    delta,
                    prior_intent=prior_intent,
                    refine=True,
                    fallback_query=effective,
                    exclude_ids=exclude_ids,
                    limit=limit,
                    offset=offset,
                )
            else:
                response = self.run(
                    user_id, effective, exclude_ids=exclude_ids, limit=limit, offset=offset
                )
            response = response.model_copy(
                update={"effective_query": effective, "refinement_hints": refinement_hints(effective)}
            )
            self._track(user_id, "agent_refine", response)
        return response

    def run(
        self,
        user_id: str,
        query: str,
        prior_intent: Optional[Intent] = None,
        refine: bool = False,
        fallback_query: Optional[str] = None,
        exclude_ids: Collection[str] = (),
        limit: int = 20,
        offset: int = 0,
        top_n: Optional[int] = None,
    ) -> SearchResponse:
        """Run the stages on an already validated query.

        Args:
            fallback_query: Text for the fallback Intent if parsing fails; defaults to ``query``.
            top_n: Keep only this many of the ranked page (the pack uses 7 of 20).

        Raises:
            RetrievalError: Retrieval failed or timed out.
        """
        started = time.monotonic()
        settings = self.settings
        degraded: List[str] = []

        prefs = read_learned_preferences(self.preferences, user_id)

        parsed = parse_intent(
            query,
            self.intent_model,
            prior=prior_intent,
            preferences=prefs,
            refine=refine,
            fallback_query=fallback_query,
            timeout=settings.parse_timeout,
        )
        if parsed.degraded:
            degraded.append("parse_intent")
        intent = parsed.intent

        vector = embed_intent(
            intent, self.embedding_model, degraded=parsed.degraded, timeout=settings.embed_timeout
        )
        if vector is NO_EMBEDDING and not parsed.degraded:
            degraded.append("embed_intent")

        ordered = self.retriever.retrieve(user_id, intent, vector, exclude_ids=exclude_ids)
        ranked = rank_page(
            ordered,
            intent,
            prefs,
            settings.weights,
            limit=limit,
            offset=offset,
            pool_multiplier=self.retriever.pool_multiplier,
        )
        page = ranked.page[:top_n] if top_n is not None else ranked.page

        explanations, failures = explain_with_failures(
            page, intent, self.explanation_model, timeout=settings.explain_timeout
        )
        if failures:
            degraded.append("explain")

        matches = [to_match_result(c, e) for c, e in zip(page, explanations)]
        latency_ms = int((time.monotonic() - started) * 1000)
        if degraded:
            logger.warning("Search for user %s degraded at %s", user_id, ", ".join(degraded))

        return SearchResponse(
            commentary=result_commentary(len(page), intent, page[0] if page else None),
            matches=matches,
            intent=intent,
            meta=SearchMeta(
                total_found=len(matches),
                has_more=ranked.has_more,
                next_offset=offset + limit,
                pool_size=ranked.pool_size,
                degraded_stages=degraded,
                latency_ms=latency_ms,
            ),
            effective_query=query,
        )
