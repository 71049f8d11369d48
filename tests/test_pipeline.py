import dataclasses
import json
import threading

import pytest

from conftest import (
    CannedExplanationModel,
    FixedEmbeddingModel,
    RaisingPreferenceStore,
    StaticIntentModel,
    make_extraction,
    make_profile,
)

from wingman.config import WingmanSettings
from wingman.errors import InvalidRequestError, QuotaExceededError, RetrievalError
from wingman.models import INTERNAL_PROFILE_FIELDS, Intent, IntentFilters, SearchRequest
from wingman.pipeline import refinement_hints
from wingman.store import InMemoryProfileStore


def _request(**kwargs) -> SearchRequest:
    data = {"user_id": "me", "query_text": "someone chill and kind"}
    data.update(kwargs)
    return SearchRequest(**data)


def test_search_ranks_and_explains(make_pipeline):
    resp = make_pipeline().search(_request())
    ids = [m.profile["user_id"] for m in resp.matches]
    assert ids == ["alice", "bea", "cleo"]
    assert [m.scores.vector for m in resp.matches] == [100, 60, 0]
    assert all(m.scores.preference == 50 for m in resp.matches)
    assert resp.matches[0].scores.total == pytest.approx(0.65)
    assert resp.matches[0].explanation.match_percentage == 65
    assert resp.meta.total_found == 3
    assert resp.meta.pool_size == 3
    assert resp.meta.has_more is False
    assert resp.meta.next_offset == 20
    assert resp.meta.degraded_stages == []
    assert resp.intent.vibe == "chill"


def test_responses_are_sanitized(make_pipeline):
    resp = make_pipeline().search(_request())
    for match in resp.matches:
        assert not INTERNAL_PROFILE_FIELDS & set(match.profile)
    dumped = json.loads(resp.model_dump_json())
    text = json.dumps(dumped)
    for field in INTERNAL_PROFILE_FIELDS:
        assert f'"{field}"' not in text


def test_parser_failure_skips_embedding(make_pipeline):
    embedder = FixedEmbeddingModel()
    pipeline = make_pipeline(
        intent_model=StaticIntentModel(error=RuntimeError("llm down")), embedding_model=embedder
    )
    resp = pipeline.search(_request())
    assert resp.intent.confidence == 0.2
    assert resp.intent.vibe == "any"
    assert embedder.calls == []
    assert resp.meta.degraded_stages == ["parse_intent"]
    assert all(m.scores.vector == 0 for m in resp.matches)
    assert [m.profile["user_id"] for m in resp.matches] == ["alice", "bea", "cleo"]


def test_embedding_failure_is_degraded(make_pipeline):
    pipeline = make_pipeline(embedding_model=FixedEmbeddingModel(error=TimeoutError("slow")))
    resp = pipeline.search(_request())
    assert resp.meta.degraded_stages == ["embed_intent"]
    assert len(resp.matches) == 3


def test_throwing_preference_store_is_neutral(make_pipeline):
    resp = make_pipeline(preferences=RaisingPreferenceStore()).search(_request())
    assert [m.profile["user_id"] for m in resp.matches] == ["alice", "bea", "cleo"]
    assert all(m.scores.preference == 50 for m in resp.matches)


def test_learned_preferences_change_order(make_pipeline):
    pipeline = make_pipeline(initial_prefs={"me": {"course_medicine": 1.0}})
    resp = pipeline.search(_request())
    # bea: 0.5 * 0.6 + 0.3 * 1.0 = 0.6 vs alice: 0.5 * 1.0 + 0.0 = 0.5
    assert [m.profile["user_id"] for m in resp.matches][:2] == ["bea", "alice"]


def test_explanations_match_page_length(make_pipeline):
    pipeline = make_pipeline(explanation_model=CannedExplanationModel(fail_for=["bea"]))
    resp = pipeline.search(_request(limit=2))
    assert len(resp.matches) == 2
    assert resp.matches[1].explanation.tagline == "Discovered for you"
    assert resp.meta.degraded_stages == ["explain"]


def test_retrieval_failure_is_fatal(make_pipeline):
    class BrokenStore(InMemoryProfileStore):
        def iter_profiles(self):
            raise ConnectionError("db down")

    with pytest.raises(RetrievalError):
        make_pipeline(store=BrokenStore()).search(_request())


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"user_id": ""}, "missing_user"),
        ({"query_text": None}, "empty"),
        ({"query_text": "hi"}, "too_short"),
        ({"limit": 0}, "bad_limit"),
        ({"offset": -1}, "bad_offset"),
    ],
)
def test_invalid_requests_rejected_before_pipeline(make_pipeline, kwargs, code):
    intent_model = StaticIntentModel()
    with pytest.raises(InvalidRequestError) as err:
        make_pipeline(intent_model=intent_model).search(_request(**kwargs))
    assert err.value.code == code
    assert intent_model.calls == []


def test_daily_quota(make_pipeline, settings, analytics):
    limited = WingmanSettings(
        parse_timeout=settings.parse_timeout,
        explain_timeout=settings.explain_timeout,
        daily_search_limit=2,
    )
    pipeline = make_pipeline(settings_override=limited)
    pipeline.search(_request())
    pipeline.search(_request())
    with pytest.raises(QuotaExceededError) as err:
        pipeline.search(_request())
    assert err.value.used == 2
    assert [e["event_type"] for e in analytics.events] == ["agent_search", "agent_search"]
    assert pipeline.quota("me").remaining == 0
    assert pipeline.quota("someone-else").remaining == 2


def test_refine_merges_onto_prior_intent(make_pipeline, analytics):
    prior = Intent(
        vibe="chill",
        filters=IntentFilters(year_of_study=[2]),
        semantic_query="someone chill",
        confidence=0.9,
    )
    model = StaticIntentModel(
        make_extraction(vibe="any", filters=IntentFilters(course="Law"), semantic_query="more outgoing", confidence=0.7)
    )
    resp = make_pipeline(intent_model=model).refine("me", "but more outgoing", prior_intent=prior)
    assert model.calls == ["but more outgoing"]
    assert resp.intent.filters.year_of_study == [2]
    assert resp.intent.filters.course == "Law"
    assert resp.intent.vibe == "chill"
    assert resp.intent.confidence == 0.7
    assert resp.intent.is_refinement is True
    assert resp.effective_query == "someone chill, but more outgoing"
    assert "more outgoing" not in resp.refinement_hints
    assert resp.matches[0].profile["user_id"] == "alice"
    assert analytics.events[-1]["event_type"] == "agent_refine"


def test_refine_without_prior_searches_effective_query(make_pipeline):
    model = StaticIntentModel()
    make_pipeline(intent_model=model).refine("me", "more spontaneous", original_query="someone chill")
    assert model.calls == ["someone chill, but more spontaneous"]


def test_refined_query_length_limit(make_pipeline):
    with pytest.raises(InvalidRequestError) as err:
        make_pipeline().refine("me", "someone who really loves hiking " * 5, original_query="x" * 600)
    assert err.value.code == "too_long"


def test_refinement_hints():
    assert refinement_hints("someone chill") == [
        "more outgoing",
        "same course",
        "different personality type",
        "more academically focused",
    ]
    assert "same course" not in refinement_hints("someone on my course")


def test_stale_result_is_dropped(make_pipeline):
    pipeline = make_pipeline()
    first = pipeline.gate.issue("me")
    assert pipeline.search_latest(_request()) is not None
    assert not pipeline.gate.is_current("me", first)


def test_local_models_end_to_end():
    from wingman.local_models import HashingEmbeddingModel, KeywordIntentModel, TemplateExplanationModel
    from wingman.pipeline import WingmanPipeline
    from wingman.store import InMemoryPreferenceStore

    embedder = HashingEmbeddingModel()
    hiker, gamer = embedder.embed(
        ["chill hiker who loves hiking and music", "competitive gamer basketball every weekend"]
    )
    store = InMemoryProfileStore(
        [
            make_profile("me", gender="male"),
            make_profile("hana", embedding=hiker, interests=["hiking"]),
            make_profile("gia", embedding=gamer, interests=["gaming"]),
        ]
    )
    pipeline = WingmanPipeline(
        profiles=store,
        intent_model=KeywordIntentModel(),
        embedding_model=embedder,
        explanation_model=TemplateExplanationModel(),
        preferences=InMemoryPreferenceStore(),
    )
    resp = pipeline.search(_request(query_text="someone chill who loves hiking"))
    assert resp.intent.vibe == "chill"
    assert resp.intent.preferences.interests == ["hiking"]
    assert [m.profile["user_id"] for m in resp.matches] == ["hana", "gia"]
    assert resp.matches[0].scores.vector > resp.matches[1].scores.vector


def test_following_next_offset_shows_every_candidate_once(make_pipeline):
    store = InMemoryProfileStore(
        [make_profile("me", gender="male")]
        + [make_profile(f"u{i:02d}", embedding=(1.0, i / 5)) for i in range(9)]
    )
    pipeline = make_pipeline(store=store)
    seen, offset = [], 0
    while True:
        resp = pipeline.search(_request(limit=3, offset=offset))
        seen.extend(m.profile["user_id"] for m in resp.matches)
        if not resp.meta.has_more:
            break
        offset = resp.meta.next_offset
    assert len(seen) == 9
    assert set(seen) == {f"u{i:02d}" for i in range(9)}


def test_degraded_refinement_keeps_the_combined_query(make_pipeline):
    prior = Intent(
        vibe="chill",
        filters=IntentFilters(course="Law"),
        semantic_query="someone chill on my course",
        confidence=0.9,
    )
    model = StaticIntentModel(error=RuntimeError("llm down"))
    resp = make_pipeline(intent_model=model).refine("me", "but more outgoing", prior_intent=prior)
    assert model.calls == ["but more outgoing"]
    assert resp.intent.semantic_query == "someone chill on my course, but more outgoing"
    assert resp.intent.semantic_query == resp.effective_query
    assert resp.meta.degraded_stages == ["parse_intent"]


def test_concurrent_searches_cannot_overrun_quota(make_pipeline, settings, analytics):
    class BlockingIntentModel(StaticIntentModel):
        def __init__(self):
            super().__init__()
            self.entered = threading.Semaphore(0)
            self.release = threading.Event()

        def extract_intent(self, query, prior=None, learned=None):
            self.entered.release()
            self.release.wait(5)
            return super().extract_intent(query, prior, learned)

    model = BlockingIntentModel()
    pipeline = make_pipeline(
        intent_model=model,
        settings_override=dataclasses.replace(settings, parse_timeout=5.0, daily_search_limit=2),
    )
    threads = [threading.Thread(target=pipeline.search, args=(_request(),)) for _ in range(2)]
    for t in threads:
        t.start()
    try:
        assert model.entered.acquire(timeout=2)
        assert model.entered.acquire(timeout=2)
        with pytest.raises(QuotaExceededError) as err:
            pipeline.search(_request())
        assert err.value.used == 2
    finally:
        model.release.set()
        for t in threads:
            t.join(5)
    assert [e["event_type"] for e in analytics.events] == ["agent_search", "agent_search"]
    assert pipeline.quota("me").remaining == 0


def test_slow_explanations_do_not_starve_retrieval(make_pipeline, settings):
    release = threading.Event()

    class StuckExplanationModel:
        def explain(self, candidate, intent):
            release.wait(5)
            raise RuntimeError("too late")

    fast = dataclasses.replace(
        settings, explain_timeout=0.05, retrieval_timeout=0.5, daily_search_limit=100
    )
    pipeline = make_pipeline(explanation_model=StuckExplanationModel(), settings_override=fast)
    try:
        # 12 searches x 3 candidates leave more stuck calls than there are explain workers.
        for _ in range(12):
            resp = pipeline.search(_request())
            assert len(resp.matches) == 3
            assert resp.meta.degraded_stages == ["explain"]
    finally:
        release.set()


def test_latest_gate_keys_on_clean_user_id(make_pipeline):
    pipeline = make_pipeline()
    stale = pipeline.gate.issue("me")
    assert pipeline.search_latest(_request(user_id="  me ")) is not None
    assert not pipeline.gate.is_current("me", stale)
    assert pipeline.gate.pending() == 0
