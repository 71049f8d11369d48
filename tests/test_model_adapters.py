from types import SimpleNamespace

import pytest

from conftest import make_extraction, make_profile

from wingman import openai_models
from wingman.errors import ModelCallError
from wingman.local_models import HashingEmbeddingModel, KeywordIntentModel, TemplateExplanationModel
from wingman.models import ExplanationDraft, Intent, ScoreBreakdown, ScoredCandidate
from wingman.openai_models import OpenAIEmbeddingModel, OpenAIExplanationModel, OpenAIIntentModel


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(openai_models.time, "sleep", lambda s: None)


def _client(parse=None, create=None):
    return SimpleNamespace(
        responses=SimpleNamespace(parse=parse),
        embeddings=SimpleNamespace(create=create),
    )


def test_openai_intent_retries_then_succeeds():
    calls = []

    def parse(model, input, text_format):
        calls.append(model)
        if len(calls) == 1:
            raise ConnectionError("reset")
        return SimpleNamespace(output_parsed=make_extraction(vibe="social"))

    model = OpenAIIntentModel(model="test-model", client=_client(parse=parse))
    assert model.extract_intent("someone outgoing").vibe == "social"
    assert calls == ["test-model", "test-model"]


def test_openai_intent_raises_after_retries():
    def parse(model, input, text_format):
        return SimpleNamespace(output_parsed=None)

    with pytest.raises(ModelCallError):
        OpenAIIntentModel(model="m", client=_client(parse=parse), max_retries=2).extract_intent("q")


def test_openai_embeddings():
    def create(model, input):
        return SimpleNamespace(data=[SimpleNamespace(embedding=[0.1 * len(t)]) for t in input])

    model = OpenAIEmbeddingModel(model="emb", client=_client(create=create))
    assert model.embed(["ab", "abcd"]) == [pytest.approx([0.2]), pytest.approx([0.4])]
    assert model.embed([]) == []


def test_openai_explanation_payload_has_no_embedding():
    seen = {}

    def parse(model, input, text_format):
        seen["payload"] = input[1]["content"]
        return SimpleNamespace(output_parsed=ExplanationDraft(tagline="t", summary="s"))

    candidate = ScoredCandidate(
        profile=make_profile("a", embedding=(0.123456, 0.654321)),
        scores=ScoreBreakdown(vector=0.5, preference=0.5, filter_match=0),
        total=0.5,
    )
    intent = Intent(semantic_query="someone", confidence=0.5)
    OpenAIExplanationModel(model="m", client=_client(parse=parse)).explain(candidate, intent)
    assert "0.123456" not in seen["payload"]


def test_keyword_intent_model():
    extraction = KeywordIntentModel().extract_intent(
        "chill girl in 2nd year computer science who loves hiking, INFJ, non-smoker"
    )
    assert extraction.vibe == "chill"
    assert extraction.filters.gender == ["female"]
    assert extraction.filters.year_of_study == [2]
    assert extraction.filters.course == "computer science"
    assert extraction.filters.smoking == "no"
    assert "hiking" in extraction.preferences.interests
    assert "INFJ" in extraction.preferences.personality
    assert extraction.confidence == 0.9
    assert extraction.is_refinement is False


def test_keyword_intent_model_refinement_needs_prior():
    prior = Intent(semantic_query="someone chill", confidence=0.8)
    model = KeywordIntentModel()
    assert model.extract_intent("but more outgoing", prior=prior).refinement_action == "narrow"
    assert model.extract_intent("but more outgoing").is_refinement is False


def test_hashing_embeddings_are_deterministic_and_normalized():
    model = HashingEmbeddingModel(n_features=64)
    first, second = model.embed(["chill hiker", "chill hiker"])
    assert first == second
    assert len(first) == 64
    assert sum(x * x for x in first) == pytest.approx(1.0)


def test_template_explanations():
    candidate = ScoredCandidate(
        profile=make_profile("a", course="Law", interests=["hiking"]),
        scores=ScoreBreakdown(vector=0.8, preference=0.5, filter_match=0),
        total=0.62,
    )
    intent = Intent(semantic_query="hiker", confidence=0.5)
    draft = TemplateExplanationModel().explain(candidate, intent)
    assert draft.tagline == "Law student"
    assert draft.summary.startswith("Strong match")
    assert draft.conversation_starters[0] == "How's Law treating you this semester?"
