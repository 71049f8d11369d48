from typing import Dict, List, Optional, Sequence

import pytest

from wingman.config import WingmanSettings
from wingman.models import (
    CandidateProfile,
    ExplanationDraft,
    Intent,
    IntentExtraction,
    IntentFilters,
    IntentPreferences,
    ScoredCandidate,
)
from wingman.pipeline import WingmanPipeline
from wingman.store import InMemoryAnalyticsSink, InMemoryPreferenceStore, InMemoryProfileStore


def make_profile(user_id: str, embedding=(1.0, 0.0), gender: str = "female", **kwargs) -> CandidateProfile:
    data = {
        "user_id": user_id,
        "first_name": user_id.capitalize(),
        "gender": gender,
        "embedding": list(embedding) if embedding is not None else None,
    }
    data.update(kwargs)
    return CandidateProfile(**data)


def make_extraction(**kwargs) -> IntentExtraction:
    data = {
        "vibe": "chill",
        "filters": IntentFilters(),
        "preferences": IntentPreferences(),
        "semantic_query": "someone chill and kind",
        "confidence": 0.8,
    }
    data.update(kwargs)
    return IntentExtraction(**data)


class StaticIntentModel:
    def __init__(self, extraction: Optional[IntentExtraction] = None, error: Optional[Exception] = None):
        self.extraction = extraction or make_extraction()
        self.error = error
        self.calls: List[str] = []

    def extract_intent(self, query, prior=None, learned=None):
        self.calls.append(query)
        if self.error is not None:
            raise self.error
        return self.extraction


class FixedEmbeddingModel:
    def __init__(self, vector: Sequence[float] = (1.0, 0.0), error: Optional[Exception] = None):
        self.vector = list(vector)
        self.error = error
        self.calls: List[List[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [list(self.vector) for _ in texts]


class CannedExplanationModel:
    def __init__(self, fail_for: Sequence[str] = ()):
        self.fail_for = set(fail_for)
        self.calls: List[str] = []

    def explain(self, candidate: ScoredCandidate, intent: Intent) -> ExplanationDraft:
        self.calls.append(candidate.profile.user_id)
        if candidate.profile.user_id in self.fail_for:
            raise RuntimeError("model unavailable")
        return ExplanationDraft(
            tagline=f"Meet {candidate.profile.first_name}",
            summary="You both like a slow Sunday.",
            conversation_starters=["Best brunch spot?", "Sunrise or sunset?", "Tea or coffee?", "extra"],
        )


class RaisingPreferenceStore:
    def get_learned_preferences(self, user_id):
        raise ConnectionError("preferences db down")


@pytest.fixture
def requester() -> CandidateProfile:
    return make_profile("me", gender="male", embedding=(0.5, 0.5))


@pytest.fixture
def profile_store(requester) -> InMemoryProfileStore:
    return InMemoryProfileStore(
        [
            requester,
            make_profile("alice", embedding=(1.0, 0.0), course="Law", interests=["music", "hiking"]),
            make_profile("bea", embedding=(0.6, 0.8), course="Medicine"),
            make_profile("cleo", embedding=(0.0, 1.0)),
            make_profile("dan", gender="male", embedding=(1.0, 0.0)),
        ]
    )


@pytest.fixture
def settings() -> WingmanSettings:
    return WingmanSettings(parse_timeout=2.0, embed_timeout=2.0, explain_timeout=2.0, retrieval_timeout=2.0)


@pytest.fixture
def analytics() -> InMemoryAnalyticsSink:
    return InMemoryAnalyticsSink()


@pytest.fixture
def make_pipeline(profile_store, settings, analytics):
    def _make(
        intent_model=None,
        embedding_model=None,
        explanation_model=None,
        preferences=None,
        store=None,
        settings_override: Optional[WingmanSettings] = None,
        initial_prefs: Optional[Dict[str, Dict[str, float]]] = None,
    ) -> WingmanPipeline:
        return WingmanPipeline(
            profiles=store or profile_store,
            intent_model=intent_model or StaticIntentModel(),
            embedding_model=embedding_model or FixedEmbeddingModel(),
            explanation_model=explanation_model or CannedExplanationModel(),
            preferences=preferences or InMemoryPreferenceStore(initial_prefs),
            analytics=analytics,
            settings=settings_override or settings,
        )

    return _make
