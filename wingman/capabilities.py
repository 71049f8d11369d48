"""Narrow interfaces for every collaborator the pipeline calls out to.

Model adapters live in ``openai_models`` (production) and ``local_models``
(deterministic doubles). Stores live in ``store``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Set, Union

from .models import (
    CandidateProfile,
    ExplanationDraft,
    Intent,
    IntentExtraction,
    LearnedPreferences,
    ScoredCandidate,
    Sentinel,
)


class IntentModel(Protocol):
    def extract_intent(
        self,
        query: str,
        prior: Optional[Intent] = None,
        learned: Optional[Dict[str, float]] = None,
    ) -> IntentExtraction:
        ...


class EmbeddingModel(Protocol):
    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class ExplanationModel(Protocol):
    def explain(self, candidate: ScoredCandidate, intent: Intent) -> ExplanationDraft:
        ...


class ProfileStore(Protocol):
    def get_profile(self, user_id: str) -> Optional[CandidateProfile]:
        ...

    def iter_profiles(self) -> Iterable[CandidateProfile]:
        ...

    def blocked_ids(self, user_id: str) -> Set[str]:
        """Users blocked by ``user_id`` and users who blocked ``user_id``."""
        ...

    def acted_on_ids(self, user_id: str) -> Set[str]:
        """Users ``user_id`` already swiped on."""
        ...


class PreferenceStore(Protocol):
    def get_learned_preferences(self, user_id: str) -> Union[LearnedPreferences, Sentinel]:
        ...


class AnalyticsSink(Protocol):
    def record(self, user_id: str, event_type: str, metadata: Optional[Dict[str, object]] = None) -> None:
        ...

    def count_since(self, user_id: str, event_types: Sequence[str], since: datetime) -> int:
        ...
