"""OpenAI-backed model capabilities.

Each adapter uses the Responses API with structured outputs (pydantic
``text_format``) or the embeddings endpoint, retries transient failures a
couple of times, then raises ``ModelCallError``. The pipeline turns that into
the stage's fallback.
"""
from __future__ import annotations

import json
import os
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from openai import OpenAI

from .config import DEFAULT_CHAT_MODEL, DEFAULT_EMBEDDING_MODEL
from .errors import ModelCallError
from .models import ExplanationDraft, Intent, IntentExtraction, ScoredCandidate

T = TypeVar("T")

INTENT_SYSTEM_PROMPT = (
    "You are an intent parser for a university dating app's AI matchmaker. "
    "Parse the user's query into structured search parameters. "
    "Extract hard filters (gender, year_of_study, course, university, age_range, religion, "
    "smoking, drinking) ONLY if explicitly mentioned; leave the rest null. "
    "Extract soft preferences (traits, interests, personality) from implied meaning. "
    "Write semantic_query as a 2-3 sentence personality description of the ideal match. "
    "Rate confidence from 0 to 1 honestly; use a low value when the query is vague. "
    "vibe captures the overall energy they are looking for. "
    "If the query is a follow-up to the previous search, set is_refinement=true and pick "
    "refinement_action: narrow, broaden, different (full restatement) or more_like. "
    "Never invent filters that were not mentioned. "
    "Respond ONLY with the structured fields defined by the schema."
)

EXPLANATION_SYSTEM_PROMPT = (
    "You are a warm, casual AI wingman on a campus dating app. "
    "Given what the searcher asked for and one matched profile, write: a tagline of at most "
    "six words, a 1-2 sentence summary of why they fit that references real profile details, "
    "up to three fun conversation starters tied to their profile, and a single emoji. "
    "Do NOT mention numeric scores. Do NOT invent details that are not in the profile. "
    "Respond ONLY with the structured fields defined by the schema."
)


def _with_retries(fn: Callable[[], T], max_retries: int, what: str) -> T:
    last: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            return fn()
        except Exception as exc:
            last = exc
            if attempt < max_retries:
                time.sleep(0.8 * attempt)
    raise ModelCallError(f"{what} failed after {max_retries} attempts: {last}") from last


def _profile_payload(candidate: ScoredCandidate) -> Dict[str, Any]:
    p = candidate.profile
    return {
        "first_name": p.first_name,
        "age": p.age,
        "course": p.course,
        "year_of_study": p.year_of_study,
        "interests": p.interests,
        "about": p.about_me or p.bio,
        "personality": p.personality_summary,
        "personality_type": p.personality_type,
        "communication_style": p.communication_style,
        "looking_for": p.looking_for,
        "prompts": [pr.response for pr in p.prompts[:2]],
    }


class OpenAIIntentModel:
    def __init__(
        self,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None,
        max_retries: int = 2,
    ) -> None:
        self.model = model or os.environ.get("OPENAI_MODEL", DEFAULT_CHAT_MODEL)
        self.client = client or OpenAI()
        self.max_retries = max_retries

    def extract_intent(
        self,
        query: str,
        prior: Optional[Intent] = None,
        learned: Optional[Dict[str, float]] = None,
    ) -> IntentExtraction:
        payload: Dict[str, Any] = {"query": query}
        if prior is not None:
            payload["previous_search"] = {
                "semantic_query": prior.semantic_query,
                "vibe": prior.vibe,
            }
        if learned:
            payload["learned_preferences"] = learned
        messages: Any = [
            {"role": "system", "content": INTENT_SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]

        def call() -> IntentExtraction:
            parsed = self.client.responses.parse(  # type: ignore[call-arg]
                model=self.model,
                input=messages,
                text_format=IntentExtraction,  # type: ignore[arg-type]
            )
            if getattr(parsed, "output_parsed", None) is None:
                raise ValueError("Structured parse returned None")
            return parsed.output_parsed  # type: ignore[return-value]

        return _with_retries(call, self.max_retries, "Intent extraction")


class OpenAIEmbeddingModel:
    def __init__(
        self,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None,
        max_retries: int = 2,
    ) -> None:
        self.model = model or os.environ.get("OPENAI_EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
        self.client = client or OpenAI()
        self.max_retries = max_retries

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []

        def call() -> List[List[float]]:
            resp = self.client.embeddings.create(model=self.model, input=list(texts))
            return [list(item.embedding) for item in resp.data]

        return _with_retries(call, self.max_retries, "Embedding")


class OpenAIExplanationModel:
    def __init__(
        self,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None,
        max_retries: int = 1,
    ) -> None:
        self.model = model or os.environ.get("OPENAI_MODEL", DEFAULT_CHAT_MODEL)
        self.client = client or OpenAI()
        self.max_retries = max_retries

    def explain(self, candidate: ScoredCandidate, intent: Intent) -> ExplanationDraft:
        payload = {
            "searched_for": intent.semantic_query,
            "vibe": intent.vibe,
            "wanted_interests": intent.preferences.interests,
            "wanted_traits": intent.preferences.traits,
            "profile": _profile_payload(candidate),
        }
        messages: Any = [
            {"role": "system", "content": EXPLANATION_SYSTEM_PROMPT},
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]

        def call() -> ExplanationDraft:
            parsed = self.client.responses.parse(  # type: ignore[call-arg]
                model=self.model,
                input=messages,
                text_format=ExplanationDraft,  # type: ignore[arg-type]
            )
            if getattr(parsed, "output_parsed", None) is None:
                raise ValueError("Structured parse returned None")
            return parsed.output_parsed  # type: ignore[return-value]

        return _with_retries(call, self.max_retries, "Explanation")
