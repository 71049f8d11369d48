"""Deterministic, offline implementations of the model capabilities.

Used by the CLI's ``--local`` mode and by the test suite. They trade quality
for reproducibility: the same input always gives the same output.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence

from sklearn.feature_extraction.text import HashingVectorizer

from .explainer import conversation_starters, match_reasons, tagline_for
from .models import (
    ExplanationDraft,
    Intent,
    IntentExtraction,
    IntentFilters,
    IntentPreferences,
    ScoredCandidate,
)

VIBE_KEYWORDS: Dict[str, List[str]] = {
    "chill": ["chill", "relaxed", "laid back", "laid-back", "calm", "low key", "lowkey"],
    "adventurous": ["adventur", "outdoors", "spontaneous", "travel"],
    "intellectual": ["intellectual", "smart", "nerd", "deep talks", "bookworm", "academic"],
    "social": ["social", "outgoing", "party", "extrovert"],
    "creative": ["creative", "artsy", "artist", "design"],
    "romantic": ["romantic", "relationship", "serious", "love"],
    "ambitious": ["ambitious", "driven", "goal", "hustle"],
}

INTERESTS = [
    "music", "hiking", "coding", "gym", "fitness", "art", "books", "reading", "movies",
    "football", "basketball", "dance", "cooking", "travel", "gaming", "photography",
    "fashion", "poetry", "running", "church",
]

TRAITS = [
    "funny", "kind", "ambitious", "creative", "introverted", "extroverted", "outgoing",
    "smart", "caring", "spontaneous", "adventurous", "chill", "confident", "honest",
]

PERSONALITY = ["calm", "loud", "quiet", "introvert", "extrovert", "sarcastic", "witty"]

COURSES = [
    "computer science", "law", "medicine", "engineering", "business", "finance",
    "economics", "architecture", "psychology", "journalism",
]

_MBTI = re.compile(r"\b([ie][ns][tf][jp])\b", re.I)
_YEAR = re.compile(r"\b(?:year\s*([1-6])|([1-6])(?:st|nd|rd|th)\s*year)\b", re.I)
_FEMALE = re.compile(r"\b(girl|girls|woman|women|female|lady|ladies)\b", re.I)
_MALE = re.compile(r"\b(guy|guys|man|men|male|boy|boys|dude)\b", re.I)
_REFINE_START = re.compile(r"^(but|and|also|more|less|same|someone else|show me more|actually)\b", re.I)


def _contains(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}", text) is not None


class KeywordIntentModel:
    """Rule-based intent extraction from keyword vocabularies."""

    def extract_intent(
        self,
        query: str,
        prior: Optional[Intent] = None,
        learned: Optional[Dict[str, float]] = None,
    ) -> IntentExtraction:
        text = query.lower()
        signals = 0

        vibe = "any"
        for name, words in VIBE_KEYWORDS.items():
            if any(w in text for w in words):
                vibe = name
                signals += 1
                break

        filters: Dict[str, object] = {}
        if _FEMALE.search(text) and not _MALE.search(text):
            filters["gender"] = ["female"]
        elif _MALE.search(text) and not _FEMALE.search(text):
            filters["gender"] = ["male"]
        year = _YEAR.search(text)
        if year:
            filters["year_of_study"] = [int(year.group(1) or year.group(2))]
        for course in COURSES:
            if _contains(text, course):
                filters["course"] = course
                break
        if re.search(r"non[- ]?smok|doesn'?t smoke|no smok", text):
            filters["smoking"] = "no"
        if re.search(r"doesn'?t drink|sober|no alcohol", text):
            filters["drinking"] = "never"
        signals += len(filters)

        interests = [i for i in INTERESTS if _contains(text, i)]
        traits = [t for t in TRAITS if _contains(text, t)]
        personality = [p for p in PERSONALITY if _contains(text, p)]
        personality += [m.upper() for m in _MBTI.findall(query)]
        signals += len(interests) + len(traits) + len(personality)

        is_refinement = bool(prior is not None and _REFINE_START.search(text))
        action = None
        if is_refinement:
            if "show me more" in text or "more like" in text:
                action = "more_like"
            elif "someone else" in text or "instead" in text or "different" in text:
                action = "different"
            elif text.startswith("less"):
                action = "broaden"
            else:
                action = "narrow"

        return IntentExtraction(
            vibe=vibe,
            filters=IntentFilters(**filters),
            preferences=IntentPreferences(
                traits=traits, interests=interests, personality=personality
            ),
            semantic_query=query.strip(),
            confidence=min(0.9, 0.4 + 0.1 * signals),
            is_refinement=is_refinement,
            refinement_action=action,
        )


class HashingEmbeddingModel:
    """Stateless bag-of-words embeddings via scikit-learn's HashingVectorizer."""

    def __init__(self, n_features: int = 256) -> None:
        self.vectorizer = HashingVectorizer(
            n_features=n_features,
            alternate_sign=False,
            norm="l2",
            ngram_range=(1, 2),
        )

    def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        matrix = self.vectorizer.transform(list(texts))
        return [row.toarray().ravel().tolist() for row in matrix]


class TemplateExplanationModel:
    """Rule-based explanations built from ranking signals and profile fields."""

    def explain(self, candidate: ScoredCandidate, intent: Intent) -> ExplanationDraft:
        reasons = match_reasons(candidate, intent)
        return ExplanationDraft(
            tagline=tagline_for(candidate, intent),
            summary=". ".join(reasons[:2]) + ".",
            conversation_starters=conversation_starters(candidate, intent),
        )
