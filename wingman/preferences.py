"""Learned-preference reading, token extraction and scoring.

Preferences are token -> weight maps in [-1, 1] built from match feedback.
Positive weight means the user liked profiles carrying the token, negative
means they did not. The pipeline only reads them; ``apply_feedback`` is used
by stores that own the state.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Literal, Set, Union

from .capabilities import PreferenceStore
from .models import ABSENT, CandidateProfile, LearnedPreferences, Sentinel

logger = logging.getLogger(__name__)

NEUTRAL_PREFERENCE = 0.5

FeedbackOutcome = Literal["amazing", "nice", "meh", "not_for_me"]

FEEDBACK_WEIGHTS: Dict[str, float] = {
    "amazing": 0.3,
    "nice": 0.1,
    "meh": -0.05,
    "not_for_me": -0.2,
}

# Weights smaller than this are dropped after an update.
PRUNE_BELOW = 0.02


def normalize_token(value: object) -> str:
    return "_".join(str(value).strip().lower().split())


def feedback_tokens(profile: CandidateProfile) -> list[str]:
    """Namespaced tokens learned from feedback on this profile."""
    tokens: list[str] = []
    if profile.personality_type:
        tokens.append(f"personality_{normalize_token(profile.personality_type)}")
    if profile.communication_style:
        tokens.append(f"communication_{normalize_token(profile.communication_style)}")
    if profile.love_language:
        tokens.append(f"love_language_{normalize_token(profile.love_language)}")
    for interest in profile.interests[:5]:
        tokens.append(f"interest_{normalize_token(interest)}")
    if profile.smoking:
        tokens.append(f"smoking_{normalize_token(profile.smoking)}")
    if profile.drinking_preference:
        tokens.append(f"drinking_{normalize_token(profile.drinking_preference)}")
    if profile.workout_frequency:
        tokens.append(f"workout_{normalize_token(profile.workout_frequency)}")
    if profile.course:
        tokens.append(f"course_{normalize_token(profile.course)}")
    if profile.year_of_study:
        tokens.append(f"year_{profile.year_of_study}")
    return tokens


def profile_tokens(profile: CandidateProfile) -> Set[str]:
    """Every token a learned preference can match on: raw traits/interests plus feedback keys."""
    raw: Iterable[object] = [
        *profile.interests,
        *profile.qualities,
        *(x for x in (profile.personality_type, profile.communication_style, profile.love_language) if x),
    ]
    tokens = {normalize_token(x) for x in raw if str(x).strip()}
    tokens.update(feedback_tokens(profile))
    return tokens


def preference_score(
    profile: CandidateProfile, preferences: Union[LearnedPreferences, Sentinel]
) -> float:
    """Weighted overlap normalized by the maximum possible weight sum.

    score = (sum of matched weights + sum of |negative weights|) / sum of |weights|

    Matching every liked token and no disliked one scores 1.0; the reverse
    scores 0.0. Absent preferences, or weights that sum to zero, score a
    neutral 0.5 so nobody is penalized for missing history.
    """
    if isinstance(preferences, Sentinel):
        return NEUTRAL_PREFERENCE
    weights = {normalize_token(k): float(v) for k, v in preferences.weights.items()}
    max_weight = sum(abs(w) for w in weights.values())
    if max_weight <= 0:
        return NEUTRAL_PREFERENCE

    tokens = profile_tokens(profile)
    matched = sum(w for k, w in weights.items() if k in tokens)
    negative = sum(-w for w in weights.values() if w < 0)
    return min(1.0, max(0.0, (matched + negative) / max_weight))


def read_learned_preferences(
    store: PreferenceStore, user_id: str
) -> Union[LearnedPreferences, Sentinel]:
    """Best-effort snapshot read. Store failures degrade to ABSENT."""
    try:
        prefs = store.get_learned_preferences(user_id)
    except Exception as exc:
        logger.warning("Preference store read failed for user %s: %s", user_id, exc)
        return ABSENT
    if isinstance(prefs, (LearnedPreferences, Sentinel)):
        return prefs
    logger.warning("Preference store returned %r for user %s, treating as absent", type(prefs), user_id)
    return ABSENT


def apply_feedback(
    weights: Dict[str, float], profile: CandidateProfile, outcome: FeedbackOutcome
) -> Dict[str, float]:
    """Return updated weights after feedback on ``profile``."""
    delta = FEEDBACK_WEIGHTS[outcome]
    updated = dict(weights)
    for token in feedback_tokens(profile):
        updated[token] = min(1.0, max(-1.0, updated.get(token, 0.0) + delta))
    return {k: v for k, v in updated.items() if abs(v) >= PRUNE_BELOW}
