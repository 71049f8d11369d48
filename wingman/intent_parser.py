"""Turn free text into a structured Intent.

The parser never fails: if the intent model errors or times out the caller
gets a low-confidence fallback Intent and ``degraded=True``. Refinements are
merged onto the prior Intent so a short follow-up ("but more outgoing")
narrows the previous search instead of replacing it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Hashable, Iterable, List, Optional, Union

from .capabilities import IntentModel
from .concurrency import call_with_timeout
from .models import (
    ABSENT,
    Intent,
    IntentExtraction,
    IntentFilters,
    IntentPreferences,
    LearnedPreferences,
    Sentinel,
)

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 0.2


@dataclass(frozen=True)
class ParseOutcome:
    intent: Intent
    degraded: bool


def fallback_intent(query: str) -> Intent:
    """Intent used when the model could not be trusted. Never refined, never confident."""
    return Intent(
        vibe="any",
        filters=IntentFilters(),
        preferences=IntentPreferences(),
        semantic_query=query,
        confidence=FALLBACK_CONFIDENCE,
        is_refinement=False,
    )


def _dedupe(items: Iterable[Any]) -> List[Any]:
    """Union helper: keep first occurrence, compare strings case-insensitively."""
    seen: set[Hashable] = set()
    out: List[Any] = []
    for item in items:
        if isinstance(item, str):
            item = item.strip()
            if not item:
                continue
            key: Hashable = item.casefold()
        else:
            key = item
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def merge_filters(prior: IntentFilters, new: IntentFilters) -> IntentFilters:
    """New values override same-key old values; list values are unioned."""
    merged: Dict[str, Any] = dict(prior.active())
    for key, value in new.active().items():
        old = merged.get(key)
        if isinstance(value, list) and isinstance(old, list):
            merged[key] = _dedupe([*old, *value])
        else:
            merged[key] = value
    return IntentFilters(**merged)


def merge_preferences(prior: IntentPreferences, new: IntentPreferences) -> IntentPreferences:
    return IntentPreferences(
        traits=_dedupe([*prior.traits, *new.traits]),
        interests=_dedupe([*prior.interests, *new.interests]),
        personality=_dedupe([*prior.personality, *new.personality]),
        looking_for=new.looking_for or prior.looking_for,
        communication_style=new.communication_style or prior.communication_style,
        love_language=new.love_language or prior.love_language,
    )


def _merge_semantic(prior: Intent, new: Intent) -> str:
    # "different" means the model judged the follow-up a full restatement.
    if new.refinement_action == "different":
        return new.semantic_query or prior.semantic_query
    if new.refinement_action == "more_like":
        return prior.semantic_query
    if not new.semantic_query or new.semantic_query == prior.semantic_query:
        return prior.semantic_query
    return f"{prior.semantic_query}. Also: {new.semantic_query}"


def merge_intents(prior: Intent, refinement: Intent) -> Intent:
    """Apply a refinement on top of the prior Intent."""
    return Intent(
        vibe=refinement.vibe if refinement.vibe != "any" else prior.vibe,
        filters=merge_filters(prior.filters, refinement.filters),
        preferences=merge_preferences(prior.preferences, refinement.preferences),
        semantic_query=_merge_semantic(prior, refinement),
        confidence=min(prior.confidence, refinement.confidence),
        is_refinement=True,
        refinement_action=refinement.refinement_action or "narrow",
    )


def _intent_from_extraction(extraction: IntentExtraction, query: str) -> Intent:
    confidence = min(1.0, max(0.0, float(extraction.confidence)))
    filters = IntentFilters(**extraction.filters.active())
    prefs = extraction.preferences
    return Intent(
        vibe=extraction.vibe,
        filters=filters,
        preferences=IntentPreferences(
            traits=_dedupe(prefs.traits),
            interests=_dedupe(prefs.interests),
            personality=_dedupe(prefs.personality),
            looking_for=prefs.looking_for or None,
            communication_style=prefs.communication_style or None,
            love_language=prefs.love_language or None,
        ),
        semantic_query=(extraction.semantic_query or "").strip() or query,
        confidence=confidence,
        is_refinement=extraction.is_refinement,
        refinement_action=extraction.refinement_action,
    )


def parse_intent(
    query: str,
    model: IntentModel,
    prior: Optional[Intent] = None,
    preferences: Union[LearnedPreferences, Sentinel] = ABSENT,
    refine: bool = False,
    fallback_query: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ParseOutcome:
    """Parse ``query`` into an Intent, merging onto ``prior`` for refinements.

    Args:
        query: Normalized user text (or a compiled pack prompt).
        model: Intent extraction capability.
        prior: Previous Intent, required for a refinement to take effect.
        preferences: Learned preferences passed to the model as context.
        refine: Caller explicitly asks for a refinement of ``prior``.
        fallback_query: Text for the fallback Intent when the model fails.
            A refinement passes its combined query here so the prior search
            is not reduced to the bare follow-up.
        timeout: Seconds to wait for the model; timeout counts as failure.

    Returns:
        ParseOutcome with the Intent and whether the fallback path was used.
    """
    learned = preferences.weights if isinstance(preferences, LearnedPreferences) else None
    try:
        extraction = call_with_timeout(
            model.extract_intent, query, prior, learned, timeout=timeout, stage="parse_intent"
        )
        parsed = _intent_from_extraction(extraction, query)
    except Exception as exc:
        logger.warning("Intent parsing failed, using fallback intent: %s", exc)
        return ParseOutcome(intent=fallback_intent(fallback_query or query), degraded=True)

    if prior is not None and (refine or parsed.is_refinement):
        return ParseOutcome(intent=merge_intents(prior, parsed), degraded=False)

    if parsed.is_refinement or parsed.refinement_action is not None:
        # A refinement without a prior intent has nothing to refine.
        parsed = parsed.model_copy(update={"is_refinement": False, "refinement_action": None})
    return ParseOutcome(intent=parsed, degraded=False)
