"""Per-candidate explanations for the ranked page.

One Explanation is produced for every ranked candidate, in order. When the
explanation model fails or runs out of time for a candidate, that candidate
gets a template built only from profile fields rather than being dropped.
"""
from __future__ import annotations

import logging
import zlib
from typing import List, Optional, Sequence, Tuple

from .capabilities import ExplanationModel
from .concurrency import map_with_timeout
from .config import MAX_EXPLAINED
from .models import Explanation, ExplanationDraft, Intent, ScoredCandidate

logger = logging.getLogger(__name__)

VIBE_EMOJIS = {
    "chill": "😌",
    "adventurous": "🏄",
    "intellectual": "🧠",
    "social": "🎉",
    "creative": "🎨",
    "romantic": "💕",
    "ambitious": "🚀",
    "any": "💫",
}

VIBE_WORDS = {
    "chill": "chill souls",
    "adventurous": "adventure seekers",
    "intellectual": "big brain matches",
    "social": "social butterflies",
    "creative": "creative spirits",
    "romantic": "hopeless romantics",
    "ambitious": "goal-getters",
    "any": "matches",
}


def match_percentage(total: float) -> int:
    return int(min(100, max(0, round(total * 100))))


def pick_vibe_emoji(vibe: str, percentage: int) -> str:
    if percentage >= 85:
        return "🔥"
    if percentage >= 70:
        return "✨"
    return VIBE_EMOJIS.get(vibe, "💫")


def _stable_pick(options: Sequence[str], key: str) -> str:
    return options[zlib.crc32(key.encode("utf-8")) % len(options)]


def _shared_interests(candidate: ScoredCandidate, intent: Intent) -> List[str]:
    theirs = [i.lower() for i in candidate.profile.interests]
    return [i for i in intent.preferences.interests if any(i.lower() in t for t in theirs)]


def match_reasons(candidate: ScoredCandidate, intent: Intent) -> List[str]:
    """Short human-readable reasons, at most four."""
    profile = candidate.profile
    reasons: List[str] = []

    if candidate.scores.vector > 0.7:
        reasons.append("Strong match for what you're looking for")
    elif candidate.scores.vector > 0.5:
        reasons.append("Good fit for your vibe")

    shared = _shared_interests(candidate, intent)
    if shared:
        reasons.append(f"Shared interests: {', '.join(shared[:3])}")

    text = " ".join(
        x for x in (profile.personality_summary, profile.about_me, profile.bio) if x
    ).lower()
    traits = [t for t in intent.preferences.traits if t.lower() in text]
    if traits:
        reasons.append(f"{traits[0]} personality")

    course = intent.filters.course
    if course and profile.course and course.lower() in profile.course.lower():
        reasons.append(f"Studies {profile.course}")

    if profile.personality_type:
        reasons.append(f"{profile.personality_type} personality type")

    if not reasons:
        reasons.append("Recommended by your wingman")
    return reasons[:4]


def tagline_for(candidate: ScoredCandidate, intent: Intent) -> str:
    percentage = match_percentage(candidate.total)
    if percentage >= 80:
        options = [
            f"Your {intent.vibe} match" if intent.vibe != "any" else "Your kind of person",
            "This one's special",
            "Strong connection potential",
            "Wingman approved 💯",
        ]
        return _stable_pick(options, candidate.profile.user_id)
    if percentage >= 60:
        if candidate.profile.course:
            return f"{candidate.profile.course} student"
        return "Worth checking out"
    return "Discovered for you"


def conversation_starters(candidate: ScoredCandidate, intent: Intent) -> List[str]:
    profile = candidate.profile
    starters: List[str] = []

    shared = _shared_interests(candidate, intent)
    if shared:
        starters.append(f"I see you're into {shared[0]}, what got you started?")
    if profile.course:
        starters.append(f"How's {profile.course} treating you this semester?")
    if profile.prompts:
        answer = profile.prompts[0].response
        snippet = answer if len(answer) <= 40 else answer[:40] + "..."
        starters.append(f'Loved your answer about "{snippet}", tell me more!')
    if profile.personality_type:
        starters.append(f"Are you really a {profile.personality_type}?")

    if not starters:
        starters = [
            "What's one thing about campus that surprised you?",
            "Hot take: best food spot on campus?",
        ]
    return starters[:3]


def minimal_explanation(candidate: ScoredCandidate, intent: Intent) -> Explanation:
    """Template from profile fields only, used when the model cannot help."""
    profile = candidate.profile
    percentage = match_percentage(candidate.total)
    name = profile.first_name or "Someone"
    details = [d for d in (profile.course, profile.university) if d]
    summary = f"{name} could be a good fit" + (f" ({', '.join(details)})." if details else ".")
    return Explanation(
        tagline="Discovered for you",
        summary=summary,
        vibe_emoji=pick_vibe_emoji(intent.vibe, percentage),
        conversation_starters=[],
        match_percentage=percentage,
    )


def _finalize(draft: ExplanationDraft, candidate: ScoredCandidate, intent: Intent) -> Explanation:
    percentage = match_percentage(candidate.total)
    tagline = draft.tagline.strip() or tagline_for(candidate, intent)
    summary = draft.summary.strip() or ". ".join(match_reasons(candidate, intent)[:2]) + "."
    starters = [s.strip() for s in draft.conversation_starters if s and s.strip()][:3]
    return Explanation(
        tagline=tagline,
        summary=summary,
        vibe_emoji=(draft.vibe_emoji or "").strip() or pick_vibe_emoji(intent.vibe, percentage),
        conversation_starters=starters,
        match_percentage=percentage,
    )


def rule_based_explanation(candidate: ScoredCandidate, intent: Intent) -> Explanation:
    """Explanation from ranking signals alone, no model call."""
    percentage = match_percentage(candidate.total)
    return Explanation(
        tagline=tagline_for(candidate, intent),
        summary=". ".join(match_reasons(candidate, intent)[:2]) + ".",
        vibe_emoji=pick_vibe_emoji(intent.vibe, percentage),
        conversation_starters=conversation_starters(candidate, intent),
        match_percentage=percentage,
    )


def explain_candidates(
    candidates: Sequence[ScoredCandidate],
    intent: Intent,
    model: ExplanationModel,
    timeout: Optional[float] = None,
    model_limit: int = MAX_EXPLAINED,
) -> List[Explanation]:
    """Explain every candidate, in order, falling back per candidate."""
    explanations, _ = explain_with_failures(candidates, intent, model, timeout, model_limit)
    return explanations


def explain_with_failures(
    candidates: Sequence[ScoredCandidate],
    intent: Intent,
    model: ExplanationModel,
    timeout: Optional[float] = None,
    model_limit: int = MAX_EXPLAINED,
) -> Tuple[List[Explanation], int]:
    """Like ``explain_candidates`` but also returns how many model calls fell back.

    Only the first ``model_limit`` candidates go to the explanation model;
    the rest of the page gets rule-based explanations.
    """
    if not candidates:
        return [], 0

    head = list(candidates[:model_limit])
    drafts = map_with_timeout(
        lambda c: model.explain(c, intent), head, timeout=timeout, stage="explain"
    )
    explanations: List[Explanation] = []
    failures = 0
    for candidate, draft in zip(head, drafts):
        if isinstance(draft, BaseException):
            failures += 1
            logger.debug("Explanation failed for %s: %s", candidate.profile.user_id, draft)
            explanations.append(minimal_explanation(candidate, intent))
            continue
        try:
            explanations.append(_finalize(draft, candidate, intent))
        except Exception as exc:
            failures += 1
            logger.debug("Explanation draft rejected for %s: %s", candidate.profile.user_id, exc)
            explanations.append(minimal_explanation(candidate, intent))
    if failures:
        logger.warning("%d of %d explanations fell back to templates", failures, len(head))
    explanations.extend(rule_based_explanation(c, intent) for c in candidates[model_limit:])
    return explanations, failures


def result_commentary(total_results: int, intent: Intent, top: Optional[ScoredCandidate]) -> str:
    """One-line wingman commentary shown above the result list."""
    if total_results == 0:
        return "Couldn't find anyone matching that vibe right now. Try broadening it a bit? 🔄"
    if total_results <= 3:
        noun = "person" if total_results == 1 else "people"
        return f"Found {total_results} {noun} matching your vibe. Quality over quantity 💎"
    vibe_word = VIBE_WORDS.get(intent.vibe, "matches")
    top_line = f" Top match: {match_percentage(top.total)}% 🎯" if top is not None else ""
    return f"Found {total_results} {vibe_word} for you.{top_line}"
