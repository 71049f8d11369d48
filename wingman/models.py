# pydantic models for the wingman matching pipeline
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Vibe = Literal[
    "chill",
    "adventurous",
    "intellectual",
    "social",
    "creative",
    "romantic",
    "ambitious",
    "any",
]

RefinementAction = Literal["narrow", "broaden", "different", "more_like"]

# Fields that exist on stored profiles but must never leave the pipeline.
INTERNAL_PROFILE_FIELDS = frozenset(
    {"embedding", "embedding_updated_at", "is_visible", "profile_completed"}
)


class Sentinel(enum.Enum):
    """Explicit markers for "nothing here" that are never confused with empty values."""

    ABSENT = "absent"
    NO_EMBEDDING = "no_embedding"

    def __repr__(self) -> str:
        return f"<{self.value}>"


ABSENT = Sentinel.ABSENT
NO_EMBEDDING = Sentinel.NO_EMBEDDING


class AgeRange(BaseModel):
    min: Optional[int] = None
    max: Optional[int] = None


class IntentFilters(BaseModel):
    """Hard constraints extracted from the query. Unset fields are not constraints."""

    model_config = ConfigDict(extra="ignore")

    gender: Optional[List[str]] = None
    year_of_study: Optional[List[int]] = None
    course: Optional[str] = None
    university: Optional[str] = None
    age_range: Optional[AgeRange] = None
    religion: Optional[str] = None
    smoking: Optional[str] = None
    drinking: Optional[str] = None

    def active(self) -> Dict[str, Any]:
        """Return only the filters that actually constrain the search."""
        out: Dict[str, Any] = {}
        for key, value in self:
            if value is None:
                continue
            if isinstance(value, list) and not value:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            if isinstance(value, AgeRange) and value.min is None and value.max is None:
                continue
            out[key] = value
        return out

    def count(self) -> int:
        return len(self.active())


class IntentPreferences(BaseModel):
    """Soft preferences, used for explanation and learned-preference context."""

    model_config = ConfigDict(extra="ignore")

    traits: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    personality: List[str] = Field(default_factory=list)
    looking_for: Optional[str] = None
    communication_style: Optional[str] = None
    love_language: Optional[str] = None


class Intent(BaseModel):
    """Structured representation of what the user is looking for."""

    vibe: Vibe = "any"
    filters: IntentFilters = Field(default_factory=IntentFilters)
    preferences: IntentPreferences = Field(default_factory=IntentPreferences)
    semantic_query: str
    confidence: float = Field(ge=0.0, le=1.0)
    is_refinement: bool = False
    refinement_action: Optional[RefinementAction] = None


class IntentExtraction(BaseModel):
    """Subset returned by the intent model. Nulls are allowed everywhere the model may abstain."""

    vibe: Vibe
    filters: IntentFilters
    preferences: IntentPreferences
    semantic_query: str
    confidence: float
    is_refinement: bool = False
    refinement_action: Optional[RefinementAction] = None


class LearnedPreferences(BaseModel):
    """Per-user token -> weight mapping learned from match feedback."""

    weights: Dict[str, float] = Field(default_factory=dict)


class ProfilePrompt(BaseModel):
    prompt_id: str
    response: str


class CandidateProfile(BaseModel):
    """A stored profile. Embedding and eligibility flags are internal only."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    first_name: str = ""
    last_name: str = ""
    bio: Optional[str] = None
    about_me: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    interested_in: List[str] = Field(default_factory=list)
    interests: List[str] = Field(default_factory=list)
    qualities: List[str] = Field(default_factory=list)
    course: Optional[str] = None
    year_of_study: Optional[int] = None
    university: Optional[str] = None
    personality_summary: Optional[str] = None
    personality_type: Optional[str] = None
    looking_for: Optional[str] = None
    communication_style: Optional[str] = None
    love_language: Optional[str] = None
    religion: Optional[str] = None
    smoking: Optional[str] = None
    drinking_preference: Optional[str] = None
    workout_frequency: Optional[str] = None
    prompts: List[ProfilePrompt] = Field(default_factory=list)
    photos: List[str] = Field(default_factory=list)
    profile_photo: Optional[str] = None
    last_active: Optional[datetime] = None

    # internal
    embedding: Optional[List[float]] = None
    embedding_updated_at: Optional[datetime] = None
    is_visible: bool = True
    profile_completed: bool = True

    def sanitized(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude=set(INTERNAL_PROFILE_FIELDS))


class PoolCandidate(BaseModel):
    """A retrieved candidate with the raw sub-scores computed at retrieval time."""

    profile: CandidateProfile
    vector: float = Field(ge=0.0, le=1.0)
    filter_match: int = Field(ge=0)


class ScoreBreakdown(BaseModel):
    vector: float = Field(ge=0.0, le=1.0)
    preference: float = Field(ge=0.0, le=1.0)
    filter_match: int = Field(ge=0)


class ScoredCandidate(BaseModel):
    profile: CandidateProfile
    scores: ScoreBreakdown
    total: float


class Explanation(BaseModel):
    tagline: str
    summary: str
    vibe_emoji: str
    conversation_starters: List[str] = Field(default_factory=list, max_length=3)
    match_percentage: int = Field(ge=0, le=100)


class ExplanationDraft(BaseModel):
    """Free-text parts produced by an explanation model."""

    tagline: str
    summary: str
    conversation_starters: List[str] = Field(default_factory=list)
    vibe_emoji: Optional[str] = None


class PackSubmission(BaseModel):
    """One friend's answers about the pack owner."""

    three_words: List[str] = Field(default_factory=list, max_length=5)
    green_flags: List[str] = Field(default_factory=list, max_length=5)
    red_flag_funny: Optional[str] = None
    hype_note: Optional[str] = None


class CompiledSummary(BaseModel):
    top_words: List[str] = Field(default_factory=list, max_length=3)
    green_flags: List[str] = Field(default_factory=list, max_length=5)
    funniest_red_flag: Optional[str] = None
    hype_lines: List[str] = Field(default_factory=list, max_length=3)


class MatchScores(BaseModel):
    total: float
    vector: int = Field(ge=0, le=100)
    preference: int = Field(ge=0, le=100)
    filter_match: int = Field(ge=0)


class MatchResult(BaseModel):
    profile: Dict[str, Any]
    explanation: Explanation
    scores: MatchScores


class SearchRequest(BaseModel):
    user_id: str = ""
    query_text: Optional[str] = None
    prior_intent: Optional[Intent] = None
    exclude_ids: List[str] = Field(default_factory=list)
    limit: int = 20
    offset: int = 0


class SearchMeta(BaseModel):
    total_found: int
    has_more: bool
    next_offset: int
    pool_size: int
    degraded_stages: List[str] = Field(default_factory=list)
    latency_ms: int = 0


class SearchResponse(BaseModel):
    commentary: str
    matches: List[MatchResult]
    intent: Intent
    meta: SearchMeta
    effective_query: str
    refinement_hints: List[str] = Field(default_factory=list)


class PackResponse(BaseModel):
    round_number: Optional[int] = None
    compiled_summary: Optional[CompiledSummary] = None
    wingman_prompt: Optional[str] = None
    matches: List[MatchResult] = Field(default_factory=list)
    generated_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
