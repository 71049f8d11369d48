from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_CHAT_MODEL = "gpt-5-mini"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

# Retrieval pool is oversized relative to the page so the ranker can reorder.
MIN_POOL_MULTIPLIER = 3

MAX_QUERY_CHARS = 500
MAX_REFINED_QUERY_CHARS = 700
MAX_PAGE_SIZE = 50
MAX_EXPLAINED = 10

PACK_MATCH_COUNT = 7
PACK_RETRIEVAL_LIMIT = 20


@dataclass(frozen=True)
class RankingWeights:
    """Convex combination used for the ranker's total score."""

    w_vector: float = 0.50
    w_preference: float = 0.30
    w_filter: float = 0.20

    def __post_init__(self) -> None:
        parts = (self.w_vector, self.w_preference, self.w_filter)
        if any(p < 0 for p in parts):
            raise ValueError("Ranking weights must be non-negative")
        if abs(sum(parts) - 1.0) > 1e-9:
            raise ValueError(f"Ranking weights must sum to 1, got {sum(parts):.6f}")


def _positive_float(value: Optional[str], fallback: float) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def _positive_int(value: Optional[str], fallback: int) -> int:
    if not value:
        return fallback
    try:
        parsed = int(float(value))
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


@dataclass(frozen=True)
class WingmanSettings:
    """Per-deployment settings. Timeouts are in seconds."""

    chat_model: str = DEFAULT_CHAT_MODEL
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    parse_timeout: float = 8.0
    embed_timeout: float = 4.0
    explain_timeout: float = 6.0
    retrieval_timeout: float = 10.0
    pool_multiplier: int = MIN_POOL_MULTIPLIER
    daily_search_limit: int = 10
    weights: RankingWeights = field(default_factory=RankingWeights)

    def __post_init__(self) -> None:
        if self.pool_multiplier < MIN_POOL_MULTIPLIER:
            raise ValueError(f"pool_multiplier must be >= {MIN_POOL_MULTIPLIER}")

    @classmethod
    def from_env(cls) -> "WingmanSettings":
        env = os.environ
        defaults = cls()
        multiplier = _positive_int(env.get("WINGMAN_POOL_MULTIPLIER"), defaults.pool_multiplier)
        return cls(
            chat_model=env.get("OPENAI_MODEL") or defaults.chat_model,
            embedding_model=env.get("OPENAI_EMBEDDING_MODEL") or defaults.embedding_model,
            parse_timeout=_positive_float(env.get("WINGMAN_PARSE_TIMEOUT"), defaults.parse_timeout),
            embed_timeout=_positive_float(env.get("WINGMAN_EMBED_TIMEOUT"), defaults.embed_timeout),
            explain_timeout=_positive_float(env.get("WINGMAN_EXPLAIN_TIMEOUT"), defaults.explain_timeout),
            retrieval_timeout=_positive_float(
                env.get("WINGMAN_RETRIEVAL_TIMEOUT"), defaults.retrieval_timeout
            ),
            pool_multiplier=max(MIN_POOL_MULTIPLIER, multiplier),
            daily_search_limit=_positive_int(
                env.get("AGENT_DAILY_SEARCH_LIMIT"), defaults.daily_search_limit
            ),
        )
