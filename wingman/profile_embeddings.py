from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Sequence

import pandas as pd

from .capabilities import EmbeddingModel

logger = logging.getLogger(__name__)

PROFILE_TEXT_FIELDS = [
    "bio",
    "about_me",
    "personality_summary",
    "personality_type",
    "looking_for",
    "communication_style",
    "love_language",
    "interests",
    "qualities",
    "course",
]


def _as_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value if str(v).strip())
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ""
    return str(value)


def combine_profile_text(df: pd.DataFrame, keys: Sequence[str] = PROFILE_TEXT_FIELDS) -> pd.Series:
    """Join the profile's text fields into one embedding input per row."""
    pieces = [df[key].map(_as_text) for key in keys if key in df.columns]
    if not pieces:
        return pd.Series([" "] * len(df), index=df.index)
    stacked = pd.concat(pieces, axis=1)
    combined = stacked.apply(
        lambda row: " | ".join([part for part in row if isinstance(part, str) and part.strip()]) or " ",
        axis=1,
    )
    return combined.str.replace("\n", " ").str.replace(r"\s+", " ", regex=True).str.strip().replace({"": " "})


def embed_profiles(df: pd.DataFrame, model: EmbeddingModel, batch_size: int = 100) -> pd.DataFrame:
    """Return a copy of ``df`` with ``embedding`` and ``embedding_updated_at`` columns.

    Batches that fail are left empty; those profiles stay ineligible for
    retrieval until a later run embeds them.
    """
    out = df.copy()
    texts = combine_profile_text(out).tolist()
    embeddings: List[Any] = [None] * len(texts)
    stamps: List[Any] = [None] * len(texts)
    now = datetime.now(timezone.utc).isoformat()

    for start in range(0, len(texts), batch_size):
        batch = texts[start:start + batch_size]
        try:
            batch_embeds = model.embed(batch)
        except Exception as exc:
            logger.warning("Profile embeddings failed for rows %d-%d: %s", start, start + len(batch) - 1, exc)
            continue
        if len(batch_embeds) != len(batch):
            logger.warning("Embedding batch size mismatch at row %d (%d != %d)", start, len(batch_embeds), len(batch))
            continue
        embeddings[start:start + len(batch)] = [list(map(float, e)) for e in batch_embeds]
        stamps[start:start + len(batch)] = [now] * len(batch)

    out["embedding"] = pd.Series(embeddings, index=out.index, dtype=object)
    out["embedding_updated_at"] = pd.Series(stamps, index=out.index, dtype=object)
    missing = sum(e is None for e in embeddings)
    if missing:
        logger.warning("%d of %d profiles have no embedding", missing, len(embeddings))
    return out
