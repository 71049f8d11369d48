from __future__ import annotations

import logging
from typing import List, Optional, Union

from .capabilities import EmbeddingModel
from .concurrency import call_with_timeout
from .models import NO_EMBEDDING, Intent, Sentinel

logger = logging.getLogger(__name__)


def embed_intent(
    intent: Intent,
    model: EmbeddingModel,
    degraded: bool = False,
    timeout: Optional[float] = None,
) -> Union[List[float], Sentinel]:
    """Embed the intent's semantic query, or return NO_EMBEDDING.

    A degraded intent is not embedded at all: the fallback text is just the
    raw query and a vector for it would only add noise to retrieval.
    """
    if degraded:
        return NO_EMBEDDING
    text = intent.semantic_query.strip()
    if not text:
        return NO_EMBEDDING
    try:
        vectors = call_with_timeout(model.embed, [text], timeout=timeout, stage="embed_intent")
    except Exception as exc:
        logger.warning("Intent embedding failed, continuing without a vector: %s", exc)
        return NO_EMBEDDING
    if not vectors or not vectors[0]:
        return NO_EMBEDDING
    return [float(x) for x in vectors[0]]
