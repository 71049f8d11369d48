"""Request checks applied before anything reaches the pipeline."""
from __future__ import annotations

import re
from typing import List

from .config import MAX_PAGE_SIZE, MAX_QUERY_CHARS
from .errors import InvalidRequestError

HELP_MESSAGE = (
    "I can only help with match requests. Try something like: "
    "'someone funny, ambitious, and into music'."
)

PROMPT_INJECTION_PATTERNS: List[re.Pattern] = [
    re.compile(r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions", re.I),
    re.compile(r"system\s+prompt", re.I),
    re.compile(r"developer\s+mode", re.I),
    re.compile(r"jailbreak", re.I),
    re.compile(r"reveal\s+(your\s+)?(prompt|instructions|rules)", re.I),
    re.compile(r"show\s+me\s+your\s+(prompt|chain[- ]of[- ]thought)", re.I),
    re.compile(r"(api\s*key|access\s*token|secret|password)", re.I),
    re.compile(r"(drop\s+table|select\s+\*\s+from|union\s+select)", re.I),
    re.compile(r"<script|javascript:", re.I),
]

_ZERO_WIDTH = re.compile("[\u200b-\u200d\ufeff]")
_REPEATED_CHAR = re.compile(r"^(.)\1{6,}$")


def normalize_query(text: str) -> str:
    return re.sub(r"\s+", " ", _ZERO_WIDTH.sub("", text)).strip()


def is_likely_gibberish(text: str) -> bool:
    if not text:
        return True
    if _REPEATED_CHAR.match(text):
        return True
    letters = sum(ch.isalpha() for ch in text)
    digits = sum(ch.isdigit() for ch in text)
    symbols = sum(not ch.isalnum() and not ch.isspace() for ch in text)
    total = len(text)
    return letters / total < 0.25 or (digits + symbols) / total > 0.65


def validate_user_id(user_id: str) -> str:
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidRequestError("missing_user", "A user id is required.")
    return user_id.strip()


def validate_query(text: object, max_chars: int = MAX_QUERY_CHARS) -> str:
    """Normalize ``text`` or raise InvalidRequestError with a stable code."""
    if not isinstance(text, str):
        raise InvalidRequestError("empty", HELP_MESSAGE, "Query must be a string")
    query = normalize_query(text)
    if not query:
        raise InvalidRequestError("empty", HELP_MESSAGE)
    if len(query) < 3:
        raise InvalidRequestError("too_short", HELP_MESSAGE)
    if len(query) > max_chars:
        raise InvalidRequestError("too_long", f"Query too long (max {max_chars} chars).")
    if is_likely_gibberish(query):
        raise InvalidRequestError("gibberish", HELP_MESSAGE)
    if any(p.search(query) for p in PROMPT_INJECTION_PATTERNS):
        raise InvalidRequestError("prompt_injection", HELP_MESSAGE)
    return query


def validate_page(limit: int, offset: int) -> None:
    if not isinstance(limit, int) or limit < 1 or limit > MAX_PAGE_SIZE:
        raise InvalidRequestError("bad_limit", f"limit must be between 1 and {MAX_PAGE_SIZE}.")
    if not isinstance(offset, int) or offset < 0:
        raise InvalidRequestError("bad_offset", "offset must be zero or positive.")
