"""Compile friends' wingman submissions into a summary and a search prompt."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence

from .models import CompiledSummary, PackSubmission

TOP_WORDS = 3
MAX_GREEN_FLAGS = 5
PROMPT_GREEN_FLAGS = 3
MAX_HYPE_LINES = 3


@dataclass(frozen=True)
class CompiledPack:
    summary: CompiledSummary
    prompt: str


def _unique_in_order(values: Sequence[str]) -> List[str]:
    seen = set()
    out = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


def top_words(submissions: Sequence[PackSubmission], n: int = TOP_WORDS) -> List[str]:
    """Most frequent words (trimmed, lower-cased); ties keep first-seen order."""
    counts: Dict[str, int] = {}
    first_seen: Dict[str, int] = {}
    for s in submissions:
        for word in s.three_words:
            key = word.strip().lower()
            if not key:
                continue
            if key not in counts:
                counts[key] = 0
                first_seen[key] = len(first_seen)
            counts[key] += 1
    ranked = sorted(counts, key=lambda w: (-counts[w], first_seen[w]))
    return ranked[:n]


def build_wingman_prompt(summary: CompiledSummary) -> str:
    parts = []
    if summary.top_words:
        parts.append(f"My friends describe me as {', '.join(summary.top_words)}.")
    if summary.green_flags:
        parts.append(f"My green flags: {', '.join(summary.green_flags[:PROMPT_GREEN_FLAGS])}.")
    if summary.funniest_red_flag:
        parts.append(f"Funny red flag (take lightly): {summary.funniest_red_flag}.")
    parts.append("Find someone compatible with me using this info.")
    return " ".join(parts)


def compile_pack(submissions: Sequence[PackSubmission]) -> CompiledPack:
    """Aggregate submissions into a CompiledSummary plus the seed query.

    Pure function of its input, so compiling the same list twice gives the
    same result. Enforcing the per-round submission quota is up to the caller.
    """
    green = _unique_in_order(
        [flag.strip() for s in submissions for flag in s.green_flags if flag.strip()]
    )
    red_flags = [s.red_flag_funny.strip() for s in submissions if s.red_flag_funny and s.red_flag_funny.strip()]
    hype = _unique_in_order(
        [s.hype_note.strip() for s in submissions if s.hype_note and s.hype_note.strip()]
    )

    summary = CompiledSummary(
        top_words=top_words(submissions),
        green_flags=green[:MAX_GREEN_FLAGS],
        funniest_red_flag=red_flags[0] if red_flags else None,
        hype_lines=hype[:MAX_HYPE_LINES],
    )
    return CompiledPack(summary=summary, prompt=build_wingman_prompt(summary))
