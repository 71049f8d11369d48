"""In-memory reference implementations of the store interfaces.

``InMemoryProfileStore.from_csv`` loads a profile export (for example the
output of ``wingman embed``) with pandas, parsing stringified lists and
embeddings back into Python values.
"""
from __future__ import annotations

import json
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import numpy as np
import pandas as pd

from .models import ABSENT, CandidateProfile, LearnedPreferences, Sentinel
from .preferences import FeedbackOutcome, apply_feedback

LIST_COLUMNS = ("interested_in", "interests", "qualities", "photos")
BOOL_COLUMNS = ("is_visible", "profile_completed")


def _is_missing(val: Any) -> bool:
    if val is None:
        return True
    if isinstance(val, float) and np.isnan(val):
        return True
    return isinstance(val, str) and val.strip().lower() in {"", "nan", "none", "null"}


def _maybe_parse_vec(val: Any) -> Optional[List[float]]:
    """Convert stringified list to list[float] if needed; pass through lists/None."""
    if _is_missing(val):
        return None
    if isinstance(val, (list, tuple, np.ndarray)):
        return [float(x) for x in val]
    if isinstance(val, str):
        s = val.strip()
        if s.startswith("[") and s.endswith("]"):
            try:
                arr = json.loads(s)
            except json.JSONDecodeError:
                return None
            if isinstance(arr, list):
                return [float(x) for x in arr]
    return None


def _maybe_parse_list(val: Any) -> List[str]:
    """JSON list, pipe- or comma-separated string, or a real list."""
    if _is_missing(val):
        return []
    if isinstance(val, (list, tuple)):
        return [str(x).strip() for x in val if str(x).strip()]
    s = str(val).strip()
    if s.startswith("[") and s.endswith("]"):
        try:
            arr = json.loads(s)
            if isinstance(arr, list):
                return [str(x).strip() for x in arr if str(x).strip()]
        except json.JSONDecodeError:
            pass
    sep = "|" if "|" in s else ","
    return [p.strip() for p in s.split(sep) if p.strip()]


def _maybe_parse_bool(val: Any, default: bool = True) -> bool:
    if _is_missing(val):
        return default
    if isinstance(val, (bool, np.bool_)):
        return bool(val)
    return str(val).strip().lower() in {"1", "true", "yes", "y"}


def profile_from_row(row: Dict[str, Any]) -> CandidateProfile:
    data: Dict[str, Any] = {k: (None if _is_missing(v) else v) for k, v in row.items()}
    for col in LIST_COLUMNS:
        if col in row:
            data[col] = _maybe_parse_list(row[col])
    for col in BOOL_COLUMNS:
        if col in row:
            data[col] = _maybe_parse_bool(row[col])
    if "embedding" in row:
        data["embedding"] = _maybe_parse_vec(row["embedding"])
    if "prompts" in row:
        raw = row["prompts"]
        data["prompts"] = json.loads(raw) if isinstance(raw, str) and raw.strip().startswith("[") else []
    for col in ("age", "year_of_study"):
        if data.get(col) is not None:
            data[col] = int(float(data[col]))
    data["user_id"] = str(row["user_id"])
    return CandidateProfile.model_validate(data)


class InMemoryProfileStore:
    def __init__(self, profiles: Iterable[CandidateProfile] = ()) -> None:
        self._lock = threading.Lock()
        self._profiles: Dict[str, CandidateProfile] = {p.user_id: p for p in profiles}
        self._blocks: Set[Tuple[str, str]] = set()
        self._swipes: Dict[str, Set[str]] = defaultdict(set)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> "InMemoryProfileStore":
        if "user_id" not in df.columns:
            raise KeyError("Profiles data must include a 'user_id' column")
        records = df.to_dict(orient="records")
        return cls(profile_from_row(r) for r in records)

    @classmethod
    def from_csv(cls, path: Union[str, Path]) -> "InMemoryProfileStore":
        return cls.from_dataframe(pd.read_csv(path))

    def add(self, profile: CandidateProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile

    def block(self, blocker_id: str, blocked_id: str) -> None:
        with self._lock:
            self._blocks.add((blocker_id, blocked_id))

    def swipe(self, swiper_id: str, swiped_id: str) -> None:
        with self._lock:
            self._swipes[swiper_id].add(swiped_id)

    def get_profile(self, user_id: str) -> Optional[CandidateProfile]:
        return self._profiles.get(user_id)

    def iter_profiles(self) -> List[CandidateProfile]:
        with self._lock:
            return list(self._profiles.values())

    def blocked_ids(self, user_id: str) -> Set[str]:
        with self._lock:
            return {b for a, b in self._blocks if a == user_id} | {
                a for a, b in self._blocks if b == user_id
            }

    def acted_on_ids(self, user_id: str) -> Set[str]:
        with self._lock:
            return set(self._swipes.get(user_id, set()))


class InMemoryPreferenceStore:
    """Owns learned preferences. The pipeline only calls ``get_learned_preferences``."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, float]]] = None) -> None:
        self._lock = threading.Lock()
        self._weights: Dict[str, Dict[str, float]] = {
            k: dict(v) for k, v in (initial or {}).items()
        }

    def get_learned_preferences(self, user_id: str) -> Union[LearnedPreferences, Sentinel]:
        with self._lock:
            weights = self._weights.get(user_id)
            if weights is None:
                return ABSENT
            return LearnedPreferences(weights=dict(weights))

    def record_feedback(
        self, user_id: str, profile: CandidateProfile, outcome: FeedbackOutcome
    ) -> Dict[str, float]:
        with self._lock:
            updated = apply_feedback(self._weights.get(user_id, {}), profile, outcome)
            self._weights[user_id] = updated
            return dict(updated)


class InMemoryAnalyticsSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[Dict[str, Any]] = []

    def record(self, user_id: str, event_type: str, metadata: Optional[Dict[str, object]] = None) -> None:
        with self._lock:
            self.events.append(
                {
                    "user_id": user_id,
                    "event_type": event_type,
                    "metadata": dict(metadata or {}),
                    "created_at": datetime.now(timezone.utc),
                }
            )

    def count_since(self, user_id: str, event_types: Sequence[str], since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for e in self.events
                if e["user_id"] == user_id
                and e["event_type"] in event_types
                and e["created_at"] >= since
            )
