"""Wingman packs: friends describe a user, the pipeline finds matches from that.

A round collects submissions until it reaches its target. The first read
after that compiles the round exactly once, runs the pipeline on the
compiled prompt and stores the result. Later reads return the stored pack
until a newer round starts.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from .capabilities import AnalyticsSink
from .config import PACK_MATCH_COUNT, PACK_RETRIEVAL_LIMIT
from .errors import InvalidRequestError, PackNotReadyError
from .models import CompiledSummary, MatchResult, PackResponse, PackSubmission
from .pack import compile_pack
from .pipeline import WingmanPipeline

logger = logging.getLogger(__name__)

DEFAULT_TARGET_SUBMISSIONS = 3
PACK_OPENED_EVENT = "wingman_pack_opened"


@dataclass(frozen=True)
class PackRound:
    owner_id: str
    round_number: int
    target_submissions: int = DEFAULT_TARGET_SUBMISSIONS
    current_submissions: int = 0

    @property
    def ready(self) -> bool:
        return self.current_submissions >= self.target_submissions


@dataclass(frozen=True)
class StoredPack:
    owner_id: str
    round_number: int
    compiled_summary: CompiledSummary
    wingman_prompt: str
    matches: List[MatchResult]
    generated_at: datetime
    opened_at: Optional[datetime] = None

    def to_response(self) -> PackResponse:
        return PackResponse(
            round_number=self.round_number,
            compiled_summary=self.compiled_summary,
            wingman_prompt=self.wingman_prompt,
            matches=list(self.matches),
            generated_at=self.generated_at,
            opened_at=self.opened_at,
        )


class PackRepository(Protocol):
    def latest_round(self, owner_id: str) -> Optional[PackRound]:
        ...

    def submissions(self, owner_id: str, round_number: int) -> List[PackSubmission]:
        ...

    def latest_pack(self, owner_id: str) -> Optional[StoredPack]:
        ...

    def save_pack(self, pack: StoredPack) -> Tuple[StoredPack, bool]:
        """Insert unless a pack for the same round exists. Returns (stored, created)."""
        ...

    def mark_opened(self, owner_id: str, round_number: int, at: datetime) -> bool:
        """Set opened_at if still unset. True only for the caller that set it."""
        ...


class InMemoryPackRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rounds: Dict[str, PackRound] = {}
        self._submissions: Dict[Tuple[str, int], List[PackSubmission]] = {}
        self._packs: Dict[Tuple[str, int], StoredPack] = {}

    def start_round(self, owner_id: str, target_submissions: int = DEFAULT_TARGET_SUBMISSIONS) -> PackRound:
        with self._lock:
            prev = self._rounds.get(owner_id)
            number = prev.round_number + 1 if prev else 1
            rnd = PackRound(owner_id=owner_id, round_number=number, target_submissions=target_submissions)
            self._rounds[owner_id] = rnd
            self._submissions[(owner_id, number)] = []
            return rnd

    def submit(self, owner_id: str, submission: PackSubmission) -> PackRound:
        with self._lock:
            rnd = self._rounds.get(owner_id)
            if rnd is None:
                raise InvalidRequestError("no_round", "This wingman link is not active.")
            if rnd.ready:
                raise InvalidRequestError("round_full", "This wingman round already has enough replies.")
            self._submissions[(owner_id, rnd.round_number)].append(submission)
            rnd = replace(rnd, current_submissions=rnd.current_submissions + 1)
            self._rounds[owner_id] = rnd
            return rnd

    def latest_round(self, owner_id: str) -> Optional[PackRound]:
        with self._lock:
            return self._rounds.get(owner_id)

    def submissions(self, owner_id: str, round_number: int) -> List[PackSubmission]:
        with self._lock:
            return list(self._submissions.get((owner_id, round_number), []))

    def latest_pack(self, owner_id: str) -> Optional[StoredPack]:
        with self._lock:
            packs = [p for (owner, _), p in self._packs.items() if owner == owner_id]
            return max(packs, key=lambda p: p.round_number) if packs else None

    def save_pack(self, pack: StoredPack) -> Tuple[StoredPack, bool]:
        key = (pack.owner_id, pack.round_number)
        with self._lock:
            existing = self._packs.get(key)
            if existing is not None:
                return existing, False
            self._packs[key] = pack
            return pack, True

    def mark_opened(self, owner_id: str, round_number: int, at: datetime) -> bool:
        key = (owner_id, round_number)
        with self._lock:
            pack = self._packs.get(key)
            if pack is None or pack.opened_at is not None:
                return False
            self._packs[key] = replace(pack, opened_at=at)
            return True


@dataclass
class WingmanPackService:
    pipeline: WingmanPipeline
    repository: PackRepository
    analytics: Optional[AnalyticsSink] = None
    match_count: int = PACK_MATCH_COUNT
    retrieval_limit: int = PACK_RETRIEVAL_LIMIT
    _compile_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _opened(self, owner_id: str, round_number: int) -> None:
        if self.analytics is None:
            return
        try:
            self.analytics.record(owner_id, PACK_OPENED_EVENT, {"round_number": round_number})
        except Exception as exc:
            logger.warning("Failed to record pack open for user %s: %s", owner_id, exc)

    def get_pack(self, user_id: str) -> PackResponse:
        """Return the current pack, compiling it on the first read of a ready round.

        Raises:
            PackNotReadyError: The latest round has not reached its target.
            RetrievalError: Matches could not be retrieved for a new pack.
        """
        rnd = self.repository.latest_round(user_id)
        existing = self.repository.latest_pack(user_id)

        # A newer round hides the previous round's pack.
        if existing is not None and (rnd is None or existing.round_number >= rnd.round_number):
            if existing.opened_at is None:
                now = datetime.now(timezone.utc)
                if self.repository.mark_opened(user_id, existing.round_number, now):
                    self._opened(user_id, existing.round_number)
                    existing = replace(existing, opened_at=now)
            return existing.to_response()

        if rnd is None:
            return PackResponse()

        if not rnd.ready:
            raise PackNotReadyError(rnd.current_submissions, rnd.target_submissions)

        with self._compile_lock:
            return self._compile_round(user_id, rnd)

    def _compile_round(self, user_id: str, rnd: PackRound) -> PackResponse:
        latest = self.repository.latest_pack(user_id)
        if latest is not None and latest.round_number >= rnd.round_number:
            return latest.to_response()

        compiled = compile_pack(self.repository.submissions(user_id, rnd.round_number))
        result = self.pipeline.run(
            user_id,
            compiled.prompt,
            limit=self.retrieval_limit,
            top_n=self.match_count,
        )
        now = datetime.now(timezone.utc)
        pack, created = self.repository.save_pack(
            StoredPack(
                owner_id=user_id,
                round_number=rnd.round_number,
                compiled_summary=compiled.summary,
                wingman_prompt=compiled.prompt,
                matches=result.matches,
                generated_at=now,
                opened_at=now,
            )
        )
        if created:
            logger.info(
                "Compiled wingman pack round %d for user %s with %d matches",
                rnd.round_number,
                user_id,
                len(pack.matches),
            )
            self._opened(user_id, rnd.round_number)
        return pack.to_response()
