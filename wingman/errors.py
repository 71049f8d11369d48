from __future__ import annotations

from typing import Optional


class WingmanError(Exception):
    """Base class for errors surfaced by the wingman pipeline."""

    retryable: bool = False


class InvalidRequestError(WingmanError):
    """Request rejected before it enters the pipeline."""

    def __init__(self, code: str, user_message: str, detail: Optional[str] = None) -> None:
        super().__init__(detail or f"{code}: {user_message}")
        self.code = code
        self.user_message = user_message


class RetrievalError(WingmanError):
    """Candidate retrieval failed. Fatal for the request, safe to retry."""

    retryable = True


class QuotaExceededError(WingmanError):
    def __init__(self, used: int, limit: int, resets_at: str) -> None:
        super().__init__(f"Daily wingman search limit reached ({used}/{limit})")
        self.used = used
        self.limit = limit
        self.resets_at = resets_at


class PackNotReadyError(WingmanError):
    """The current round has not collected enough submissions yet."""

    def __init__(self, current: int, target: int) -> None:
        super().__init__(f"Wingman pack not ready yet ({current}/{target} submissions)")
        self.current = current
        self.target = target


class ModelCallError(WingmanError):
    """An external model call failed after retries."""

    retryable = True
