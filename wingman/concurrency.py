"""Timeouts for external calls and last-write-wins request tickets.

Pipeline stages are sequential within a request, but many requests run at
once. Every external call goes through ``call_with_timeout`` so a slow model
maps onto the stage's fallback instead of stalling the request. The worker
thread of a timed-out call is not interrupted; its result is simply ignored.

Each stage runs on its own bounded executor. Abandoned calls keep their worker
busy until they return, so a slow explanation model may exhaust the "explain"
workers but never delays intent parsing or retrieval.
"""
from __future__ import annotations

import itertools
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union

T = TypeVar("T")

DEFAULT_STAGE_WORKERS = 8
STAGE_WORKERS = {
    "parse_intent": 16,
    "embed_intent": 16,
    "retrieve": 16,
    "explain": 32,
}

_executors: Dict[str, ThreadPoolExecutor] = {}
_executors_lock = threading.Lock()


def stage_executor(stage: str) -> ThreadPoolExecutor:
    """The worker pool reserved for ``stage``, created on first use."""
    with _executors_lock:
        executor = _executors.get(stage)
        if executor is None:
            executor = ThreadPoolExecutor(
                max_workers=STAGE_WORKERS.get(stage, DEFAULT_STAGE_WORKERS),
                thread_name_prefix=f"wingman-{stage}",
            )
            _executors[stage] = executor
        return executor


class StageTimeout(TimeoutError):
    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"{stage} timed out after {timeout:.1f}s")
        self.stage = stage
        self.timeout = timeout


def call_with_timeout(
    fn: Callable[..., T],
    *args: object,
    timeout: Optional[float],
    stage: str = "call",
    **kwargs: object,
) -> T:
    """Run ``fn`` on the ``stage`` worker pool and wait at most ``timeout`` seconds.

    Raises:
        StageTimeout: If the call does not finish in time.
        Exception: Whatever ``fn`` raised.
    """
    if timeout is None:
        return fn(*args, **kwargs)
    future = stage_executor(stage).submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise StageTimeout(stage, timeout) from None


def map_with_timeout(
    fn: Callable[[Any], T],
    items: Sequence[Any],
    timeout: Optional[float],
    stage: str = "call",
) -> List[Union[T, BaseException]]:
    """Run ``fn`` over ``items`` concurrently under one shared deadline.

    Each slot of the result holds either the return value or the exception
    for that item (``StageTimeout`` if the deadline passed first), in input order.
    """
    executor = stage_executor(stage)
    futures = [executor.submit(fn, item) for item in items]
    deadline = None if timeout is None else time.monotonic() + timeout
    results: List[Union[T, BaseException]] = []
    for future in futures:
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            results.append(future.result(timeout=remaining))
        except FutureTimeout:
            future.cancel()
            results.append(StageTimeout(stage, timeout or 0.0))
        except Exception as exc:
            results.append(exc)
    return results


class LatestRequestGate:
    """Hands out increasing tickets per key so callers can drop superseded results.

    A user firing refinements back to back gets one ticket per request; only
    the result carrying the newest ticket is applied.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._latest: Dict[str, int] = {}

    def issue(self, key: str) -> int:
        with self._lock:
            ticket = next(self._counter)
            self._latest[key] = ticket
            return ticket

    def is_current(self, key: str, ticket: int) -> bool:
        with self._lock:
            return self._latest.get(key) == ticket

    def discard(self, key: str, ticket: int) -> None:
        """Retire ``ticket`` if it is still the newest, e.g. after its request failed."""
        with self._lock:
            if self._latest.get(key) == ticket:
                del self._latest[key]

    def accept(self, key: str, ticket: int, result: T) -> Optional[T]:
        """Return ``result`` if ``ticket`` is still the newest for ``key``, else None.

        Accepting the newest ticket retires the key, so idle users hold no entry.
        """
        with self._lock:
            if self._latest.get(key) != ticket:
                return None
            del self._latest[key]
            return result

    def pending(self) -> int:
        """Number of keys with an unresolved ticket."""
        with self._lock:
            return len(self._latest)
