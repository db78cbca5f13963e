"""
Timeout, retry and concurrency gating for external calls.

Every call that leaves the process (download, OCR, transcription,
embedding, vector upsert, callback) runs through ``OperationGuard.run``,
which applies the per-operation timeout and attempt budget from
``ProcessorConfig.operation_timeouts``. Calls to quota-limited services
additionally pass an ``ExternalCallGate``, a bounded queue with its own
wait timeout shared by every job in the process.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from typing import Any, Optional, TypeVar

from config import (
    INGEST_BACKOFF_JITTER_MIN,
    INGEST_BACKOFF_JITTER_SPAN,
    OPERATION_BACKOFF_BASE_S,
    OPERATION_BACKOFF_CAP_S,
    OperationTimeout,
)
from docproc_exceptions import (
    ConcurrencyLimitError,
    ErrorCategory,
    ErrorCode,
    ProcessingTimeoutError,
    wrap_exception,
)

T = TypeVar("T")

TIMEOUT_CODES: dict[str, ErrorCode] = {
    "file_download": ErrorCode.FILE_DOWNLOAD_TIMEOUT,
    "ocr": ErrorCode.OCR_TIMEOUT,
    "transcription": ErrorCode.TRANSCRIPTION_TIMEOUT,
    "extraction": ErrorCode.PROCESSING_TIMEOUT,
}


def backoff_seconds(
    attempt: int,
    *,
    base: float = OPERATION_BACKOFF_BASE_S,
    cap: float = OPERATION_BACKOFF_CAP_S,
    rng: Optional[random.Random] = None,
) -> float:
    """min(base * 2^(attempt-1), cap) with multiplicative jitter; ``attempt`` is 1-based."""
    source = rng or random
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = INGEST_BACKOFF_JITTER_MIN + source.random() * INGEST_BACKOFF_JITTER_SPAN
    return min(cap, exp * jitter)


def call_with_timeout(
    fn: Callable[[], T],
    timeout_s: float,
    *,
    operation: str,
    timeout_code: ErrorCode = ErrorCode.TIMEOUT_ERROR,
    on_finish: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run ``fn`` on a daemon thread and wait at most ``timeout_s`` for it.

    A timed-out call is abandoned, not interrupted; backends also carry
    their own transport timeouts so the abandoned thread ends on its own.
    ``on_finish`` runs on that thread once ``fn`` has returned or raised,
    even when the caller has already given up waiting.
    """
    future: Future = Future()

    def _runner() -> None:
        try:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn())
            except BaseException as exc:  # pylint: disable=broad-except
                future.set_exception(exc)
        finally:
            if on_finish is not None:
                on_finish()

    try:
        threading.Thread(target=_runner, name=f"docproc-{operation}", daemon=True).start()
    except RuntimeError:
        if on_finish is not None:
            on_finish()
        raise
    try:
        return future.result(timeout=timeout_s)
    except FuturesTimeoutError:
        if future.done():
            # fn raised TimeoutError itself
            raise
        raise ProcessingTimeoutError(
            f"{operation} timed out after {timeout_s:.1f}s",
            code=timeout_code,
            details={"operation": operation, "timeout_s": timeout_s},
        ) from None


# ============================================================================
# EXTERNAL CALL GATE
# ============================================================================


class ExternalCallGate:
    """
    Bounded concurrency for calls to rate-limited services.

    At most ``max_concurrent`` calls run at once; up to ``max_queued``
    callers may wait for a slot, each for at most ``queue_timeout_s``.
    Built once per process and passed to the adapters that need it.
    """

    def __init__(
        self,
        max_concurrent: int,
        *,
        max_queued: int,
        queue_timeout_s: float,
        logger: Optional[logging.Logger] = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._max_concurrent = max_concurrent
        self._max_queued = max_queued
        self._queue_timeout_s = queue_timeout_s
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._active = 0
        self._queued = 0
        self._completed = 0
        self._rejected = 0
        self._timed_out = 0

    def _enter_queue(self, operation: str) -> None:
        with self._lock:
            if self._queued >= self._max_queued:
                self._rejected += 1
                raise ConcurrencyLimitError(
                    f"{operation}: external call queue is full "
                    f"({self._queued} waiting, {self._active} active)",
                    details={"operation": operation},
                )
            self._queued += 1

    def _wait_for_slot(self, operation: str) -> None:
        if self._slots.acquire(blocking=False):
            return
        self._enter_queue(operation)
        try:
            acquired = self._slots.acquire(timeout=self._queue_timeout_s)
        finally:
            with self._lock:
                self._queued -= 1
        if not acquired:
            with self._lock:
                self._timed_out += 1
            raise ProcessingTimeoutError(
                f"{operation}: waited {self._queue_timeout_s:.1f}s for an external call slot",
                code=ErrorCode.TIMEOUT_ERROR,
                details={"operation": operation, "queue_timeout_s": self._queue_timeout_s},
            )

    def acquire(self, operation: str) -> None:
        """Take a slot; every successful call must be paired with ``release``."""
        self._wait_for_slot(operation)
        with self._lock:
            self._active += 1

    def release(self) -> None:
        with self._lock:
            self._active -= 1
            self._completed += 1
        self._slots.release()

    def run(self, operation: str, fn: Callable[[], T]) -> T:
        self.acquire(operation)
        try:
            return fn()
        finally:
            self.release()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "max_concurrent": self._max_concurrent,
                "active": self._active,
                "queued": self._queued,
                "completed": self._completed,
                "rejected": self._rejected,
                "timed_out": self._timed_out,
            }


# ============================================================================
# OPERATION GUARD
# ============================================================================


class OperationGuard:
    """Applies per-operation timeout and bounded retry with backoff."""

    def __init__(
        self,
        timeouts: Mapping[str, OperationTimeout],
        *,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], Any] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._timeouts = dict(timeouts)
        self._logger = logger or logging.getLogger(__name__)
        self._sleep = sleep
        self._rng = rng or random.Random()

    def budget(self, operation: str) -> OperationTimeout:
        try:
            return self._timeouts[operation]
        except KeyError as exc:
            raise ValueError(f"Unknown operation category: {operation}") from exc

    def run(
        self,
        operation: str,
        fn: Callable[[], T],
        *,
        gate: Optional[ExternalCallGate] = None,
        max_attempts: Optional[int] = None,
        hard_timeout: bool = True,
    ) -> T:
        """
        Run ``fn`` under the budget for ``operation``. With
        ``hard_timeout=False`` the call is not abandoned on timeout; ``fn``
        must enforce ``budget(operation).timeout_s`` itself.
        """
        budget = self.budget(operation)
        attempts = max_attempts or budget.max_attempts
        timeout_code = TIMEOUT_CODES.get(operation, ErrorCode.TIMEOUT_ERROR)

        def _attempt() -> T:
            if not hard_timeout:
                if gate is not None:
                    return gate.run(operation, fn)
                return fn()
            if gate is not None:
                # Released by the worker thread; an abandoned call keeps its slot.
                gate.acquire(operation)
            return call_with_timeout(
                fn,
                budget.timeout_s,
                operation=operation,
                timeout_code=timeout_code,
                on_finish=gate.release if gate is not None else None,
            )

        for attempt in range(1, attempts + 1):
            try:
                return _attempt()
            except Exception as exc:  # pylint: disable=broad-except
                error = wrap_exception(exc)
                timed_out = error.category is ErrorCategory.TIMEOUT
                can_retry = (
                    attempt < attempts
                    and error.retryable
                    and (budget.retry_on_timeout or not timed_out)
                )
                if not can_retry:
                    if error is exc:
                        raise
                    raise error from exc
                delay = backoff_seconds(attempt, rng=self._rng)
                self._logger.warning(
                    "%s attempt %d/%d failed (%s); retrying in %.1fs",
                    operation,
                    attempt,
                    attempts,
                    error.code.value,
                    delay,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")  # pragma: no cover


__all__ = [
    "TIMEOUT_CODES",
    "backoff_seconds",
    "call_with_timeout",
    "ExternalCallGate",
    "OperationGuard",
]
