"""
Adaptive batching for embedding and upsert calls.

BatchPolicy is a pure decision object: given the error from one batch
attempt it answers retry (after a backoff), shrink (halve the batch and
retry the same window) or fail. AdaptiveBatchRunner applies those
decisions to a stream of items, handing each successful batch to a
callback before the next one is attempted, so progress already made is
never discarded by a later failure.
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Generic, Optional, TypeVar

from config import (
    INGEST_BACKOFF_BASE,
    INGEST_BACKOFF_CAP,
    INGEST_BACKOFF_JITTER_MIN,
    INGEST_BACKOFF_JITTER_SPAN,
    INGEST_BATCH_MAX_RETRIES,
)
from docproc_exceptions import DocProcError, ErrorCode, wrap_exception

T = TypeVar("T")
R = TypeVar("R")


# ---------------------------------------------------------------------------
# BatchPolicy  (pure, no I/O, no sleeping)
# ---------------------------------------------------------------------------


class BatchActionKind(Enum):
    RETRY = auto()
    SHRINK = auto()
    FAIL = auto()


@dataclass(frozen=True)
class RetryAction:
    delay_s: float
    kind: BatchActionKind = BatchActionKind.RETRY


@dataclass(frozen=True)
class ShrinkAction:
    new_size: int
    kind: BatchActionKind = BatchActionKind.SHRINK


@dataclass(frozen=True)
class FailAction:
    reason: str
    kind: BatchActionKind = BatchActionKind.FAIL


NextAction = RetryAction | ShrinkAction | FailAction


class BatchPolicy:
    def __init__(
        self,
        *,
        max_retries: int = INGEST_BATCH_MAX_RETRIES,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.max_retries = max_retries
        self._rng = rng or random.Random()

    def backoff_seconds(self, retry_index: int) -> float:
        """Backoff before retry ``retry_index`` (0-indexed)."""
        exp = min(INGEST_BACKOFF_CAP, INGEST_BACKOFF_BASE * (2 ** retry_index))
        jitter = INGEST_BACKOFF_JITTER_MIN + \
            self._rng.random() * INGEST_BACKOFF_JITTER_SPAN
        return min(INGEST_BACKOFF_CAP, exp + jitter)

    def next_action(
        self,
        error: DocProcError,
        retry_index: int,
        batch_size: int,
    ) -> NextAction:
        """
        Decide what to do after a failed batch attempt.

        Args:
            error: The classified error from the attempt.
            retry_index: Retries already spent on the current window.
            batch_size: Size of the window that failed.
        """
        if error.code is ErrorCode.BATCH_TOO_LARGE:
            if batch_size <= 1:
                return FailAction(reason="batch_too_large_at_min_size")
            return ShrinkAction(new_size=max(1, batch_size // 2))

        if not error.retryable:
            return FailAction(reason="not_retryable")

        if retry_index < self.max_retries:
            return RetryAction(delay_s=self.backoff_seconds(retry_index))

        return FailAction(reason="retries_exhausted")


# ---------------------------------------------------------------------------
# AdaptiveBatchRunner
# ---------------------------------------------------------------------------


class AdaptiveBatchRunner(Generic[T, R]):
    """
    Feeds items to ``call`` in batches of at most ``batch_size``.

    A shrink is sticky for the rest of the run: once the provider has
    rejected a size, later windows start at the smaller size.
    """

    def __init__(
        self,
        name: str,
        call: Callable[[list[T]], R],
        *,
        batch_size: int,
        policy: Optional[BatchPolicy] = None,
        sleep: Callable[[float], Any] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.name = name
        self.batch_size = batch_size
        self._call = call
        self._policy = policy or BatchPolicy()
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)
        self.batches = 0
        self.retries = 0
        self.shrinks = 0

    def run(
        self,
        items: Iterable[T],
        on_batch: Callable[[list[T], R], None],
    ) -> int:
        """Process every item; returns the number of items processed."""
        source = iter(items)
        pending: deque[T] = deque()
        exhausted = False
        processed = 0
        retry_index = 0

        while True:
            while not exhausted and len(pending) < self.batch_size:
                try:
                    pending.append(next(source))
                except StopIteration:
                    exhausted = True
            if not pending:
                return processed

            window = [pending[i] for i in range(min(self.batch_size, len(pending)))]
            try:
                result = self._call(window)
            except Exception as exc:  # pylint: disable=broad-except
                error = wrap_exception(exc)
                action = self._policy.next_action(error, retry_index, len(window))
                if isinstance(action, ShrinkAction):
                    self._logger.warning(
                        "%s batch of %d too large; shrinking to %d",
                        self.name,
                        len(window),
                        action.new_size,
                    )
                    self.batch_size = action.new_size
                    self.shrinks += 1
                    retry_index = 0
                    continue
                if isinstance(action, RetryAction):
                    self._logger.warning(
                        "%s batch of %d failed (%s); retry %d/%d in %.1fs",
                        self.name,
                        len(window),
                        error.code.value,
                        retry_index + 1,
                        self._policy.max_retries,
                        action.delay_s,
                    )
                    self.retries += 1
                    retry_index += 1
                    self._sleep(action.delay_s)
                    continue
                self._logger.error(
                    "%s batch of %d failed permanently (%s): %s",
                    self.name,
                    len(window),
                    action.reason,
                    error.message,
                )
                if error is exc:
                    raise
                raise error from exc

            on_batch(window, result)
            for _ in window:
                pending.popleft()
            processed += len(window)
            self.batches += 1
            retry_index = 0


__all__ = [
    "BatchActionKind",
    "RetryAction",
    "ShrinkAction",
    "FailAction",
    "BatchPolicy",
    "AdaptiveBatchRunner",
]
