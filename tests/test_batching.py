"""
Tests for the batch policy and the adaptive batch runner.
"""

import random

import pytest

from docproc_exceptions import (
    BatchTooLargeError,
    EmbeddingError,
    ProcessingError,
    RateLimitedError,
    ServiceUnavailableError,
)
from ingest.batching import (
    AdaptiveBatchRunner,
    BatchPolicy,
    FailAction,
    RetryAction,
    ShrinkAction,
)


class TestBatchPolicy:
    """Pure decisions taken after a failed batch."""

    def setup_method(self):
        self.policy = BatchPolicy(max_retries=4, rng=random.Random(11))

    def test_batch_too_large_halves(self):
        assert self.policy.next_action(BatchTooLargeError("too big"), 0, 64) == ShrinkAction(32)
        assert self.policy.next_action(BatchTooLargeError("too big"), 0, 3) == ShrinkAction(1)

    def test_batch_too_large_at_size_one_fails(self):
        action = self.policy.next_action(BatchTooLargeError("too big"), 0, 1)

        assert isinstance(action, FailAction)
        assert action.reason == "batch_too_large_at_min_size"

    @pytest.mark.parametrize("error", [
        RateLimitedError("429"),
        ServiceUnavailableError("503"),
    ])
    def test_transient_errors_retry_with_backoff(self, error):
        action = self.policy.next_action(error, 0, 8)

        assert isinstance(action, RetryAction)
        assert 1.0 <= action.delay_s <= 2.0

    def test_retries_exhausted(self):
        action = self.policy.next_action(RateLimitedError("429"), 4, 8)

        assert action == FailAction(reason="retries_exhausted")

    def test_non_retryable_error_fails(self):
        action = self.policy.next_action(EmbeddingError("bad input"), 0, 8)

        assert action == FailAction(reason="not_retryable")

    def test_backoff_grows_and_is_capped(self):
        delays = [self.policy.backoff_seconds(i) for i in range(10)]

        assert delays[3] > delays[0]
        assert max(delays) <= 10.0


class TestAdaptiveBatchRunner:
    """Applying policy decisions to a stream of items."""

    def setup_method(self):
        self.sleeps = []
        self.done = []
        self.policy = BatchPolicy(max_retries=2, rng=random.Random(5))

    def _runner(self, call, batch_size):
        return AdaptiveBatchRunner(
            "embedding",
            call,
            batch_size=batch_size,
            policy=self.policy,
            sleep=self.sleeps.append,
        )

    def _collect(self, batch, result):
        assert result == [x * 2 for x in batch]
        self.done.extend(batch)

    def test_shrinks_down_to_one_and_keeps_earlier_batches(self):
        calls = []

        def call(batch):
            calls.append(len(batch))
            if len(calls) > 1 and len(batch) > 1:
                raise BatchTooLargeError("too many inputs")
            return [x * 2 for x in batch]

        runner = self._runner(call, 64)
        processed = runner.run(range(200), self._collect)

        assert processed == 200
        assert self.done == list(range(200))
        assert calls[:8] == [64, 64, 32, 16, 8, 4, 2, 1]
        assert runner.batch_size == 1
        assert runner.shrinks == 6
        assert self.sleeps == []

    def test_size_one_still_too_large_surfaces_error(self):
        calls = []

        def call(batch):
            calls.append(len(batch))
            raise BatchTooLargeError("too many inputs")

        with pytest.raises(BatchTooLargeError):
            self._runner(call, 4).run(range(4), self._collect)
        assert calls == [4, 2, 1]
        assert self.done == []

    def test_rate_limit_backs_off_then_succeeds(self):
        failures = {"left": 2}

        def call(batch):
            if failures["left"]:
                failures["left"] -= 1
                raise RateLimitedError("429 Too Many Requests")
            return [x * 2 for x in batch]

        runner = self._runner(call, 5)
        runner.run(range(12), self._collect)

        assert self.done == list(range(12))
        assert len(self.sleeps) == 2
        assert all(delay > 0 for delay in self.sleeps)
        assert runner.retries == 2
        assert runner.batches == 3

    def test_retries_exhausted_raises(self):
        calls = []

        def call(batch):
            calls.append(len(batch))
            raise RateLimitedError("429 Too Many Requests")

        with pytest.raises(RateLimitedError):
            self._runner(call, 5).run(range(5), self._collect)
        assert len(calls) == 3
        assert len(self.sleeps) == 2

    def test_failure_after_success_keeps_processed_batches(self):
        def call(batch):
            if batch[0] >= 3:
                raise EmbeddingError("bad input")
            return [x * 2 for x in batch]

        with pytest.raises(EmbeddingError):
            self._runner(call, 3).run(range(9), self._collect)
        assert self.done == [0, 1, 2]

    def test_unclassified_exception_is_wrapped(self):
        def call(batch):
            raise ValueError("malformed vector")

        with pytest.raises(ProcessingError) as info:
            self._runner(call, 2).run(range(2), self._collect)
        assert isinstance(info.value.__cause__, ValueError)

    def test_empty_input(self):
        assert self._runner(lambda batch: batch, 4).run([], self._collect) == 0

    def test_rejects_invalid_batch_size(self):
        with pytest.raises(ValueError):
            self._runner(lambda batch: batch, 0)
