"""
Tests for operation timeouts, bounded retries and the external call gate.
"""

import random
import threading
import time

import pytest

from config import OperationTimeout, default_operation_timeouts
from docproc_exceptions import (
    ConcurrencyLimitError,
    ErrorCode,
    ExtractionError,
    ProcessingTimeoutError,
    ServiceUnavailableError,
)
from ingest.timeouts import ExternalCallGate, OperationGuard, backoff_seconds, call_with_timeout


def budgets(**overrides):
    timeouts = default_operation_timeouts()
    timeouts.update(overrides)
    return timeouts


class TestOperationGuard:
    """Per-operation timeout and retry budgets."""

    def setup_method(self):
        self.sleeps = []

    def _guard(self, **overrides):
        return OperationGuard(budgets(**overrides), sleep=self.sleeps.append, rng=random.Random(2))

    def test_timeout_carries_operation_code(self):
        guard = self._guard(ocr=OperationTimeout(0.05, 1))

        with pytest.raises(ProcessingTimeoutError) as info:
            guard.run("ocr", lambda: time.sleep(1))

        assert info.value.code is ErrorCode.OCR_TIMEOUT
        assert info.value.retryable

    def test_transient_failure_is_retried(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ServiceUnavailableError("503")
            return "ok"

        assert self._guard().run("file_download", flaky) == "ok"
        assert len(calls) == 3
        assert len(self.sleeps) == 2

    def test_non_retryable_failure_is_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise ExtractionError("corrupt")

        with pytest.raises(ExtractionError):
            self._guard().run("extraction", broken)
        assert len(calls) == 1
        assert self.sleeps == []

    def test_timed_out_callback_is_not_retried(self):
        guard = self._guard(callback=OperationTimeout(0.05, 3, retry_on_timeout=False))
        calls = []

        def slow():
            calls.append(1)
            time.sleep(1)

        with pytest.raises(ProcessingTimeoutError):
            guard.run("callback", slow)
        assert len(calls) == 1

    def test_soft_timeout_runs_inline(self):
        caller = threading.current_thread()
        seen = []

        self._guard().run("ocr", lambda: seen.append(threading.current_thread()),
                          hard_timeout=False)

        assert seen == [caller]

    def test_plain_exceptions_are_classified(self):
        def reset():
            raise ConnectionError("connection reset by peer")

        with pytest.raises(ServiceUnavailableError):
            self._guard().run("embedding", reset)

    def test_max_attempts_override(self):
        calls = []

        def flaky():
            calls.append(1)
            raise ServiceUnavailableError("503")

        with pytest.raises(ServiceUnavailableError):
            self._guard().run("file_download", flaky, max_attempts=1)
        assert len(calls) == 1

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            self._guard().budget("teleport")


def test_call_with_timeout_returns_value():
    assert call_with_timeout(lambda: 42, 1.0, operation="extraction") == 42


def test_on_finish_runs_when_abandoned_call_ends():
    finished = threading.Event()

    with pytest.raises(ProcessingTimeoutError):
        call_with_timeout(lambda: time.sleep(0.2), 0.05, operation="ocr", on_finish=finished.set)

    assert finished.wait(5)


@pytest.mark.parametrize("attempt", [1, 2, 3, 6, 20])
def test_backoff_is_bounded(attempt):
    delay = backoff_seconds(attempt, rng=random.Random(attempt))
    base = min(10.0, 2 ** (attempt - 1))

    assert 0.5 * base <= delay <= min(10.0, 1.5 * base)


class TestExternalCallGate:
    """Bounded concurrency with a bounded wait queue."""

    def _hold_slot(self, gate):
        started = threading.Event()
        release = threading.Event()

        def _hold():
            gate.run("ocr", lambda: (started.set(), release.wait(5)))

        thread = threading.Thread(target=_hold, daemon=True)
        thread.start()
        assert started.wait(5)
        return release, thread

    def test_full_queue_rejects(self):
        gate = ExternalCallGate(1, max_queued=0, queue_timeout_s=1.0)
        release, thread = self._hold_slot(gate)
        try:
            with pytest.raises(ConcurrencyLimitError) as info:
                gate.run("ocr", lambda: None)
            assert info.value.retryable
        finally:
            release.set()
            thread.join(5)
        assert gate.stats()["rejected"] == 1

    def test_queue_wait_times_out(self):
        gate = ExternalCallGate(1, max_queued=1, queue_timeout_s=0.05)
        release, thread = self._hold_slot(gate)
        try:
            with pytest.raises(ProcessingTimeoutError):
                gate.run("ocr", lambda: None)
        finally:
            release.set()
            thread.join(5)
        stats = gate.stats()
        assert stats["timed_out"] == 1
        assert stats["queued"] == 0

    def test_stats_count_completed_calls(self):
        gate = ExternalCallGate(2, max_queued=2, queue_timeout_s=1.0)

        assert gate.run("transcription", lambda: "done") == "done"
        stats = gate.stats()
        assert stats["completed"] == 1
        assert stats["active"] == 0
        assert stats["max_concurrent"] == 2

    def test_timed_out_calls_hold_their_slot_until_they_end(self):
        gate = ExternalCallGate(1, max_queued=3, queue_timeout_s=5.0)
        guard = OperationGuard({"ocr": OperationTimeout(0.1, 1)})
        lock = threading.Lock()
        running = []
        peaks = []
        ended = threading.Semaphore(0)

        def slow_ocr():
            with lock:
                running.append(1)
                peaks.append(len(running))
            time.sleep(0.3)
            with lock:
                running.pop()
            ended.release()

        for _ in range(3):
            with pytest.raises(ProcessingTimeoutError):
                guard.run("ocr", slow_ocr, gate=gate)
        for _ in range(3):
            assert ended.acquire(timeout=5)

        assert len(peaks) == 3
        assert max(peaks) == 1

    def test_rejects_zero_slots(self):
        with pytest.raises(ValueError):
            ExternalCallGate(0, max_queued=1, queue_timeout_s=1.0)
