"""
Tests for the job runner: attempts, final outcomes, callbacks and cleanup.
"""

import pytest

from docproc_exceptions import JobLeaseError
from fakes import FakeEmbedder, words
from ingest import JobPayload, JobRunner, get_job_status
from ingest.embedding import make_point_id
from ingest.scratch import ScratchStorage
from ingest.worker import STATUS_COMPLETED, STATUS_DEFERRED, STATUS_FAILED, STATUS_RETRYING
from interfaces import InMemoryStateBackend, InMemoryVectorStore, RecordingCallbackSink

CALLBACK_URL = "https://app.example.org/hooks/documents"


def payload(text=None, **overrides):
    fields = {
        "owner_id": "owner-3",
        "scope_id": "lib-3",
        "scope_type": "library",
        "document_id": "doc-3",
        "file_bytes": (text if text is not None else words(120)).encode("utf-8"),
        "declared_content_type": "text/plain",
        "callback_url": CALLBACK_URL,
        "callback_signing_secret": "s3cret",
        "chunking": {"maxTokens": 50, "overlapRatio": 0},
    }
    fields.update(overrides)
    return JobPayload(**fields)


class TestJobRunner:
    """Attempts and their outcomes."""

    @pytest.fixture(autouse=True)
    def _shared(self, config, sleeps):
        self.config = config
        self.sleeps = sleeps
        self.backend = InMemoryStateBackend()
        self.store = InMemoryVectorStore()
        self.sink = RecordingCallbackSink()

    def _runner(self, make_ctx, max_attempts=3, **overrides):
        overrides.setdefault("state_backend", self.backend)
        overrides.setdefault("vector_store", self.store)
        overrides.setdefault("callback_sink", self.sink)
        self.ctx = make_ctx(**overrides)
        runner = JobRunner(self.ctx, max_workers=1, max_attempts=max_attempts)
        return runner

    def _scratch_exists(self, job_id):
        return ScratchStorage(self.config.scratch_root, job_id).directory.exists()

    def test_successful_job(self, make_ctx):
        runner = self._runner(make_ctx)

        outcome = runner.process("job-a", payload())

        assert outcome.status == STATUS_COMPLETED
        assert outcome.final
        assert outcome.attempts == 1
        assert outcome.result.total_chunks == 3
        assert set(self.store.points) == {
            make_point_id("owner-3", "lib-3", "doc-3", i) for i in range(3)}
        assert self.store.points[make_point_id("owner-3", "lib-3", "doc-3", 0)][
            "metadata"]["scope_type"] == "library"

        completed = self.sink.payloads("completed")
        assert completed == [outcome.callback]
        assert completed[0]["totalChunks"] == 3
        assert completed[0]["method"] == "txt-text"
        assert [p["phase"] for p in self.sink.payloads("processing")] == [
            "downloading", "download_complete", "extracting", "extraction_complete",
            "embedding", "embedding_complete",
        ]
        assert all(item.signature for item in self.sink.sent)

        assert get_job_status(self.backend, "job-a") == {"job_id": "job-a", "state": "not_found"}
        assert not self._scratch_exists("job-a")
        assert self.ctx.stats.get_stats()["jobs_completed"] == 1
        runner.shutdown()

    def test_unsupported_type_fails_once_with_callback(self, make_ctx):
        runner = self._runner(make_ctx)

        outcome = runner.process(
            "job-u", payload(declared_content_type="application/x-msdownload"))

        assert outcome.status == STATUS_FAILED
        assert outcome.attempts == 1
        assert outcome.error.code.value == "UNSUPPORTED_MIME_TYPE"
        failed = self.sink.payloads("failed")
        assert len(failed) == 1
        assert failed[0]["errorCode"] == "UNSUPPORTED_MIME_TYPE"
        assert not self._scratch_exists("job-u")
        assert self.sleeps == []

    def test_blank_document_fails_after_all_attempts(self, make_ctx):
        runner = self._runner(make_ctx, max_attempts=2)

        outcome = runner.process("job-z", payload("   \n "))

        assert outcome.status == STATUS_FAILED
        assert outcome.attempts == 2
        assert outcome.error.code.value == "EXTRACTION_FAILED"
        assert len(self.sink.payloads("failed")) == 1
        assert self.ctx.stats.get_stats()["failed_jobs"] == ["job-z"]

    def test_consecutive_errors_end_the_job_early(self, make_ctx):
        runner = self._runner(make_ctx, max_attempts=5, embedder=FakeEmbedder(always_fail=True))

        outcome = runner.process("job-e", payload())

        assert outcome.status == STATUS_FAILED
        assert outcome.attempts == 3
        assert outcome.error.code.value == "EMBEDDING_FAILED"
        assert self.ctx.stats.get_stats()["jobs_retried"] == 2

    def test_transient_failure_is_retried_and_resumed(self, make_ctx):
        embedder = FakeEmbedder(fail_calls=1)
        runner = self._runner(make_ctx, embedder=embedder)

        outcome = runner.process("job-t", payload())

        assert outcome.status == STATUS_COMPLETED
        assert outcome.attempts == 2
        assert outcome.result.resumed
        assert outcome.result.resumed_from == "embedding"
        assert len(self.store.points) == 3
        assert self.sink.payloads("completed")[0]["resumed"] is True

    def test_failed_attempt_leaves_resumable_state(self, make_ctx):
        runner = self._runner(make_ctx, embedder=FakeEmbedder(always_fail=True))

        outcome = runner.run_attempt("job-s", payload(), 1)

        assert outcome.status == STATUS_RETRYING
        assert not outcome.final
        assert self.sink.payloads("failed") == []
        status = get_job_status(self.backend, "job-s")
        assert status["state"] == "embedding"
        assert status["can_resume"] is True
        assert status["error_count"] == 1
        assert status["last_error"]["code"] == "EMBEDDING_FAILED"
        assert status["progress"]["chunks_generated"] == 3
        assert self._scratch_exists("job-s")

    def test_leased_job_is_deferred(self, make_ctx):
        runner = self._runner(make_ctx)
        lease = self.ctx.lease_manager.acquire("job-l")

        outcome = runner.run_attempt("job-l", payload(), 1)

        assert outcome.status == STATUS_DEFERRED
        assert not outcome.final
        assert self.sink.sent == []
        assert get_job_status(self.backend, "job-l")["state"] == "not_found"
        lease.release()

    @pytest.mark.parametrize("overrides,expected", [
        ({}, STATUS_COMPLETED),
        ({"declared_content_type": "application/x-msdownload"}, STATUS_FAILED),
    ])
    def test_final_outcome_is_handled_under_the_lease(self, make_ctx, monkeypatch,
                                                      overrides, expected):
        runner = self._runner(make_ctx)
        cleanup = runner.cleanup
        held = []

        def _cleanup(job_id):
            try:
                self.ctx.lease_manager.acquire(job_id).release()
                held.append(False)
            except JobLeaseError:
                held.append(True)
            cleanup(job_id)

        monkeypatch.setattr(runner, "cleanup", _cleanup)

        outcome = runner.run_attempt("job-h", payload(**overrides), 1)

        assert outcome.status == expected
        assert held == [True]
        self.ctx.lease_manager.acquire("job-h").release()

    def test_submit_runs_on_the_pool(self, make_ctx):
        runner = self._runner(make_ctx)

        outcome = runner.submit("job-p", payload()).result(timeout=30)

        assert outcome.status == STATUS_COMPLETED
        runner.shutdown()

    def test_cleanup_disabled_keeps_scratch(self, make_ctx):
        self.config.cleanup_on_success = False
        runner = self._runner(make_ctx)

        runner.process("job-k", payload())

        assert self._scratch_exists("job-k")
        assert get_job_status(self.backend, "job-k")["state"] == "completed"
        runner.cleanup("job-k")
        assert not self._scratch_exists("job-k")
        assert get_job_status(self.backend, "job-k")["state"] == "not_found"
