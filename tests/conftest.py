from __future__ import annotations

import random

import pytest

from config import ProcessorConfig
from fakes import FakeEmbedder, WhitespaceEncoder
from ingest import IngestContext
from ingest.chunker import StreamingChunker
from ingest.extraction import ExtractionSession
from ingest.job_state import JobStateManager
from ingest.payload import ChunkingOptions
from ingest.scratch import ScratchStorage
from ingest.timeouts import OperationGuard
from interfaces import InMemoryStateBackend, InMemoryVectorStore, RecordingCallbackSink


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def config(tmp_path):
    return ProcessorConfig(
        state_backend="memory",
        scratch_root=str(tmp_path / "scratch"),
        embed_batch=4,
        upsert_batch=4,
        job_retry_backoff_s=0.0,
    )


@pytest.fixture
def make_ctx(config, sleeps):
    """Build IngestContexts wired to in-memory backends; overrides win."""
    contexts = []

    def _make(**overrides):
        overrides.setdefault("encoder", WhitespaceEncoder())
        overrides.setdefault("embedder", FakeEmbedder())
        overrides.setdefault("vector_store", InMemoryVectorStore())
        overrides.setdefault("state_backend", InMemoryStateBackend())
        overrides.setdefault("callback_sink", RecordingCallbackSink())
        overrides.setdefault("ocr", None)
        overrides.setdefault("transcriber", None)
        ctx = IngestContext(config, sleep=sleeps.append, rng=random.Random(7), **overrides)
        contexts.append(ctx)
        return ctx

    yield _make
    for ctx in contexts:
        ctx.close()


@pytest.fixture
def guard(config, sleeps):
    return OperationGuard(config.operation_timeouts, sleep=sleeps.append, rng=random.Random(3))


@pytest.fixture
def make_session(tmp_path):
    """ExtractionSession over a fresh job state and scratch directory."""

    def _make(job_id="job-x", *, max_tokens=50, overlap_ratio=0.1, page_window=10,
              backend=None, on_progress=None, on_transcript=None):
        backend = backend or InMemoryStateBackend()
        manager = JobStateManager(job_id, backend)
        state = manager.initialize("doc-x")
        scratch = ScratchStorage(str(tmp_path / "scratch"), job_id)
        scratch.init()
        options = ChunkingOptions(
            max_tokens=max_tokens, overlap_ratio=overlap_ratio, page_window=page_window)
        return ExtractionSession(
            state=state,
            state_manager=manager,
            scratch=scratch,
            chunker=StreamingChunker(WhitespaceEncoder(), scratch, manager, options=options),
            options=options,
            on_progress=on_progress,
            on_transcript=on_transcript,
        )

    return _make
