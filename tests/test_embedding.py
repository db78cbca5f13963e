"""
Tests for the streaming embedder/upserter and point ids.
"""

import random
import uuid

import pytest

from docproc_exceptions import EmbeddingError
from fakes import FakeEmbedder
from ingest.batching import BatchPolicy
from ingest.chunker import Chunk
from ingest.embedding import (
    DocumentIdentity,
    EmbeddedChunk,
    StreamingEmbedder,
    make_point_id,
)
from ingest.job_state import JobStateManager
from ingest.scratch import EMBEDDING_LEDGER, ScratchStorage
from ingest.stats import ThreadSafeStats
from interfaces import InMemoryStateBackend, InMemoryVectorStore


IDENTITY = DocumentIdentity(
    owner_id="owner-1", scope_id="scope-1", scope_type="library", document_id="doc-1")


def test_point_ids_are_deterministic_uuids():
    first = make_point_id("owner-1", "scope-1", "doc-1", 3)

    assert first == make_point_id("owner-1", "scope-1", "doc-1", 3)
    assert first != make_point_id("owner-1", "scope-1", "doc-1", 4)
    assert first != make_point_id("owner-2", "scope-1", "doc-1", 3)
    assert str(uuid.UUID(first)) == first
    assert IDENTITY.point_id(3) == first


class TestStreamingEmbedder:
    """Embedding, upserting and resuming a chunk stream."""

    def setup_method(self):
        self.backend = InMemoryStateBackend()
        self.store = InMemoryVectorStore()
        self.sleeps = []
        self.stats = ThreadSafeStats()
        self.events = []

    def _prepare(self, tmp_path, guard, job_id="job-e", chunk_count=10, **progress):
        self.manager = JobStateManager(job_id, self.backend)
        self.state = self.manager.initialize("doc-1")
        self.manager.update_progress(
            self.state, chunks_generated=chunk_count, last_chunk_index=chunk_count, **progress)
        self.scratch = ScratchStorage(str(tmp_path), job_id)
        self.scratch.init()
        self.chunks = [Chunk(index=i, text=f"chunk text {i}") for i in range(chunk_count)]
        self.guard = guard

    def _embedder(self, fake, *, embed_batch=4, upsert_batch=3, **kwargs):
        return StreamingEmbedder(
            fake,
            self.store,
            self.scratch,
            self.manager,
            self.guard,
            IDENTITY,
            model="test-embedding",
            embed_batch=embed_batch,
            upsert_batch=upsert_batch,
            policy=BatchPolicy(max_retries=2, rng=random.Random(1)),
            stats=self.stats,
            sleep=self.sleeps.append,
            **kwargs,
        )

    def test_embeds_and_upserts_every_chunk(self, tmp_path, guard):
        self._prepare(tmp_path, guard)
        fake = FakeEmbedder()

        result = self._embedder(fake).embed_and_upsert(
            self.chunks, self.state, on_progress=self.events.append)

        assert (result.total_embedded, result.total_upserted, result.skipped) == (10, 10, 0)
        assert fake.calls == [4, 4, 2]
        assert self.store.upsert_calls == 5
        assert set(self.store.points) == {IDENTITY.point_id(i) for i in range(10)}
        point = self.store.points[IDENTITY.point_id(7)]
        assert point["metadata"]["chunk_index"] == 7
        assert point["metadata"]["document_id"] == "doc-1"
        assert point["metadata"]["scope_type"] == "library"
        assert point["metadata"]["text"] == "chunk text 7"

        stored = self.backend.load("job-e")["progress"]
        assert stored["last_embedded_index"] == 10
        assert stored["last_upserted_index"] == 10
        assert stored["chunks_upserted"] == 10
        assert self.stats.get_stats()["chunks_upserted"] == 10
        assert self.events[-1]["percent"] == 95
        assert all(55 <= e["percent"] <= 95 for e in self.events)

    def test_reupserting_overwrites_the_same_points(self, tmp_path, guard):
        self._prepare(tmp_path, guard)
        self._embedder(FakeEmbedder()).embed_and_upsert(self.chunks, self.state)

        self._prepare(tmp_path, guard, job_id="job-e2")
        self._embedder(FakeEmbedder()).embed_and_upsert(self.chunks, self.state)

        assert len(self.store.points) == 10

    def test_shrinks_embedding_batches(self, tmp_path, guard):
        self._prepare(tmp_path, guard)
        fake = FakeEmbedder(max_batch=2)

        result = self._embedder(fake).embed_and_upsert(self.chunks, self.state)

        assert fake.calls == [4, 2, 2, 2, 2, 2]
        assert result.total_upserted == 10
        assert fake.embedded == [c.text for c in self.chunks]

    def test_rate_limit_is_retried(self, tmp_path, guard):
        self._prepare(tmp_path, guard)
        fake = FakeEmbedder(rate_limited_calls=1)

        result = self._embedder(fake).embed_and_upsert(self.chunks, self.state)

        assert result.total_embedded == 10
        assert len(self.sleeps) == 1

    def test_non_retryable_failure_keeps_earlier_progress(self, tmp_path, guard):
        self._prepare(tmp_path, guard)

        class FailSecondCall(FakeEmbedder):
            def embed_texts(self, texts, *, model, timeout=None):
                if self.successes == 1:
                    raise EmbeddingError("embedding backend rejected the input")
                return super().embed_texts(texts, model=model, timeout=timeout)

        with pytest.raises(EmbeddingError):
            self._embedder(FailSecondCall()).embed_and_upsert(self.chunks, self.state)

        stored = self.backend.load("job-e")["progress"]
        assert stored["last_embedded_index"] == 4
        assert stored["last_upserted_index"] == 4
        assert len(self.store.points) == 4

    def test_resume_skips_chunks_already_embedded(self, tmp_path, guard):
        self._prepare(
            tmp_path, guard,
            chunks_embedded=5, last_embedded_index=5,
            chunks_upserted=5, last_upserted_index=5,
        )
        fake = FakeEmbedder()

        result = self._embedder(fake).embed_and_upsert(self.chunks, self.state)

        assert result.skipped == 5
        assert result.total_embedded == 5
        assert result.total_upserted == 5
        assert fake.embedded == [f"chunk text {i}" for i in range(5, 10)]
        assert self.stats.get_stats()["chunks_skipped"] == 5

    def test_resume_restores_buffer_and_reembeds_missing_entries(self, tmp_path, guard):
        self._prepare(
            tmp_path, guard,
            chunks_embedded=5, last_embedded_index=5,
            chunks_upserted=2, last_upserted_index=2,
        )
        self.scratch.append_records(EMBEDDING_LEDGER, [
            EmbeddedChunk(index=i, vector=[1.0, 2.0, 3.0], text=f"chunk text {i}").to_record()
            for i in (0, 1, 2, 3)
        ])
        fake = FakeEmbedder()

        result = self._embedder(fake).embed_and_upsert(self.chunks, self.state)

        assert fake.embedded == [f"chunk text {i}" for i in range(4, 10)]
        assert result.skipped == 4
        assert result.total_embedded == 5
        assert result.total_upserted == 8
        assert set(self.store.points) == {IDENTITY.point_id(i) for i in range(2, 10)}
        assert self.store.points[IDENTITY.point_id(2)]["values"] == [1.0, 2.0, 3.0]
        assert self.state.progress.last_upserted_index == 10

    def test_metadata_text_is_truncated(self, tmp_path, guard):
        self._prepare(tmp_path, guard, chunk_count=1)

        self._embedder(FakeEmbedder(), metadata_max_chars=5).embed_and_upsert(
            self.chunks, self.state)

        point = self.store.points[IDENTITY.point_id(0)]
        assert point["metadata"]["text"] == "chunk"
