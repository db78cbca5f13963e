"""
Streaming embedder/upserter.

Chunks are embedded in adaptive batches, recorded in the embeddings
ledger, and buffered until enough are ready to upsert. Upserts always
advance from ``last_upserted_index`` in index order, and point ids are a
stable hash of the owning document and chunk index, so re-upserting a
batch after a crash overwrites the same points.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Optional

from config import INGEST_METADATA_MAX_TEXT_CHARS, PHASE_PERCENT
from docproc_exceptions import ErrorCode, ProcessingError
from interfaces import Embedder, VectorStore
from .batching import AdaptiveBatchRunner, BatchPolicy
from .chunker import Chunk
from .job_state import JobState, JobStateManager
from .scratch import EMBEDDING_LEDGER, ScratchStorage
from .stats import ThreadSafeStats
from .timeouts import OperationGuard

ProgressCallback = Callable[[dict[str, Any]], None]


def make_point_id(owner_id: str, scope_id: str, document_id: str, chunk_index: int) -> str:
    """Deterministic vector-store point id, formatted as a UUID."""
    base = f"{owner_id}:{scope_id}:{document_id}:{chunk_index}"
    digest = hashlib.sha256(base.encode("utf-8")).hexdigest()
    return str(uuid.UUID(digest[:32]))


@dataclass(frozen=True)
class DocumentIdentity:
    owner_id: str
    scope_id: str
    scope_type: str
    document_id: str

    def point_id(self, chunk_index: int) -> str:
        return make_point_id(self.owner_id, self.scope_id, self.document_id, chunk_index)


@dataclass(frozen=True)
class EmbeddedChunk:
    index: int
    vector: list[float]
    text: str

    @property
    def id(self) -> str:
        return str(self.index)

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "index": self.index, "vector": self.vector, "text": self.text}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "EmbeddedChunk":
        return cls(
            index=int(record["index"]),
            vector=[float(v) for v in record["vector"]],
            text=str(record.get("text", "")),
        )


@dataclass
class EmbedUpsertResult:
    total_embedded: int
    total_upserted: int
    skipped: int


class StreamingEmbedder:
    def __init__(
        self,
        embedder: Embedder,
        vector_store: VectorStore,
        scratch: ScratchStorage,
        state_manager: JobStateManager,
        guard: OperationGuard,
        identity: DocumentIdentity,
        *,
        model: str,
        embed_batch: int,
        upsert_batch: int,
        namespace: Optional[str] = None,
        policy: Optional[BatchPolicy] = None,
        metadata_max_chars: int = INGEST_METADATA_MAX_TEXT_CHARS,
        stats: Optional[ThreadSafeStats] = None,
        sleep: Callable[[float], Any] = time.sleep,
        logger: Optional[logging.Logger] = None,
    ):
        self._embedder = embedder
        self._vector_store = vector_store
        self._scratch = scratch
        self._state_manager = state_manager
        self._guard = guard
        self._identity = identity
        self._model = model
        self._embed_batch = embed_batch
        self._upsert_batch = upsert_batch
        self._namespace = namespace
        self._policy = policy or BatchPolicy()
        self._metadata_max_chars = metadata_max_chars
        self._stats = stats
        self._sleep = sleep
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Backend calls
    # ------------------------------------------------------------------

    def _embed(self, chunks: list[Chunk]) -> list[list[float]]:
        texts = [c.text for c in chunks]
        timeout = self._guard.budget("embedding").timeout_s
        vectors = self._guard.run(
            "embedding",
            lambda: self._embedder.embed_texts(texts, model=self._model, timeout=timeout),
        )
        if len(vectors) != len(chunks):
            raise ProcessingError(
                f"Embedder returned {len(vectors)} vectors for {len(chunks)} chunks",
                code=ErrorCode.EMBEDDING_FAILED,
            )
        return vectors

    def _to_point(self, entry: EmbeddedChunk) -> dict[str, Any]:
        return {
            "id": self._identity.point_id(entry.index),
            "values": entry.vector,
            "metadata": {
                "owner_id": self._identity.owner_id,
                "scope_id": self._identity.scope_id,
                "scope_type": self._identity.scope_type,
                "document_id": self._identity.document_id,
                "chunk_index": entry.index,
                "text": entry.text[: self._metadata_max_chars],
            },
        }

    def _upsert(self, entries: list[EmbeddedChunk]) -> Any:
        points = [self._to_point(e) for e in entries]
        return self._guard.run(
            "vector_upsert",
            lambda: self._vector_store.upsert(points, namespace=self._namespace),
        )

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    def _restore_buffer(self, state: JobState) -> dict[int, EmbeddedChunk]:
        """Reload embedded-but-not-upserted entries from the ledger."""
        progress = state.progress
        low, high = progress.last_upserted_index, progress.last_embedded_index
        restored: dict[int, EmbeddedChunk] = {}
        if high <= low:
            return restored
        for record in self._scratch.iter_records(EMBEDDING_LEDGER):
            try:
                entry = EmbeddedChunk.from_record(record)
            except (KeyError, TypeError, ValueError):
                continue
            if low <= entry.index < high:
                restored[entry.index] = entry
        return restored

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def embed_and_upsert(
        self,
        chunks: Iterable[Chunk],
        state: JobState,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EmbedUpsertResult:
        """
        Embed and upsert every chunk not yet embedded.

        ``skipped`` counts the chunks below the resume point, whether or
        not ``chunks`` still yields them.
        """
        progress = state.progress
        resume_embedded = progress.last_embedded_index
        buffer = self._restore_buffer(state)
        missing = {
            i for i in range(progress.last_upserted_index, resume_embedded)
            if i not in buffer
        }
        if buffer or missing:
            self._logger.info(
                "Job %s: restored %d embedded chunks awaiting upsert, %d to re-embed",
                state.job_id,
                len(buffer),
                len(missing),
            )
        if resume_embedded:
            self._logger.info(
                "Job %s: resuming embedding at chunk %d", state.job_id, resume_embedded)

        counters = {"embedded": 0, "upserted": 0}

        def _notify() -> None:
            if on_progress is None:
                return
            total = progress.chunks_generated
            done = progress.chunks_upserted
            span = PHASE_PERCENT["embedding_complete"] - PHASE_PERCENT["embedding"]
            on_progress({
                "phase": "embedding",
                "chunks_total": total,
                "chunks_embedded": progress.chunks_embedded,
                "chunks_upserted": done,
                "percent": PHASE_PERCENT["embedding"] + (span * done // total if total else 0),
            })

        def _on_upserted(entries: list[EmbeddedChunk], _result: Any) -> None:
            for entry in entries:
                buffer.pop(entry.index, None)
            self._state_manager.update_progress(
                state,
                chunks_upserted=progress.chunks_upserted + len(entries),
                last_upserted_index=entries[-1].index + 1,
            )
            counters["upserted"] += len(entries)
            if self._stats is not None:
                self._stats.increment("chunks_upserted", len(entries))
            _notify()

        upserter: AdaptiveBatchRunner[EmbeddedChunk, Any] = AdaptiveBatchRunner(
            "upsert",
            self._upsert,
            batch_size=self._upsert_batch,
            policy=self._policy,
            sleep=self._sleep,
            logger=self._logger,
        )

        def _ready() -> list[EmbeddedChunk]:
            ready: list[EmbeddedChunk] = []
            index = progress.last_upserted_index
            while index in buffer:
                ready.append(buffer[index])
                index += 1
            return ready

        def _flush(force: bool) -> None:
            ready = _ready()
            if ready and (force or len(ready) >= upserter.batch_size):
                upserter.run(ready, _on_upserted)

        def _on_embedded(batch: list[Chunk], vectors: list[list[float]]) -> None:
            entries = [
                EmbeddedChunk(index=c.index, vector=list(v), text=c.text)
                for c, v in zip(batch, vectors)
            ]
            self._scratch.append_records(EMBEDDING_LEDGER, [e.to_record() for e in entries])
            fresh = [e for e in entries if e.index >= progress.last_embedded_index]
            if fresh:
                self._state_manager.update_progress(
                    state,
                    persist=False,
                    chunks_embedded=progress.chunks_embedded + len(fresh),
                    last_embedded_index=fresh[-1].index + 1,
                )
            for entry in entries:
                buffer[entry.index] = entry
            self._state_manager.save(state)
            counters["embedded"] += len(fresh)
            if self._stats is not None:
                self._stats.increment("chunks_embedded", len(fresh))
            _flush(force=False)

        def _pending_chunks() -> Iterable[Chunk]:
            for chunk in chunks:
                if chunk.index < progress.last_upserted_index:
                    continue
                if chunk.index < resume_embedded and chunk.index not in missing:
                    continue
                yield chunk

        embedder: AdaptiveBatchRunner[Chunk, list[list[float]]] = AdaptiveBatchRunner(
            "embedding",
            self._embed,
            batch_size=self._embed_batch,
            policy=self._policy,
            sleep=self._sleep,
            logger=self._logger,
        )
        embedder.run(_pending_chunks(), _on_embedded)
        _flush(force=True)

        if buffer:
            raise ProcessingError(
                f"Job {state.job_id}: {len(buffer)} embedded chunks could not be upserted "
                f"in order from index {progress.last_upserted_index}",
                code=ErrorCode.INTERNAL_ERROR,
            )

        skipped = resume_embedded - len(missing)
        if self._stats is not None and skipped:
            self._stats.increment("chunks_skipped", skipped)
        self._logger.info(
            "Job %s: embedded %d, upserted %d, skipped %d (batch sizes %d/%d)",
            state.job_id,
            counters["embedded"],
            counters["upserted"],
            skipped,
            embedder.batch_size,
            upserter.batch_size,
        )
        return EmbedUpsertResult(
            total_embedded=counters["embedded"],
            total_upserted=counters["upserted"],
            skipped=skipped,
        )


__all__ = [
    "make_point_id",
    "DocumentIdentity",
    "EmbeddedChunk",
    "EmbedUpsertResult",
    "StreamingEmbedder",
]
