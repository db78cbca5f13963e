"""
Streaming chunker.

Splits each extracted text segment into overlapping token windows and
appends them to the chunk ledger in scratch storage, numbering chunks
globally across the job. Only the current segment is held in memory.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from docproc_exceptions import ChunkingError, ErrorCode
from .job_state import JobState, JobStateManager
from .payload import ChunkingOptions
from .scratch import CHUNK_LEDGER, ScratchStorage


class TokenEncoder(Protocol):
    def encode(self, text: str) -> list[int]: ...

    def decode(self, tokens: Sequence[int]) -> str: ...


@dataclass(frozen=True)
class Chunk:
    index: int
    text: str

    def to_record(self) -> dict[str, Any]:
        return {"index": self.index, "text": self.text}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Chunk":
        return cls(index=int(record["index"]), text=str(record["text"]))


def split_tokens(
    encoder: TokenEncoder,
    text: str,
    *,
    max_tokens: int,
    overlap_tokens: int,
) -> Iterator[str]:
    """Yield overlapping chunks of at most ``max_tokens`` tokens."""
    tokens = encoder.encode(text)
    start = 0
    overlap = min(overlap_tokens, max_tokens - 1)

    while start < len(tokens):
        end = min(start + max_tokens, len(tokens))
        chunk = encoder.decode(tokens[start:end])
        chunk = re.sub(r"\s+\n", "\n", chunk).strip()
        if chunk:
            yield chunk
        if end == len(tokens):
            break
        start = max(0, end - overlap)


class StreamingChunker:
    def __init__(
        self,
        encoder: TokenEncoder,
        scratch: ScratchStorage,
        state_manager: JobStateManager,
        *,
        options: ChunkingOptions,
        logger: Optional[logging.Logger] = None,
    ):
        self._encoder = encoder
        self._scratch = scratch
        self._state_manager = state_manager
        self._options = options
        self._logger = logger or logging.getLogger(__name__)

    def process_segment(
        self,
        text: str,
        state: JobState,
        segment_key: Optional[str] = None,
    ) -> list[Chunk]:
        """
        Chunk one segment and append it to the ledger.

        A segment whose key is already recorded in the job's progress was
        chunked by an earlier attempt and is skipped. Ledger records are
        written before the counters are persisted; if the process dies in
        between, the segment is chunked again under the same indices and
        the ledger reader keeps the first copy.
        """
        progress = state.progress
        if segment_key and segment_key in progress.segments_chunked:
            self._logger.debug(
                "Segment %s already chunked for job %s", segment_key, state.job_id)
            return []

        start_index = progress.last_chunk_index
        chunks = [
            Chunk(index=start_index + offset, text=piece)
            for offset, piece in enumerate(split_tokens(
                self._encoder,
                text or "",
                max_tokens=self._options.max_tokens,
                overlap_tokens=self._options.overlap_tokens,
            ))
        ]

        if chunks:
            self._scratch.append_records(CHUNK_LEDGER, [c.to_record() for c in chunks])
            self._state_manager.update_progress(
                state,
                persist=False,
                chunks_generated=progress.chunks_generated + len(chunks),
                last_chunk_index=start_index + len(chunks),
            )
        if segment_key:
            self._state_manager.mark_segment_chunked(state, segment_key)
        self._state_manager.save(state)

        self._logger.debug(
            "Job %s segment %s -> %d chunks (next index %d)",
            state.job_id,
            segment_key or "-",
            len(chunks),
            progress.last_chunk_index,
        )
        return chunks


def iter_ledger_chunks(
    scratch: ScratchStorage,
    state: JobState,
    from_index: int = 0,
) -> Iterator[Chunk]:
    """
    Stream committed chunks in index order, starting at ``from_index``.

    Records past ``last_chunk_index`` were never committed and are ignored;
    repeated indices keep their first copy. A missing index means the
    ledger no longer matches the job state.
    """
    expected = 0
    committed = state.progress.last_chunk_index
    for record in scratch.iter_records(CHUNK_LEDGER):
        if expected >= committed:
            break
        try:
            chunk = Chunk.from_record(record)
        except (KeyError, TypeError, ValueError):
            continue
        if chunk.index < expected:
            continue
        if chunk.index > expected:
            raise ChunkingError(
                f"Chunk ledger for job {state.job_id} is missing index {expected}",
                code=ErrorCode.CHUNKING_FAILED,
                details={"expected": expected, "found": chunk.index},
            )
        if chunk.index >= from_index:
            yield chunk
        expected += 1

    if expected < committed:
        raise ChunkingError(
            f"Chunk ledger for job {state.job_id} ends at {expected}, "
            f"state records {committed} chunks",
            code=ErrorCode.CHUNKING_FAILED,
        )


__all__ = [
    "TokenEncoder",
    "Chunk",
    "split_tokens",
    "StreamingChunker",
    "iter_ledger_chunks",
]
