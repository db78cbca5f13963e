"""
Tests for token splitting, the streaming chunker and the chunk ledger.
"""

import pytest

from docproc_exceptions import ChunkingError
from fakes import WhitespaceEncoder, words
from ingest.chunker import StreamingChunker, iter_ledger_chunks, split_tokens
from ingest.job_state import JobStateManager
from ingest.payload import ChunkingOptions
from ingest.scratch import CHUNK_LEDGER, ScratchStorage
from interfaces import InMemoryStateBackend


def test_split_tokens_overlaps_windows():
    pieces = list(split_tokens(
        WhitespaceEncoder(), words(120), max_tokens=50, overlap_tokens=10))

    assert len(pieces) == 3
    assert all(len(p.split()) <= 50 for p in pieces)
    assert pieces[0].split()[-1] == "w49"
    assert pieces[1].split()[0] == "w40"
    assert pieces[-1].split()[-1] == "w119"


def test_split_tokens_caps_overlap_below_window():
    pieces = list(split_tokens(
        WhitespaceEncoder(), words(10), max_tokens=3, overlap_tokens=5))

    assert len(pieces) == 8
    assert pieces[-1] == "w7 w8 w9"


@pytest.mark.parametrize("text", ["", "   ", "\n\n"])
def test_split_tokens_blank_text(text):
    assert list(split_tokens(WhitespaceEncoder(), text, max_tokens=50, overlap_tokens=5)) == []


class TestStreamingChunker:
    """Segment chunking into the ledger."""

    def setup_method(self):
        self.backend = InMemoryStateBackend()
        self.manager = JobStateManager("job-c", self.backend)
        self.state = self.manager.initialize("doc-c")

    def _chunker(self, tmp_path):
        self.scratch = ScratchStorage(str(tmp_path), "job-c")
        self.scratch.init()
        options = ChunkingOptions(max_tokens=50, overlap_ratio=0.1, page_window=10)
        return StreamingChunker(WhitespaceEncoder(), self.scratch, self.manager, options=options)

    def test_indices_continue_across_segments(self, tmp_path):
        chunker = self._chunker(tmp_path)

        first = chunker.process_segment(words(100), self.state, "page:1")
        second = chunker.process_segment(words(60, "x"), self.state, "page:2")

        assert [c.index for c in first] == [0, 1, 2]
        assert [c.index for c in second] == [3, 4]
        assert self.state.progress.chunks_generated == 5
        assert self.state.progress.last_chunk_index == 5
        stored = self.backend.load("job-c")["progress"]
        assert stored["last_chunk_index"] == 5
        assert stored["segments_chunked"] == ["page:1", "page:2"]
        assert [r["index"] for r in self.scratch.iter_records(CHUNK_LEDGER)] == [0, 1, 2, 3, 4]

    def test_already_chunked_segment_is_skipped(self, tmp_path):
        chunker = self._chunker(tmp_path)
        chunker.process_segment(words(100), self.state, "page:1")

        again = chunker.process_segment(words(100), self.state, "page:1")

        assert again == []
        assert self.state.progress.chunks_generated == 3
        assert len(list(self.scratch.iter_records(CHUNK_LEDGER))) == 3

    def test_empty_segment_is_still_recorded(self, tmp_path):
        chunker = self._chunker(tmp_path)

        assert chunker.process_segment("   ", self.state, "page:9") == []
        assert "page:9" in self.state.progress.segments_chunked


class TestLedgerReader:
    """Reading committed chunks back from scratch storage."""

    def setup_method(self):
        self.manager = JobStateManager("job-l", InMemoryStateBackend())
        self.state = self.manager.initialize("doc-l")

    def _scratch(self, tmp_path, records, committed):
        scratch = ScratchStorage(str(tmp_path), "job-l")
        scratch.init()
        scratch.append_records(CHUNK_LEDGER, records)
        self.state.progress.last_chunk_index = committed
        return scratch

    def test_duplicate_index_keeps_first_copy(self, tmp_path):
        scratch = self._scratch(tmp_path, [
            {"index": 0, "text": "a"},
            {"index": 1, "text": "b"},
            {"index": 1, "text": "b-again"},
            {"index": 2, "text": "c"},
        ], committed=3)

        assert [c.text for c in iter_ledger_chunks(scratch, self.state)] == ["a", "b", "c"]

    def test_uncommitted_tail_is_ignored(self, tmp_path):
        scratch = self._scratch(tmp_path, [
            {"index": 0, "text": "a"},
            {"index": 1, "text": "b"},
            {"index": 2, "text": "never committed"},
        ], committed=2)

        assert [c.index for c in iter_ledger_chunks(scratch, self.state)] == [0, 1]

    def test_reads_from_index(self, tmp_path):
        scratch = self._scratch(tmp_path, [
            {"index": i, "text": str(i)} for i in range(4)
        ], committed=4)

        assert [c.index for c in iter_ledger_chunks(scratch, self.state, from_index=2)] == [2, 3]

    def test_gap_in_ledger_raises(self, tmp_path):
        scratch = self._scratch(tmp_path, [
            {"index": 0, "text": "a"},
            {"index": 2, "text": "c"},
        ], committed=3)

        with pytest.raises(ChunkingError):
            list(iter_ledger_chunks(scratch, self.state))

    def test_short_ledger_raises(self, tmp_path):
        scratch = self._scratch(tmp_path, [{"index": 0, "text": "a"}], committed=2)

        with pytest.raises(ChunkingError):
            list(iter_ledger_chunks(scratch, self.state))

    def test_torn_line_from_crash_is_isolated(self, tmp_path):
        scratch = ScratchStorage(str(tmp_path), "job-l")
        scratch.init()
        scratch.path(CHUNK_LEDGER).write_text('{"index": 0, "te', encoding="utf-8")
        scratch.append_records(CHUNK_LEDGER, [{"index": 0, "text": "a"}])
        self.state.progress.last_chunk_index = 1

        assert [c.text for c in iter_ledger_chunks(scratch, self.state)] == ["a"]
