"""
Tests for the audio/video transcription strategy.
"""

import logging

import pytest

from docproc_exceptions import ErrorCode, TranscriptionError
from fakes import FakeTranscriber, words
from ingest.scratch import TRANSCRIPT_FILE
from ingest.transcription import (
    STRATEGY_SEGMENTED,
    STRATEGY_SINGLE,
    TranscriptionStrategy,
    split_transcript,
)
from interfaces import TranscriptionResult


def result(transcript, confidence=0.93):
    return TranscriptionResult(
        transcript=transcript, confidence=confidence, duration_s=61.5, model="nova-3")


@pytest.mark.parametrize("text,max_chars,expected", [
    ("aaa\n\nbbb", 100, ["aaa\n\nbbb"]),
    ("aaa\n\nbbb", 5, ["aaa", "bbb"]),
    ("one two three four", 9, ["one two", "three", "four"]),
    ("\n\n  \n\n", 10, []),
])
def test_split_transcript(text, max_chars, expected):
    assert split_transcript(text, max_chars) == expected


class TestTranscriptionStrategy:
    """Transcribing, validating and caching recordings."""

    def _media(self, tmp_path, size=2048):
        path = tmp_path / "meeting.mp3"
        path.write_bytes(b"\x00" * size)
        return path

    def test_transcript_is_chunked_and_delivered(self, tmp_path, guard, make_session):
        delivered = []
        session = make_session(on_transcript=delivered.append)
        transcriber = FakeTranscriber(result(words(70)))

        TranscriptionStrategy(transcriber, guard).extract(
            session, self._media(tmp_path), "audio/mpeg")

        assert transcriber.calls[0]["stream"] is False
        assert session.state.metadata["transcription_strategy"] == STRATEGY_SINGLE
        assert session.state.progress.segments_chunked == ["transcript:0"]
        assert session.state.progress.chunks_generated == 2
        assert [r.transcript for r in delivered] == [words(70)]
        assert session.scratch.read_json(TRANSCRIPT_FILE)["model"] == "nova-3"

    def test_short_transcript_is_rejected(self, tmp_path, guard, make_session):
        session = make_session()

        with pytest.raises(TranscriptionError) as info:
            TranscriptionStrategy(FakeTranscriber(result("um")), guard).extract(
                session, self._media(tmp_path), "audio/mpeg")

        assert info.value.code is ErrorCode.TRANSCRIPTION_FAILED
        assert not session.scratch.exists(TRANSCRIPT_FILE)

    def test_low_confidence_only_warns(self, tmp_path, guard, make_session, caplog):
        session = make_session()

        with caplog.at_level(logging.WARNING, logger="ingest.transcription"):
            TranscriptionStrategy(FakeTranscriber(result(words(20), 0.2)), guard).extract(
                session, self._media(tmp_path), "audio/mpeg")

        assert "Low transcription confidence" in caplog.text
        assert session.state.progress.chunks_generated == 1

    def test_cached_transcript_is_reused(self, tmp_path, guard, make_session):
        session = make_session()
        transcriber = FakeTranscriber(result(words(20)))
        strategy = TranscriptionStrategy(transcriber, guard)
        media = self._media(tmp_path)

        strategy.extract(session, media, "audio/mpeg")
        again = strategy.extract(session, media, "audio/mpeg")

        assert len(transcriber.calls) == 1
        assert again.transcript == words(20)
        assert session.state.progress.chunks_generated == 1

    def test_missing_transcriber_is_a_configuration_error(self, tmp_path, guard, make_session):
        with pytest.raises(TranscriptionError) as info:
            TranscriptionStrategy(None, guard).extract(
                make_session(), self._media(tmp_path), "video/mp4")

        assert info.value.code is ErrorCode.CONFIG_MISSING
        assert info.value.terminal

    def test_large_recordings_are_streamed(self, tmp_path, guard, make_session):
        session = make_session()
        transcriber = FakeTranscriber(result(words(20)))

        TranscriptionStrategy(transcriber, guard, segment_threshold_mb=0.001).extract(
            session, self._media(tmp_path), "video/mp4")

        assert transcriber.calls[0]["stream"] is True
        assert session.state.metadata["transcription_strategy"] == STRATEGY_SEGMENTED

    def test_long_transcript_is_split_into_segments(self, tmp_path, guard, make_session):
        session = make_session()
        text = "\n\n".join(words(10, f"p{i}-") for i in range(4))

        TranscriptionStrategy(FakeTranscriber(result(text)), guard, segment_chars=80).extract(
            session, self._media(tmp_path), "audio/mpeg")

        assert session.state.progress.segments_chunked == [
            f"transcript:{i}" for i in range(len(split_transcript(text, 80)))]
        assert len(session.state.progress.segments_chunked) > 1
