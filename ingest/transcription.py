"""
Audio/video transcription strategy.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from config import (
    MB,
    TRANSCRIPT_SEGMENT_CHARS,
    TRANSCRIPTION_MIN_CHARS,
    TRANSCRIPTION_MIN_CONFIDENCE,
    TRANSCRIPTION_SEGMENT_THRESHOLD_MB,
)
from docproc_exceptions import ErrorCode, TranscriptionError
from interfaces import Transcriber, TranscriptionResult
from .scratch import TRANSCRIPT_FILE
from .timeouts import ExternalCallGate, OperationGuard

if TYPE_CHECKING:
    from .extraction import ExtractionSession

STRATEGY_SINGLE = "single"
STRATEGY_SEGMENTED = "segmented"


def split_transcript(text: str, max_chars: int) -> list[str]:
    """Split on paragraph breaks, then on whitespace, into pieces of at most ``max_chars``."""
    segments: list[str] = []
    current = ""
    for paragraph in (p.strip() for p in text.split("\n\n")):
        if not paragraph:
            continue
        while len(paragraph) > max_chars:
            cut = paragraph.rfind(" ", 0, max_chars)
            if cut <= 0:
                cut = max_chars
            head, paragraph = paragraph[:cut].strip(), paragraph[cut:].strip()
            if current:
                segments.append(current)
                current = ""
            segments.append(head)
        if current and len(current) + 2 + len(paragraph) > max_chars:
            segments.append(current)
            current = ""
        current = f"{current}\n\n{paragraph}" if current else paragraph
    if current:
        segments.append(current)
    return segments


class TranscriptionStrategy:
    def __init__(
        self,
        transcriber: Optional[Transcriber],
        guard: OperationGuard,
        *,
        gate: Optional[ExternalCallGate] = None,
        min_chars: int = TRANSCRIPTION_MIN_CHARS,
        min_confidence: float = TRANSCRIPTION_MIN_CONFIDENCE,
        segment_threshold_mb: float = TRANSCRIPTION_SEGMENT_THRESHOLD_MB,
        segment_chars: int = TRANSCRIPT_SEGMENT_CHARS,
        logger: Optional[logging.Logger] = None,
    ):
        self._transcriber = transcriber
        self._guard = guard
        self._gate = gate
        self._min_chars = min_chars
        self._min_confidence = min_confidence
        self._segment_threshold_bytes = int(segment_threshold_mb * MB)
        self._segment_chars = segment_chars
        self._logger = logger or logging.getLogger(__name__)

    def _transcribe(self, session: "ExtractionSession", path: Path, mime_type: str) -> TranscriptionResult:
        if self._transcriber is None:
            raise TranscriptionError(
                "No transcription service configured", code=ErrorCode.CONFIG_MISSING)
        state = session.state
        size = path.stat().st_size
        stream = size > self._segment_threshold_bytes
        state.metadata["transcription_strategy"] = STRATEGY_SEGMENTED if stream else STRATEGY_SINGLE
        self._logger.info(
            "Job %s: transcribing %.1fMB %s (%s)",
            state.job_id,
            size / MB,
            mime_type,
            state.metadata["transcription_strategy"],
        )
        timeout = self._guard.budget("transcription").timeout_s
        return self._guard.run(
            "transcription",
            lambda: self._transcriber.transcribe(
                str(path), mime_type, stream=stream, timeout=timeout),
            gate=self._gate,
        )

    def validate(self, result: TranscriptionResult, job_id: str) -> None:
        if len(result.transcript.strip()) < self._min_chars:
            raise TranscriptionError(
                f"Transcript for job {job_id} is empty or too short "
                f"({len(result.transcript.strip())} chars)",
                details={"min_chars": self._min_chars},
            )
        if result.confidence < self._min_confidence:
            self._logger.warning(
                "Low transcription confidence for job %s: %.2f (threshold %.2f)",
                job_id,
                result.confidence,
                self._min_confidence,
            )

    def extract(self, session: "ExtractionSession", path: Path, mime_type: str) -> TranscriptionResult:
        state = session.state
        cached = session.scratch.read_json(TRANSCRIPT_FILE)
        if cached is not None:
            result = TranscriptionResult.from_dict(cached)
            self._logger.info("Job %s: using cached transcript", state.job_id)
        else:
            result = self._transcribe(session, path, mime_type)
            self.validate(result, state.job_id)
            session.scratch.write_json(TRANSCRIPT_FILE, result.to_dict())
            state.metadata["transcript_chars"] = len(result.transcript)
            session.state_manager.save(state)

        session.deliver_transcript(result)

        segments = split_transcript(result.transcript, self._segment_chars)
        for index, segment in enumerate(segments):
            session.emit(segment, f"transcript:{index}")
        return result


__all__ = [
    "STRATEGY_SINGLE",
    "STRATEGY_SEGMENTED",
    "split_transcript",
    "TranscriptionStrategy",
]
