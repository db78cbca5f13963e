"""
Outbound notifications: phase changes, the transcript side channel and
the terminal completion/failure callbacks.

This is the only place the pipeline talks to the caller's systems.
Notification failures are logged and never fail the job.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from config import PHASE_PERCENT
from docproc_exceptions import DocProcError, standardise_error
from interfaces import CallbackSink, TranscriptionResult
from .job_state import JobState, JobStateManager, ProcessingPhase
from .timeouts import OperationGuard


def completion_payload(
    document_id: str,
    *,
    total_chunks: int,
    method: str,
    duration_ms: int,
    resumed: bool,
) -> dict[str, Any]:
    return {
        "status": "completed",
        "documentIdentifier": document_id,
        "totalChunks": total_chunks,
        "method": method,
        "durationMs": duration_ms,
        "resumed": resumed,
    }


def failure_payload(document_id: str, error: BaseException, *, duration_ms: int) -> dict[str, Any]:
    """The user-facing message goes out; the diagnostic message stays in the logs."""
    std = standardise_error(error)
    return {
        "status": "failed",
        "documentIdentifier": document_id,
        "error": std.user_message,
        "errorCode": std.code.value,
        "retryable": std.retryable,
        "durationMs": duration_ms,
    }


def phase_payload(state: JobState, phase: ProcessingPhase) -> dict[str, Any]:
    return {
        "status": "processing",
        "documentIdentifier": state.document_id,
        "jobId": state.job_id,
        "phase": phase.value,
        "percent": PHASE_PERCENT.get(phase.value, 0),
    }


def transcript_payload(document_id: str, result: TranscriptionResult) -> dict[str, Any]:
    return {
        "type": "transcript",
        "documentIdentifier": document_id,
        "transcript": result.transcript,
        "confidence": result.confidence,
        "durationSeconds": result.duration_s,
        "model": result.model,
    }


class ProgressNotifier:
    def __init__(
        self,
        sink: CallbackSink,
        guard: OperationGuard,
        state_manager: JobStateManager,
        *,
        callback_url: Optional[str],
        secret: Optional[str] = None,
        transcript_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._sink = sink
        self._guard = guard
        self._state_manager = state_manager
        self._callback_url = callback_url
        self._secret = secret
        self._transcript_url = transcript_url or callback_url
        self._logger = logger or logging.getLogger(__name__)

    def _send(self, url: Optional[str], payload: dict[str, Any], what: str) -> bool:
        if not url:
            return False
        timeout = self._guard.budget("callback").timeout_s
        try:
            self._guard.run(
                "callback",
                lambda: self._sink.send(url, payload, secret=self._secret, timeout=timeout),
            )
            return True
        except DocProcError as exc:
            self._logger.warning("%s callback to %s failed: %s", what, url, exc)
            return False

    def phase_changed(self, state: JobState, phase: ProcessingPhase) -> None:
        """Notify at most once per phase; the record is persisted before sending."""
        sent = state.metadata.setdefault("notified_phases", [])
        if phase.value in sent or not self._callback_url:
            return
        sent.append(phase.value)
        self._state_manager.save(state)
        self._send(self._callback_url, phase_payload(state, phase), f"Phase {phase.value}")

    def deliver_transcript(self, state: JobState, result: TranscriptionResult) -> None:
        if state.metadata.get("transcript_delivered"):
            return
        if self._send(self._transcript_url, transcript_payload(state.document_id, result), "Transcript"):
            state.metadata["transcript_delivered"] = True
            self._state_manager.save(state)
            self._logger.info("Delivered transcript for job %s", state.job_id)

    def completed(self, state: JobState, *, method: str, duration_ms: int) -> dict[str, Any]:
        payload = completion_payload(
            state.document_id,
            total_chunks=state.progress.chunks_upserted,
            method=method,
            duration_ms=duration_ms,
            resumed=state.resumed,
        )
        self._send(self._callback_url, payload, "Completion")
        return payload

    def failed(self, document_id: str, error: BaseException, *, duration_ms: int) -> dict[str, Any]:
        payload = failure_payload(document_id, error, duration_ms=duration_ms)
        self._send(self._callback_url, payload, "Failure")
        return payload


__all__ = [
    "completion_payload",
    "failure_payload",
    "phase_payload",
    "transcript_payload",
    "ProgressNotifier",
]
