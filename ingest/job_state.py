"""
Job state and checkpoints.

A JobState record is the single source of truth for what has already
happened to a job: its current phase, the checkpoints of completed
phases, fine-grained progress counters and error history. Components
never keep resumable progress in local variables; they write it here,
and a restarted worker reconstructs its position purely from the record.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from config import JOB_MAX_CONSECUTIVE_ERRORS
from docproc_exceptions import (
    JobLeaseError,
    ProcessingError,
    ErrorCode,
    DocProcError,
    wrap_exception,
)
from interfaces import StateBackend


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProcessingPhase(str, Enum):
    INITIALIZED = "initialized"
    DOWNLOADING = "downloading"
    DOWNLOAD_COMPLETE = "download_complete"
    EXTRACTING = "extracting"
    EXTRACTION_COMPLETE = "extraction_complete"
    EMBEDDING = "embedding"
    EMBEDDING_COMPLETE = "embedding_complete"
    COMPLETED = "completed"
    FAILED = "failed"


PHASE_ORDER: tuple[ProcessingPhase, ...] = (
    ProcessingPhase.INITIALIZED,
    ProcessingPhase.DOWNLOADING,
    ProcessingPhase.DOWNLOAD_COMPLETE,
    ProcessingPhase.EXTRACTING,
    ProcessingPhase.EXTRACTION_COMPLETE,
    ProcessingPhase.EMBEDDING,
    ProcessingPhase.EMBEDDING_COMPLETE,
    ProcessingPhase.COMPLETED,
)


@dataclass
class Checkpoint:
    phase: ProcessingPhase
    timestamp: str
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase.value, "timestamp": self.timestamp, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Checkpoint":
        return cls(
            phase=ProcessingPhase(payload["phase"]),
            timestamp=str(payload.get("timestamp", "")),
            data=dict(payload.get("data") or {}),
        )


@dataclass
class JobProgress:
    """
    Progress counters. ``last_*_index`` values are exclusive: the index
    of the next chunk to write, embed or upsert.
    """
    bytes_downloaded: int = 0
    bytes_total: int = 0
    downloaded_file_path: Optional[str] = None
    pages_extracted: int = 0
    pages_total: int = 0
    last_extracted_page: int = 0
    last_ocr_chunk: int = 0
    chunks_generated: int = 0
    last_chunk_index: int = 0
    chunks_embedded: int = 0
    last_embedded_index: int = 0
    chunks_upserted: int = 0
    last_upserted_index: int = 0
    segments_chunked: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JobProgress":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in (payload or {}).items() if k in known}
        values["segments_chunked"] = list(values.get("segments_chunked") or [])
        return cls(**values)


MONOTONIC_FIELDS: frozenset[str] = frozenset({
    "bytes_downloaded",
    "pages_extracted",
    "last_extracted_page",
    "last_ocr_chunk",
    "chunks_generated",
    "last_chunk_index",
    "chunks_embedded",
    "last_embedded_index",
    "chunks_upserted",
    "last_upserted_index",
})


@dataclass
class LastError:
    message: str
    code: str
    phase: str
    timestamp: str


@dataclass
class JobState:
    job_id: str
    document_id: str
    current_phase: ProcessingPhase = ProcessingPhase.INITIALIZED
    checkpoints: list[Checkpoint] = field(default_factory=list)
    progress: JobProgress = field(default_factory=JobProgress)
    metadata: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now_iso)
    last_progress_at: str = field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None
    error_count: int = 0
    consecutive_errors: int = 0
    last_error: Optional[LastError] = None
    attempt_number: int = 1
    can_resume: bool = True
    resumed_from: Optional[ProcessingPhase] = None

    @property
    def resumed(self) -> bool:
        return self.resumed_from is not None

    def checkpoint_for(self, phase: ProcessingPhase) -> Optional[Checkpoint]:
        for checkpoint in self.checkpoints:
            if checkpoint.phase is phase:
                return checkpoint
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "document_id": self.document_id,
            "current_phase": self.current_phase.value,
            "checkpoints": [c.to_dict() for c in self.checkpoints],
            "progress": self.progress.to_dict(),
            "metadata": dict(self.metadata),
            "started_at": self.started_at,
            "last_progress_at": self.last_progress_at,
            "completed_at": self.completed_at,
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": asdict(self.last_error) if self.last_error else None,
            "attempt_number": self.attempt_number,
            "can_resume": self.can_resume,
            "resumed_from": self.resumed_from.value if self.resumed_from else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JobState":
        last_error = payload.get("last_error")
        resumed_from = payload.get("resumed_from")
        return cls(
            job_id=str(payload["job_id"]),
            document_id=str(payload.get("document_id", "")),
            current_phase=ProcessingPhase(payload.get("current_phase", "initialized")),
            checkpoints=[Checkpoint.from_dict(c) for c in payload.get("checkpoints") or []],
            progress=JobProgress.from_dict(payload.get("progress") or {}),
            metadata=dict(payload.get("metadata") or {}),
            started_at=str(payload.get("started_at") or utc_now_iso()),
            last_progress_at=str(payload.get("last_progress_at") or utc_now_iso()),
            completed_at=payload.get("completed_at"),
            error_count=int(payload.get("error_count", 0)),
            consecutive_errors=int(payload.get("consecutive_errors", 0)),
            last_error=LastError(**last_error) if last_error else None,
            attempt_number=int(payload.get("attempt_number", 1)),
            can_resume=bool(payload.get("can_resume", True)),
            resumed_from=ProcessingPhase(resumed_from) if resumed_from else None,
        )


def check_progress_invariants(progress: JobProgress) -> None:
    if progress.last_embedded_index > progress.chunks_generated:
        raise ProcessingError(
            f"last_embedded_index ({progress.last_embedded_index}) exceeds "
            f"chunks_generated ({progress.chunks_generated})",
            code=ErrorCode.INTERNAL_ERROR,
        )
    if progress.last_upserted_index > progress.chunks_embedded:
        raise ProcessingError(
            f"last_upserted_index ({progress.last_upserted_index}) exceeds "
            f"chunks_embedded ({progress.chunks_embedded})",
            code=ErrorCode.INTERNAL_ERROR,
        )


# ============================================================================
# STATE MANAGER
# ============================================================================


class JobStateManager:
    """
    Reads and writes the JobState of one job.

    When given a ``lease_lost`` event, every write is refused once the
    event is set: the job now belongs to another worker.
    """

    def __init__(
        self,
        job_id: str,
        backend: StateBackend,
        *,
        max_consecutive_errors: int = JOB_MAX_CONSECUTIVE_ERRORS,
        lease_lost: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_id = job_id
        self._backend = backend
        self._max_consecutive_errors = max_consecutive_errors
        self._lease_lost = lease_lost
        self._logger = logger or logging.getLogger(__name__)

    def load(self) -> Optional[JobState]:
        payload = self._backend.load(self.job_id)
        if payload is None:
            return None
        try:
            return JobState.from_dict(payload)
        except (KeyError, ValueError, TypeError) as exc:
            self._logger.warning(
                "Discarding unreadable job state for %s: %s", self.job_id, exc)
            return None

    def initialize(self, document_id: str, attempt_number: int = 1) -> JobState:
        existing = self.load()
        if existing is not None and existing.can_resume:
            if existing.document_id == document_id:
                existing.attempt_number = attempt_number
                existing.resumed_from = existing.current_phase
                self._logger.info(
                    "Resuming job %s from phase %s (attempt %d, %d checkpoints)",
                    self.job_id,
                    existing.current_phase.value,
                    attempt_number,
                    len(existing.checkpoints),
                )
                self.save(existing)
                return existing
            self._logger.warning(
                "Job %s state belongs to document %s, not %s; starting fresh",
                self.job_id,
                existing.document_id,
                document_id,
            )
        elif existing is not None:
            self._logger.info(
                "Job %s state is not resumable (phase %s); starting fresh",
                self.job_id,
                existing.current_phase.value,
            )

        state = JobState(
            job_id=self.job_id,
            document_id=document_id,
            attempt_number=attempt_number,
        )
        self.save(state)
        return state

    def save(self, state: JobState) -> None:
        if self._lease_lost is not None and self._lease_lost.is_set():
            raise JobLeaseError(
                f"Lease for job {self.job_id} was lost; refusing to write state")
        check_progress_invariants(state.progress)
        state.last_progress_at = utc_now_iso()
        self._backend.store(self.job_id, state.to_dict())

    def has_completed_phase(self, state: JobState, phase: ProcessingPhase) -> bool:
        return state.checkpoint_for(phase) is not None

    def checkpoint_data(self, state: JobState, phase: ProcessingPhase) -> Optional[dict[str, Any]]:
        checkpoint = state.checkpoint_for(phase)
        return dict(checkpoint.data) if checkpoint else None

    def enter_phase(self, state: JobState, phase: ProcessingPhase) -> None:
        """Mark a phase's work as in progress."""
        state.current_phase = phase
        self.save(state)

    def complete_phase(
        self,
        state: JobState,
        phase: ProcessingPhase,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        if self.has_completed_phase(state, phase):
            self._logger.warning(
                "Phase %s already checkpointed for job %s; not rewriting",
                phase.value,
                self.job_id,
            )
            return
        state.checkpoints.append(
            Checkpoint(phase=phase, timestamp=utc_now_iso(), data=dict(data or {}))
        )
        state.current_phase = phase
        state.consecutive_errors = 0
        self.save(state)
        self._logger.info("Job %s checkpoint: %s", self.job_id, phase.value)

    def update_progress(self, state: JobState, *, persist: bool = True, **partial: Any) -> None:
        progress = state.progress
        for key, value in partial.items():
            if not hasattr(progress, key):
                raise ProcessingError(
                    f"Unknown progress field: {key}", code=ErrorCode.INTERNAL_ERROR)
            current = getattr(progress, key)
            if key in MONOTONIC_FIELDS and value < current:
                self._logger.warning(
                    "Ignoring backwards progress for %s on job %s: %s -> %s",
                    key,
                    self.job_id,
                    current,
                    value,
                )
                continue
            setattr(progress, key, value)
        if persist:
            self.save(state)

    def mark_segment_chunked(self, state: JobState, segment_key: str) -> None:
        if segment_key not in state.progress.segments_chunked:
            state.progress.segments_chunked.append(segment_key)

    def record_error(
        self,
        state: JobState,
        error: BaseException,
        phase: Optional[ProcessingPhase] = None,
    ) -> None:
        wrapped = wrap_exception(error)
        state.error_count += 1
        state.consecutive_errors += 1
        state.last_error = LastError(
            message=wrapped.message,
            code=wrapped.code.value,
            phase=(phase or state.current_phase).value,
            timestamp=utc_now_iso(),
        )
        if state.consecutive_errors >= self._max_consecutive_errors:
            state.can_resume = False
            self._logger.error(
                "Job %s hit %d consecutive errors; marking non-resumable",
                self.job_id,
                state.consecutive_errors,
            )
        try:
            self.save(state)
        except DocProcError as exc:
            # The original error is what the caller propagates.
            self._logger.error(
                "Could not record error for job %s: %s", self.job_id, exc)

    def mark_completed(self, state: JobState) -> None:
        state.current_phase = ProcessingPhase.COMPLETED
        state.completed_at = utc_now_iso()
        state.can_resume = False
        self.save(state)

    def cleanup(self) -> None:
        self._backend.delete(self.job_id)


__all__ = [
    "ProcessingPhase",
    "PHASE_ORDER",
    "Checkpoint",
    "JobProgress",
    "MONOTONIC_FIELDS",
    "LastError",
    "JobState",
    "check_progress_invariants",
    "JobStateManager",
    "utc_now_iso",
]
