"""
Pipeline orchestrator.

Drives one attempt of a job through the phase state machine:

    initialized -> downloading -> download_complete -> extracting
    -> extraction_complete -> embedding -> embedding_complete -> completed

A phase that already has a checkpoint is skipped using the data stored
in it. Inside a phase, each component resumes from the progress
counters in the job state, so a re-run redoes only unfinished work. On
failure the error is recorded against the phase and re-raised; scratch
data is left in place for the next attempt.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from config import PHASE_PERCENT
from docproc_exceptions import (
    ErrorCode,
    ExtractionError,
    ProcessingError,
    StorageError,
)
from .chunker import StreamingChunker, iter_ledger_chunks
from .context import IngestContext
from .download import ResumableDownloader
from .embedding import DocumentIdentity, EmbedUpsertResult, StreamingEmbedder
from .extraction import ExtractionSession
from .job_state import JobState, JobStateManager, ProcessingPhase
from .notifications import ProgressNotifier
from .payload import JobPayload
from .scratch import CHUNK_LEDGER, ScratchStorage
from .validation import check_file_size, resolve_mime_type, validate_mime_type

ProgressCallback = Callable[[dict[str, Any]], None]


@dataclass
class PipelineResult:
    job_id: str
    document_id: str
    method: str
    total_chunks: int
    resumed: bool
    resumed_from: Optional[str]
    embedding: Optional[EmbedUpsertResult] = None


class DocumentPipeline:
    def __init__(
        self,
        ctx: IngestContext,
        *,
        lease_lost: Optional[threading.Event] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.ctx = ctx
        self._lease_lost = lease_lost
        self._logger = logger or ctx.logger

    def state_manager(self, job_id: str) -> JobStateManager:
        return JobStateManager(
            job_id,
            self.ctx.state_backend,
            max_consecutive_errors=self.ctx.config.max_consecutive_errors,
            lease_lost=self._lease_lost,
            logger=self._logger,
        )

    def scratch(self, job_id: str) -> ScratchStorage:
        return ScratchStorage(self.ctx.config.scratch_root, job_id, logger=self._logger)

    def run(
        self,
        job_id: str,
        payload: JobPayload,
        *,
        attempt_number: int = 1,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PipelineResult:
        state_manager = self.state_manager(job_id)
        state = state_manager.initialize(payload.document_id, attempt_number)
        phase = state.current_phase
        try:
            payload.validate()
            mime_type = resolve_mime_type(
                payload.declared_content_type, payload.original_file_name)
            validate_mime_type(mime_type)
            options = payload.chunking_options(self.ctx.config)

            scratch = self.scratch(job_id)
            if state.resumed:
                scratch.init()
            else:
                scratch.reset()

            notifier = ProgressNotifier(
                self.ctx.callback_sink,
                self.ctx.guard,
                state_manager,
                callback_url=payload.callback_url,
                secret=payload.callback_signing_secret,
                transcript_url=payload.transcript_callback_url,
                logger=self._logger,
            )

            def _enter(next_phase: ProcessingPhase) -> None:
                nonlocal phase
                phase = next_phase
                state_manager.enter_phase(state, next_phase)
                self._phase_event(state, next_phase, notifier, on_progress)

            def _complete(done: ProcessingPhase, data: dict[str, Any]) -> None:
                state_manager.complete_phase(state, done, data)
                self._phase_event(state, done, notifier, on_progress)

            # ---------------- download ----------------
            if state_manager.has_completed_phase(state, ProcessingPhase.DOWNLOAD_COMPLETE):
                data = state_manager.checkpoint_data(state, ProcessingPhase.DOWNLOAD_COMPLETE) or {}
                source_path = Path(data.get("file_path") or scratch.path("source"))
                self._logger.info("Job %s: download already complete, skipping", job_id)
            else:
                _enter(ProcessingPhase.DOWNLOADING)
                started = time.monotonic()
                source_path = self._download(
                    payload, scratch, state, state_manager, mime_type, on_progress)
                self.ctx.stats.observe_timing("download_s", time.monotonic() - started)
                _complete(ProcessingPhase.DOWNLOAD_COMPLETE, {
                    "file_path": str(source_path),
                    "bytes": state.progress.bytes_downloaded,
                    "mime_type": mime_type,
                })

            # ---------------- extraction ----------------
            if state_manager.has_completed_phase(state, ProcessingPhase.EXTRACTION_COMPLETE):
                data = state_manager.checkpoint_data(state, ProcessingPhase.EXTRACTION_COMPLETE) or {}
                method = str(data.get("method") or state.metadata.get("extraction_method", ""))
                self._logger.info("Job %s: extraction already complete, skipping", job_id)
            else:
                if not source_path.exists():
                    raise StorageError(
                        f"Downloaded file for job {job_id} is missing from scratch storage",
                        details={"path": str(source_path)},
                    )
                _enter(ProcessingPhase.EXTRACTING)
                started = time.monotonic()
                session = ExtractionSession(
                    state=state,
                    state_manager=state_manager,
                    scratch=scratch,
                    chunker=StreamingChunker(
                        self.ctx.encoder,
                        scratch,
                        state_manager,
                        options=options,
                        logger=self._logger,
                    ),
                    options=options,
                    on_progress=on_progress,
                    on_transcript=lambda result: notifier.deliver_transcript(state, result),
                )
                result = self.ctx.extraction_router.extract(
                    session, source_path, mime_type, payload.original_file_name)
                if state.progress.chunks_generated == 0:
                    raise ExtractionError(
                        f"No text could be extracted from job {job_id} ({mime_type})",
                        code=ErrorCode.EXTRACTION_FAILED,
                    )
                method = result.method
                self.ctx.stats.increment("chunks_generated", state.progress.chunks_generated)
                self.ctx.stats.observe_timing("extraction_s", time.monotonic() - started)
                _complete(ProcessingPhase.EXTRACTION_COMPLETE, {
                    "method": method,
                    "chunks": state.progress.chunks_generated,
                    "pages": state.progress.pages_total,
                })

            # ---------------- embedding ----------------
            embed_result: Optional[EmbedUpsertResult] = None
            if state_manager.has_completed_phase(state, ProcessingPhase.EMBEDDING_COMPLETE):
                self._logger.info("Job %s: embedding already complete, skipping", job_id)
            else:
                if state.progress.last_upserted_index < state.progress.last_chunk_index \
                        and not scratch.exists(CHUNK_LEDGER):
                    raise StorageError(
                        f"Chunk ledger for job {job_id} is missing from scratch storage")
                _enter(ProcessingPhase.EMBEDDING)
                started = time.monotonic()
                embed_result = self._embed(payload, scratch, state, state_manager, on_progress)
                self.ctx.stats.observe_timing("embedding_s", time.monotonic() - started)
                _complete(ProcessingPhase.EMBEDDING_COMPLETE, {
                    "total_upserted": state.progress.chunks_upserted,
                    "skipped": embed_result.skipped,
                })

            state_manager.mark_completed(state)
            if on_progress is not None:
                on_progress({"phase": ProcessingPhase.COMPLETED.value,
                             "percent": PHASE_PERCENT["completed"]})
            self._logger.info(
                "Job %s completed: %d chunks via %s%s",
                job_id,
                state.progress.chunks_upserted,
                method,
                f" (resumed from {state.resumed_from.value})" if state.resumed_from else "",
            )
            return PipelineResult(
                job_id=job_id,
                document_id=state.document_id,
                method=method,
                total_chunks=state.progress.chunks_upserted,
                resumed=state.resumed,
                resumed_from=state.resumed_from.value if state.resumed_from else None,
                embedding=embed_result,
            )
        except Exception as exc:
            self._logger.error(
                "Job %s failed in phase %s: %s", job_id, phase.value, exc)
            state_manager.record_error(state, exc, phase)
            raise

    # ------------------------------------------------------------------
    # Phase work
    # ------------------------------------------------------------------

    def _phase_event(
        self,
        state: JobState,
        phase: ProcessingPhase,
        notifier: ProgressNotifier,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        notifier.phase_changed(state, phase)
        if on_progress is not None:
            on_progress({"phase": phase.value, "percent": PHASE_PERCENT.get(phase.value, 0)})

    def _download(
        self,
        payload: JobPayload,
        scratch: ScratchStorage,
        state: JobState,
        state_manager: JobStateManager,
        mime_type: str,
        on_progress: Optional[ProgressCallback],
    ) -> Path:
        downloader = ResumableDownloader(self.ctx.http_client, self.ctx.guard, logger=self._logger)
        if payload.file_bytes is not None:
            path = downloader.store_bytes(
                payload.file_bytes, scratch, state, state_manager, mime_type=mime_type)
        else:
            path = downloader.download_to_scratch(
                payload.source_url,
                scratch,
                state,
                state_manager,
                mime_type=mime_type,
                on_progress=on_progress,
            )
        check_file_size(mime_type, path.stat().st_size)
        return path

    def _embed(
        self,
        payload: JobPayload,
        scratch: ScratchStorage,
        state: JobState,
        state_manager: JobStateManager,
        on_progress: Optional[ProgressCallback],
    ) -> EmbedUpsertResult:
        config = self.ctx.config
        embedder = StreamingEmbedder(
            self.ctx.embedder,
            self.ctx.vector_store,
            scratch,
            state_manager,
            self.ctx.guard,
            DocumentIdentity(
                owner_id=payload.owner_id,
                scope_id=payload.scope_id,
                scope_type=payload.scope_type,
                document_id=payload.document_id,
            ),
            model=config.embed_model,
            embed_batch=config.embed_batch,
            upsert_batch=config.upsert_batch,
            policy=self.ctx.batch_policy(),
            stats=self.ctx.stats,
            sleep=self.ctx.sleep,
            logger=self._logger,
        )
        chunks = iter_ledger_chunks(scratch, state, from_index=state.progress.last_upserted_index)
        result = embedder.embed_and_upsert(chunks, state, on_progress)
        progress = state.progress
        if progress.last_upserted_index != progress.last_chunk_index:
            raise ProcessingError(
                f"Job {state.job_id}: upserted {progress.last_upserted_index} of "
                f"{progress.last_chunk_index} chunks",
                code=ErrorCode.INTERNAL_ERROR,
            )
        return result


__all__ = [
    "PipelineResult",
    "DocumentPipeline",
]
