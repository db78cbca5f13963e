"""
Job runner: bounded worker pool, attempts, leases and final outcomes.

Each attempt holds the job's lease and runs the pipeline once. A failed
attempt is retried after a backoff unless the failure is final: the
last attempt, a terminal error, or a job whose state has been marked
non-resumable. Only a final outcome sends the terminal callback and
removes the job's scratch data and state.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional

from config import PHASE_PERCENT
from docproc_exceptions import (
    JobLeaseError,
    StandardisedError,
    is_terminal,
    standardise_error,
)
from interfaces import StateBackend
from .context import IngestContext
from .job_state import JobStateManager
from .notifications import ProgressNotifier
from .payload import JobPayload
from .pipeline import DocumentPipeline, PipelineResult
from .scratch import ScratchStorage

ProgressCallback = Callable[[dict[str, Any]], None]

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_RETRYING = "retrying"
STATUS_DEFERRED = "deferred"


@dataclass
class JobOutcome:
    job_id: str
    status: str
    attempts: int
    duration_ms: int
    result: Optional[PipelineResult] = None
    error: Optional[StandardisedError] = None
    callback: Optional[dict[str, Any]] = None

    @property
    def final(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_FAILED)


def get_job_status(backend: StateBackend, job_id: str) -> dict[str, Any]:
    """Lifecycle state and coarse progress for one job."""
    state = JobStateManager(job_id, backend).load()
    if state is None:
        return {"job_id": job_id, "state": "not_found"}
    return {
        "job_id": job_id,
        "document_id": state.document_id,
        "state": state.current_phase.value,
        "percent": PHASE_PERCENT.get(state.current_phase.value, 0),
        "progress": state.progress.to_dict(),
        "can_resume": state.can_resume,
        "error_count": state.error_count,
        "last_error": state.to_dict()["last_error"],
        "attempt_number": state.attempt_number,
        "started_at": state.started_at,
        "last_progress_at": state.last_progress_at,
    }


class JobRunner:
    def __init__(
        self,
        ctx: IngestContext,
        *,
        max_workers: Optional[int] = None,
        max_attempts: Optional[int] = None,
        retry_backoff_s: Optional[float] = None,
    ):
        self.ctx = ctx
        self.max_attempts = max_attempts or ctx.config.job_max_attempts
        self.retry_backoff_s = (
            ctx.config.job_retry_backoff_s if retry_backoff_s is None else retry_backoff_s)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or ctx.config.worker_concurrency,
            thread_name_prefix="docproc-job",
        )
        self._logger = ctx.logger

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(
        self,
        job_id: str,
        payload: JobPayload,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> "Future[JobOutcome]":
        return self._executor.submit(self.process, job_id, payload, on_progress=on_progress)

    def process(
        self,
        job_id: str,
        payload: JobPayload,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        """Run attempts in the calling thread until the job reaches a final outcome."""
        started = time.monotonic()
        outcome: Optional[JobOutcome] = None
        for attempt in range(1, self.max_attempts + 1):
            outcome = self.run_attempt(
                job_id,
                payload,
                attempt,
                started=started,
                on_progress=on_progress,
            )
            if outcome.status != STATUS_RETRYING:
                return outcome
            delay = self.retry_backoff_s * (2 ** (attempt - 1))
            self._logger.info(
                "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
                job_id,
                attempt,
                self.max_attempts,
                outcome.error.code.value if outcome.error else "?",
                delay,
            )
            self.ctx.sleep(delay)
        return outcome  # pragma: no cover

    def run_attempt(
        self,
        job_id: str,
        payload: JobPayload,
        attempt_number: int,
        *,
        started: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        """
        One attempt under the job's lease. Usable on its own by an
        external queue that owns the retry schedule.
        """
        started = time.monotonic() if started is None else started
        config = self.ctx.config
        try:
            with self.ctx.lease_manager.hold(job_id, ttl_ms=config.lease_ttl_ms) as lease:
                # Callbacks and cleanup run while the lease is still held.
                pipeline = DocumentPipeline(self.ctx, lease_lost=lease.lost, logger=self._logger)
                try:
                    result = pipeline.run(
                        job_id,
                        payload,
                        attempt_number=attempt_number,
                        on_progress=on_progress,
                    )
                except Exception as exc:  # pylint: disable=broad-except
                    if lease.is_lost:
                        self._logger.warning(
                            "Job %s lost its lease during attempt %d: %s",
                            job_id,
                            attempt_number,
                            exc,
                        )
                        return self._deferred(job_id, attempt_number, exc, started)
                    return self._on_failure(job_id, payload, attempt_number, exc, started)
                return self._on_success(job_id, payload, attempt_number, result, started)
        except JobLeaseError as exc:
            self._logger.warning("Job %s attempt %d deferred: %s", job_id, attempt_number, exc)
            return self._deferred(job_id, attempt_number, exc, started)

    def cleanup(self, job_id: str) -> None:
        ScratchStorage(self.ctx.config.scratch_root, job_id, logger=self._logger).cleanup()
        JobStateManager(job_id, self.ctx.state_backend, logger=self._logger).cleanup()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _deferred(
        self,
        job_id: str,
        attempt_number: int,
        error: BaseException,
        started: float,
    ) -> JobOutcome:
        return JobOutcome(
            job_id=job_id,
            status=STATUS_DEFERRED,
            attempts=attempt_number,
            duration_ms=self._elapsed_ms(started),
            error=standardise_error(error),
        )

    def _notifier(self, payload: JobPayload, state_manager: JobStateManager) -> ProgressNotifier:
        return ProgressNotifier(
            self.ctx.callback_sink,
            self.ctx.guard,
            state_manager,
            callback_url=payload.callback_url,
            secret=payload.callback_signing_secret,
            transcript_url=payload.transcript_callback_url,
            logger=self._logger,
        )

    def _on_success(
        self,
        job_id: str,
        payload: JobPayload,
        attempt_number: int,
        result: PipelineResult,
        started: float,
    ) -> JobOutcome:
        state_manager = JobStateManager(job_id, self.ctx.state_backend, logger=self._logger)
        state = state_manager.load()
        duration_ms = self._elapsed_ms(started)
        callback = None
        if state is not None:
            callback = self._notifier(payload, state_manager).completed(
                state, method=result.method, duration_ms=duration_ms)
        self.ctx.stats.increment("jobs_completed")
        if self.ctx.config.cleanup_on_success:
            self.cleanup(job_id)
        return JobOutcome(
            job_id=job_id,
            status=STATUS_COMPLETED,
            attempts=attempt_number,
            duration_ms=duration_ms,
            result=result,
            callback=callback,
        )

    def _on_failure(
        self,
        job_id: str,
        payload: JobPayload,
        attempt_number: int,
        error: BaseException,
        started: float,
    ) -> JobOutcome:
        state_manager = JobStateManager(job_id, self.ctx.state_backend, logger=self._logger)
        state = state_manager.load()
        std = standardise_error(error)
        final = (
            attempt_number >= self.max_attempts
            or is_terminal(error)
            or (state is not None and not state.can_resume)
        )
        duration_ms = self._elapsed_ms(started)
        if not final:
            self.ctx.stats.increment("jobs_retried")
            return JobOutcome(
                job_id=job_id,
                status=STATUS_RETRYING,
                attempts=attempt_number,
                duration_ms=duration_ms,
                error=std,
            )

        self._logger.error(
            "Job %s failed permanently after %d attempt(s): %s (%s)",
            job_id,
            attempt_number,
            std.message,
            std.code.value,
        )
        callback = self._notifier(payload, state_manager).failed(
            payload.document_id, error, duration_ms=duration_ms)
        self.ctx.stats.increment("jobs_failed")
        self.ctx.stats.append_failed(job_id)
        if self.ctx.config.cleanup_on_failure:
            self.cleanup(job_id)
        return JobOutcome(
            job_id=job_id,
            status=STATUS_FAILED,
            attempts=attempt_number,
            duration_ms=duration_ms,
            error=std,
            callback=callback,
        )


__all__ = [
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "STATUS_RETRYING",
    "STATUS_DEFERRED",
    "JobOutcome",
    "get_job_status",
    "JobRunner",
]
