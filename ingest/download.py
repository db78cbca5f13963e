"""
Resumable download of the source file into scratch storage.

A partial file left by an earlier attempt is continued with a byte-range
request and appended to. Servers that ignore the Range header answer with
the full body; the bytes already on disk are then skipped from the stream
so the file and the progress counter only ever grow.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

import httpx

from config import DOWNLOAD_CHUNK_BYTES
from docproc_exceptions import (
    ErrorCode,
    ProcessingTimeoutError,
    ServiceUnavailableError,
)
from interfaces.http_support import (
    build_timeout,
    raise_for_service_status,
    translate_transport_error,
)
from .job_state import JobState, JobStateManager
from .scratch import SOURCE_FILE, ScratchStorage
from .timeouts import OperationGuard
from .validation import check_file_size

ProgressCallback = Callable[[dict[str, Any]], None]

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")


def _total_from_headers(response: httpx.Response, start: int) -> int:
    if response.status_code == 206:
        match = _CONTENT_RANGE.match(response.headers.get("content-range", ""))
        if match and match.group(3) != "*":
            return int(match.group(3))
        length = response.headers.get("content-length")
        return start + int(length) if length else 0
    length = response.headers.get("content-length")
    return int(length) if length else 0


def _percent(done: int, total: int) -> float:
    return round(100.0 * done / total, 1) if total else 0.0


class ResumableDownloader:
    def __init__(
        self,
        client: httpx.Client,
        guard: OperationGuard,
        *,
        chunk_bytes: int = DOWNLOAD_CHUNK_BYTES,
        logger: Optional[logging.Logger] = None,
    ):
        self._client = client
        self._guard = guard
        self._chunk_bytes = chunk_bytes
        self._logger = logger or logging.getLogger(__name__)

    def store_bytes(
        self,
        data: bytes,
        scratch: ScratchStorage,
        state: JobState,
        state_manager: JobStateManager,
        *,
        mime_type: str,
    ) -> Path:
        """Direct-upload path: the payload already carries the file."""
        check_file_size(mime_type, len(data))
        path = scratch.write_bytes(SOURCE_FILE, data)
        state_manager.update_progress(
            state,
            bytes_downloaded=len(data),
            bytes_total=len(data),
            downloaded_file_path=str(path),
        )
        return path

    def download_to_scratch(
        self,
        source_url: str,
        scratch: ScratchStorage,
        state: JobState,
        state_manager: JobStateManager,
        *,
        mime_type: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        budget = self._guard.budget("file_download")

        def _attempt() -> Path:
            return self._attempt(
                source_url,
                scratch,
                state,
                state_manager,
                mime_type=mime_type,
                on_progress=on_progress,
                deadline=time.monotonic() + budget.timeout_s,
            )

        # The attempt enforces its own deadline: an abandoned attempt must
        # not keep appending to the file the next attempt is writing.
        return self._guard.run("file_download", _attempt, hard_timeout=False)

    def _attempt(
        self,
        source_url: str,
        scratch: ScratchStorage,
        state: JobState,
        state_manager: JobStateManager,
        *,
        mime_type: str,
        on_progress: Optional[ProgressCallback],
        deadline: float,
    ) -> Path:
        path = scratch.path(SOURCE_FILE)
        start = scratch.size(SOURCE_FILE)
        headers = {"Range": f"bytes={start}-"} if start > 0 else {}
        if start > 0:
            self._logger.info(
                "Resuming download for job %s at byte %d", state.job_id, start)

        try:
            with self._client.stream(
                "GET",
                source_url,
                headers=headers,
                timeout=build_timeout(max(1.0, deadline - time.monotonic())),
                follow_redirects=True,
            ) as response:
                if start > 0 and response.status_code == 416:
                    # Nothing left to fetch.
                    total = max(start, state.progress.bytes_total)
                    state_manager.update_progress(
                        state,
                        bytes_downloaded=start,
                        bytes_total=total,
                        downloaded_file_path=str(path),
                    )
                    return path
                raise_for_service_status(
                    response,
                    "download",
                    failure_code=ErrorCode.FILE_ACCESS_ERROR,
                    not_found_is_access_error=True,
                )
                skip = start if (start > 0 and response.status_code == 200) else 0
                if skip:
                    self._logger.warning(
                        "Server ignored Range for job %s; skipping %d bytes already on disk",
                        state.job_id,
                        skip,
                    )
                total = _total_from_headers(response, start)
                if total:
                    check_file_size(mime_type, total)
                state_manager.update_progress(
                    state,
                    bytes_total=total,
                    downloaded_file_path=str(path),
                )
                written = start
                with open(path, "ab") as handle:
                    for block in response.iter_bytes(self._chunk_bytes):
                        if skip:
                            if len(block) <= skip:
                                skip -= len(block)
                                continue
                            block = block[skip:]
                            skip = 0
                        handle.write(block)
                        written += len(block)
                        if not total:
                            check_file_size(mime_type, written)
                        handle.flush()
                        state_manager.update_progress(state, bytes_downloaded=written)
                        if on_progress is not None:
                            on_progress({
                                "bytes_downloaded": written,
                                "bytes_total": total,
                                "percent": _percent(written, total),
                            })
                        if time.monotonic() > deadline:
                            raise ProcessingTimeoutError(
                                f"Download for job {state.job_id} exceeded its time budget "
                                f"after {written} bytes",
                                code=ErrorCode.FILE_DOWNLOAD_TIMEOUT,
                            )
                    os.fsync(handle.fileno())
        except httpx.HTTPError as error:
            raise translate_transport_error(
                error, "download", timeout_code=ErrorCode.FILE_DOWNLOAD_TIMEOUT) from error

        if total and written < total:
            raise ServiceUnavailableError(
                f"Download for job {state.job_id} ended early at {written}/{total} bytes")
        if not total:
            state_manager.update_progress(state, bytes_total=written)
        self._logger.info(
            "Downloaded %d bytes for job %s", written, state.job_id)
        return path


__all__ = [
    "ResumableDownloader",
    "ProgressCallback",
]
