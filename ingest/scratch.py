"""
Per-job scratch area on local disk.

Holds the downloaded source file and the append-only chunk and
embedding ledgers (JSON lines). The directory survives failed attempts so
the next attempt can resume from it, and is removed once the job reaches
a terminal outcome.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Optional

from docproc_exceptions import StorageError, ValidationError

SOURCE_FILE = "source"
CHUNK_LEDGER = "chunks.jsonl"
EMBEDDING_LEDGER = "embeddings.jsonl"
TRANSCRIPT_FILE = "transcript.json"

_SAFE_JOB_ID = re.compile(r"^[A-Za-z0-9._:-]{1,200}$")


def safe_job_dirname(job_id: str) -> str:
    if not _SAFE_JOB_ID.match(job_id) or job_id in (".", ".."):
        raise ValidationError(f"Job id is not safe for use as a path: {job_id!r}")
    return job_id.replace(":", "_")


class ScratchStorage:
    def __init__(self, root: str, job_id: str, *, logger: Optional[logging.Logger] = None):
        self.job_id = job_id
        self.directory = Path(root).resolve() / safe_job_dirname(job_id)
        self._logger = logger or logging.getLogger(__name__)

    def init(self) -> Path:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create scratch directory {self.directory}: {exc}") from exc
        return self.directory

    def reset(self) -> Path:
        """Discard anything left by an earlier, non-resumable run."""
        if self.directory.exists():
            self._logger.info("Clearing stale scratch data for job %s", self.job_id)
            shutil.rmtree(self.directory, ignore_errors=True)
        return self.init()

    def path(self, name: str) -> Path:
        return self.directory / name

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def size(self, name: str) -> int:
        try:
            return self.path(name).stat().st_size
        except FileNotFoundError:
            return 0

    def write_bytes(self, name: str, data: bytes) -> Path:
        target = self.path(name)
        tmp = target.with_suffix(target.suffix + ".tmp")
        with open(tmp, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, target)
        return target

    def write_json(self, name: str, payload: dict[str, Any]) -> Path:
        return self.write_bytes(name, json.dumps(payload, ensure_ascii=False).encode("utf-8"))

    def read_json(self, name: str) -> Optional[dict[str, Any]]:
        try:
            return json.loads(self.path(name).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            self._logger.warning("Ignoring unreadable %s for job %s: %s", name, self.job_id, exc)
            return None

    def append_records(self, name: str, records: list[dict[str, Any]]) -> None:
        if not records:
            return
        lines = "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in records)
        if self._ends_torn(name):
            # Terminate a partial line left by a crash so it stays isolated.
            lines = "\n" + lines
        with open(self.path(name), "a", encoding="utf-8") as handle:
            handle.write(lines)
            handle.flush()
            os.fsync(handle.fileno())

    def _ends_torn(self, name: str) -> bool:
        target = self.path(name)
        try:
            with open(target, "rb") as handle:
                handle.seek(0, os.SEEK_END)
                if handle.tell() == 0:
                    return False
                handle.seek(-1, os.SEEK_END)
                return handle.read(1) != b"\n"
        except FileNotFoundError:
            return False

    def iter_records(self, name: str) -> Iterator[dict[str, Any]]:
        """Yield ledger records; a torn trailing line from a crash is skipped."""
        target = self.path(name)
        if not target.exists():
            return
        with open(target, "r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    self._logger.warning(
                        "Skipping corrupt ledger line %d in %s for job %s",
                        line_no,
                        name,
                        self.job_id,
                    )

    def cleanup(self) -> None:
        if self.directory.exists():
            shutil.rmtree(self.directory, ignore_errors=True)
            self._logger.info("Removed scratch directory for job %s", self.job_id)


__all__ = [
    "SOURCE_FILE",
    "CHUNK_LEDGER",
    "EMBEDDING_LEDGER",
    "TRANSCRIPT_FILE",
    "safe_job_dirname",
    "ScratchStorage",
]
