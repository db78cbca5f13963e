"""
Extraction router and its format variants.

Each variant turns the scratch copy of the source file into text
segments and feeds them to the chunker through an ExtractionSession, so
no variant ever holds the whole document's chunks in memory. The router
picks a variant from the validated MIME classification; unrecognised but
supported types fall through to a plain text attempt.
"""

from __future__ import annotations

import json
import logging
import zipfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import pandas as pd
from docx import Document as DocxDocument
from docx.opc.exceptions import PackageNotFoundError
from pptx import Presentation
from pptx.exc import PackageNotFoundError as PptxPackageNotFoundError

from config import PHASE_PERCENT
from docproc_exceptions import ErrorCode, ExtractionError
from interfaces import TranscriptionResult
from .chunker import StreamingChunker
from .job_state import JobState, JobStateManager
from .payload import ChunkingOptions
from .pdf_strategy import PdfOcrStrategy
from .scratch import SOURCE_FILE, ScratchStorage
from .timeouts import OperationGuard
from .transcription import TranscriptionStrategy
from .validation import MimeKind, resolve_mime_type, validate_mime_type

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], None]

CSV_ROWS_PER_SEGMENT = 200


@dataclass
class ExtractionSession:
    """Everything an extraction variant needs to stream text into the job."""

    state: JobState
    state_manager: JobStateManager
    scratch: ScratchStorage
    chunker: StreamingChunker
    options: ChunkingOptions
    on_progress: Optional[ProgressCallback] = None
    on_transcript: Optional[Callable[[TranscriptionResult], None]] = None

    def emit(self, text: str, segment_key: str) -> int:
        return len(self.chunker.process_segment(text, self.state, segment_key))

    def report_pages(self, done: int, total: int) -> None:
        if self.on_progress is None:
            return
        span = PHASE_PERCENT["extraction_complete"] - PHASE_PERCENT["extracting"]
        self.on_progress({
            "phase": "extracting",
            "pages_extracted": done,
            "pages_total": total,
            "chunks_generated": self.state.progress.chunks_generated,
            "percent": PHASE_PERCENT["extracting"] + (span * done // total if total else 0),
        })

    def deliver_transcript(self, result: TranscriptionResult) -> None:
        if self.on_transcript is not None:
            self.on_transcript(result)


@dataclass(frozen=True)
class ExtractionResult:
    method: str
    mime_type: str
    chunks_generated: int
    pages_total: int = 0


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1", errors="ignore")


# ============================================================================
# FORMAT READERS
# ============================================================================


def read_docx(path: Path) -> list[str]:
    doc = DocxDocument(str(path))
    parts = [paragraph.text for paragraph in doc.paragraphs if paragraph.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return ["\n".join(parts)]


def _frame_to_text(df: pd.DataFrame) -> str:
    lines = []
    for _, row in df.iterrows():
        values = [f"{col}: {val}" for col, val in row.items() if pd.notna(val) and str(val).strip()]
        if values:
            lines.append(" | ".join(values))
    return "\n".join(lines)


def read_xlsx(path: Path) -> list[str]:
    sheets = pd.read_excel(path, sheet_name=None, engine="openpyxl")
    segments = []
    for name, df in sheets.items():
        body = _frame_to_text(df)
        if body:
            segments.append(f"Sheet: {name}\n\n{body}")
    return segments


def read_pptx(path: Path) -> list[str]:
    """Slide text in presentation order, one block per slide."""
    prs = Presentation(str(path))
    segments = []
    for number, slide in enumerate(prs.slides, start=1):
        runs = []
        for shape in slide.shapes:
            if not shape.has_text_frame:
                continue
            for paragraph in shape.text_frame.paragraphs:
                runs.extend(run.text for run in paragraph.runs if run.text.strip())
        if runs:
            segments.append(f"Slide {number}\n" + "\n".join(runs))
    return ["\n\n".join(segments)] if segments else []


def read_csv(path: Path) -> list[str]:
    df = pd.read_csv(path, dtype=str, keep_default_na=False, on_bad_lines="skip")
    return [
        _frame_to_text(df.iloc[start:start + CSV_ROWS_PER_SEGMENT])
        for start in range(0, len(df), CSV_ROWS_PER_SEGMENT)
    ]


# ============================================================================
# VARIANTS
# ============================================================================


class Extraction:
    """One way of turning a source file into chunked text."""

    name = "extraction"

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        raise NotImplementedError

    @staticmethod
    def _emit_segments(session: ExtractionSession, method: str, segments: list[str]) -> None:
        for index, segment in enumerate(segments):
            session.emit(segment, f"{method}:{index}")


class TextExtraction(Extraction):
    name = "txt-text"

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        self._emit_segments(session, self.name, [decode_text(path.read_bytes())])
        return self.name


class OfficeExtraction(Extraction):
    name = "office"

    _READERS: dict[MimeKind, tuple[str, Callable[[Path], list[str]]]] = {
        MimeKind.DOCX: ("docx-text", read_docx),
        MimeKind.XLSX: ("xlsx-text", read_xlsx),
        MimeKind.PPTX: ("pptx-text", read_pptx),
    }

    def __init__(self, kind: MimeKind, guard: OperationGuard):
        self._method, self._reader = self._READERS[kind]
        self._guard = guard

    def _read(self, path: Path) -> list[str]:
        try:
            return self._reader(path)
        except (
            zipfile.BadZipFile,
            PackageNotFoundError,
            PptxPackageNotFoundError,
            KeyError,
            ValueError,
        ) as exc:
            raise ExtractionError(f"{self._method}: cannot read document: {exc}") from exc

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        segments = self._guard.run("extraction", lambda: self._read(path))
        self._emit_segments(session, self._method, segments)
        return self._method


class CsvExtraction(Extraction):
    name = "csv-text"

    def __init__(self, guard: OperationGuard):
        self._guard = guard

    @staticmethod
    def _read(path: Path) -> list[str]:
        try:
            return read_csv(path)
        except pd.errors.EmptyDataError:
            return []
        except (pd.errors.ParserError, ValueError) as exc:
            raise ExtractionError(f"csv-text: cannot parse CSV: {exc}") from exc

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        segments = self._guard.run("extraction", lambda: self._read(path))
        self._emit_segments(session, self.name, segments)
        return self.name


class AudioVideoExtraction(Extraction):
    def __init__(self, kind: MimeKind, strategy: TranscriptionStrategy):
        self.name = f"{kind.value}-transcription"
        self._strategy = strategy

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        self._strategy.extract(session, path, mime_type)
        return self.name


class PdfExtraction(Extraction):
    name = "pdf"

    def __init__(self, strategy: PdfOcrStrategy):
        self._strategy = strategy

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        return self._strategy.extract(session, path)


class FallbackTextExtraction(Extraction):
    """Best-effort decode for other ``text/*`` and JSON content."""

    name = "text-attempt"

    def extract(self, session: ExtractionSession, path: Path, mime_type: str) -> str:
        data = path.read_bytes()
        if b"\x00" in data[:8192]:
            raise ExtractionError(
                f"Content declared as {mime_type} looks binary",
                code=ErrorCode.EXTRACTION_FAILED,
            )
        text = decode_text(data)
        if mime_type == "application/json":
            try:
                text = json.dumps(json.loads(text), ensure_ascii=False, indent=2)
            except json.JSONDecodeError:
                logger.debug("JSON content for job %s did not parse; using raw text",
                             session.state.job_id)
        self._emit_segments(session, self.name, [text])
        return self.name


# ============================================================================
# ROUTER
# ============================================================================


class ExtractionRouter:
    def __init__(
        self,
        *,
        pdf: PdfOcrStrategy,
        transcription: TranscriptionStrategy,
        guard: OperationGuard,
        logger: Optional[logging.Logger] = None,
    ):
        self._guard = guard
        self._logger = logger or logging.getLogger(__name__)
        self._variants: dict[MimeKind, Extraction] = {
            MimeKind.TEXT: TextExtraction(),
            MimeKind.DOCX: OfficeExtraction(MimeKind.DOCX, guard),
            MimeKind.XLSX: OfficeExtraction(MimeKind.XLSX, guard),
            MimeKind.PPTX: OfficeExtraction(MimeKind.PPTX, guard),
            MimeKind.CSV: CsvExtraction(guard),
            MimeKind.AUDIO: AudioVideoExtraction(MimeKind.AUDIO, transcription),
            MimeKind.VIDEO: AudioVideoExtraction(MimeKind.VIDEO, transcription),
            MimeKind.PDF: PdfExtraction(pdf),
        }
        self._fallback = FallbackTextExtraction()

    def select(self, kind: MimeKind) -> Extraction:
        return self._variants.get(kind, self._fallback)

    def extract(
        self,
        session: ExtractionSession,
        source: Union[Path, bytes],
        declared_mime_type: Optional[str],
        file_name: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Validate the type, then stream the source through the matching
        variant. Raises UnsupportedMimeTypeError before touching the content
        when the type is not accepted.
        """
        mime_type = resolve_mime_type(declared_mime_type, file_name)
        kind = validate_mime_type(mime_type)
        if isinstance(source, bytes):
            source = session.scratch.write_bytes(SOURCE_FILE, source)

        variant = self.select(kind)
        state = session.state
        self._logger.info(
            "Job %s: extracting %s with %s", state.job_id, mime_type, type(variant).__name__)
        method = variant.extract(session, Path(source), mime_type)
        state.metadata["extraction_method"] = method
        session.state_manager.save(state)
        return ExtractionResult(
            method=method,
            mime_type=mime_type,
            chunks_generated=state.progress.chunks_generated,
            pages_total=state.progress.pages_total,
        )


__all__ = [
    "ExtractionSession",
    "ExtractionResult",
    "decode_text",
    "read_docx",
    "read_xlsx",
    "read_pptx",
    "read_csv",
    "Extraction",
    "TextExtraction",
    "OfficeExtraction",
    "CsvExtraction",
    "AudioVideoExtraction",
    "PdfExtraction",
    "FallbackTextExtraction",
    "ExtractionRouter",
]
