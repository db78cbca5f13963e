"""
OCR-first PDF extraction with a local text-layer fallback.

Small PDFs go to the OCR service in one request. Large ones are split
into sequential page ranges sized from the observed pages-per-MB ratio
so that each request stays under both the page ceiling and a
safety-margined byte ceiling. ``last_ocr_chunk`` records how many ranges
are done, so a failed attempt resumes at the next range.

If OCR fails for any reason the remaining pages are read from the PDF's
own text layer with pypdf, and ``metadata["pdf_method"]`` records which
method produced the text.
"""

from __future__ import annotations

import io
import logging
import math
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from config import (
    MB,
    OCR_HARD_LIMIT_MB,
    OCR_MAX_PAGES_PER_REQUEST,
    OCR_SAFETY_RATIO,
    OCR_SINGLE_MAX_MB,
    OCR_SINGLE_MAX_PAGES,
    PDF_METHOD_OCR,
    PDF_METHOD_TEXT_LAYER,
)
from docproc_exceptions import (
    ExtractionError,
    JobLeaseError,
    OcrError,
    StateStoreError,
)
from interfaces import OcrProvider
from .timeouts import ExternalCallGate, OperationGuard

if TYPE_CHECKING:
    from .extraction import ExtractionSession


@dataclass(frozen=True)
class PageRange:
    """Zero-based, end-exclusive page range."""

    start: int
    end: int

    @property
    def pages(self) -> int:
        return self.end - self.start

    def label(self) -> str:
        return f"p{self.start + 1}-{self.end}"


def plan_pdf_splits(
    page_count: int,
    size_bytes: int,
    *,
    max_pages: int = OCR_MAX_PAGES_PER_REQUEST,
    ceiling_mb: float = OCR_HARD_LIMIT_MB * OCR_SAFETY_RATIO,
    single_max_pages: int = OCR_SINGLE_MAX_PAGES,
    single_max_mb: float = OCR_SINGLE_MAX_MB,
) -> list[PageRange]:
    """
    Plan the OCR requests for a PDF.

    Each range stays under ``max_pages`` and, assuming pages are of
    roughly even size, under ``ceiling_mb``. Ranges are contiguous and
    cover every page exactly once.
    """
    if page_count <= 0:
        return []
    size_mb = size_bytes / MB
    if page_count <= single_max_pages and size_mb <= single_max_mb:
        return [PageRange(0, page_count)]

    pages_per_mb = page_count / size_mb if size_mb > 0 else float(page_count)
    max_for_size = math.floor(ceiling_mb * pages_per_mb)
    per_chunk = max(1, min(max_pages, max_for_size))
    return [
        PageRange(start, min(start + per_chunk, page_count))
        for start in range(0, page_count, per_chunk)
    ]


def page_windows(first_page: int, texts: list[str], window: int) -> Iterator[tuple[PageRange, str]]:
    """Group consecutive page texts into windows of ``window`` pages."""
    for offset in range(0, len(texts), window):
        group = texts[offset:offset + window]
        start = first_page + offset
        yield PageRange(start, start + len(group)), "\n\n".join(t for t in group if t)


def split_pdf_range(reader: PdfReader, page_range: PageRange) -> bytes:
    writer = PdfWriter()
    for index in range(page_range.start, page_range.end):
        writer.add_page(reader.pages[index])
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def read_page_texts(path: Path, start_page: int = 0) -> Iterator[tuple[int, str]]:
    """Yield ``(page_index, text)`` from the PDF text layer."""
    reader = PdfReader(str(path))
    for index in range(start_page, len(reader.pages)):
        yield index, reader.pages[index].extract_text() or ""


def count_pages(path: Path) -> int:
    try:
        return len(PdfReader(str(path)).pages)
    except (PdfReadError, OSError, ValueError) as exc:
        raise ExtractionError(f"Cannot read PDF: {exc}") from exc


class PdfOcrStrategy:
    def __init__(
        self,
        ocr: Optional[OcrProvider],
        guard: OperationGuard,
        *,
        gate: Optional[ExternalCallGate] = None,
        max_pages: int = OCR_MAX_PAGES_PER_REQUEST,
        hard_limit_mb: float = OCR_HARD_LIMIT_MB,
        safety_ratio: float = OCR_SAFETY_RATIO,
        logger: Optional[logging.Logger] = None,
    ):
        self._ocr = ocr
        self._guard = guard
        self._gate = gate
        self._max_pages = max_pages
        self._ceiling_mb = hard_limit_mb * safety_ratio
        self._logger = logger or logging.getLogger(__name__)

    def extract(self, session: "ExtractionSession", path: Path) -> str:
        """Chunk every page of the PDF; returns the method that produced the text."""
        state = session.state
        page_count = count_pages(path)
        session.state_manager.update_progress(state, pages_total=page_count)

        if state.metadata.get("pdf_method") != PDF_METHOD_TEXT_LAYER:
            if self._ocr is None:
                self._logger.warning(
                    "No OCR provider configured; using the text layer for job %s", state.job_id)
            else:
                try:
                    self._extract_with_ocr(session, path, page_count)
                    state.metadata["pdf_method"] = PDF_METHOD_OCR
                    session.state_manager.save(state)
                    return PDF_METHOD_OCR
                except (JobLeaseError, StateStoreError):
                    raise
                except Exception as exc:  # pylint: disable=broad-except
                    self._logger.warning(
                        "OCR failed for job %s after %d/%d pages (%s); "
                        "falling back to the text layer",
                        state.job_id,
                        state.progress.pages_extracted,
                        page_count,
                        exc,
                    )
            state.metadata["pdf_method"] = PDF_METHOD_TEXT_LAYER
            session.state_manager.save(state)

        self._extract_text_layer(session, path, page_count)
        return PDF_METHOD_TEXT_LAYER

    # ------------------------------------------------------------------
    # OCR path
    # ------------------------------------------------------------------

    def _extract_with_ocr(self, session: "ExtractionSession", path: Path, page_count: int) -> None:
        state = session.state
        size_bytes = path.stat().st_size
        plan = plan_pdf_splits(
            page_count,
            size_bytes,
            max_pages=self._max_pages,
            ceiling_mb=self._ceiling_mb,
        )
        if len(plan) > 1:
            self._logger.info(
                "Job %s: splitting %d-page, %.1fMB PDF into %d OCR requests",
                state.job_id,
                page_count,
                size_bytes / MB,
                len(plan),
            )
        reader = PdfReader(str(path)) if len(plan) > 1 else None

        for chunk_index, page_range in enumerate(plan):
            if chunk_index < state.progress.last_ocr_chunk:
                continue
            if reader is None:
                texts = self._ocr_bytes(path.read_bytes(), page_range)
            else:
                texts = self._ocr_split(reader, page_range)
            for window, text in page_windows(page_range.start, texts, session.options.page_window):
                session.emit(text, f"ocr:{window.label()}")
            session.state_manager.update_progress(
                state,
                pages_extracted=page_range.end,
                last_extracted_page=page_range.end,
                last_ocr_chunk=chunk_index + 1,
            )
            session.report_pages(page_range.end, page_count)

    def _ocr_split(self, reader: PdfReader, page_range: PageRange) -> list[str]:
        data = split_pdf_range(reader, page_range)
        if len(data) > self._ceiling_mb * MB and page_range.pages > 1:
            middle = page_range.start + page_range.pages // 2
            self._logger.info(
                "OCR range %s is %.1fMB; halving", page_range.label(), len(data) / MB)
            return (
                self._ocr_split(reader, PageRange(page_range.start, middle))
                + self._ocr_split(reader, PageRange(middle, page_range.end))
            )
        return self._ocr_bytes(data, page_range)

    def _ocr_bytes(self, data: bytes, page_range: PageRange) -> list[str]:
        timeout = self._guard.budget("ocr").timeout_s
        texts = self._guard.run(
            "ocr",
            lambda: self._ocr.ocr_pdf(data, timeout=timeout),
            gate=self._gate,
        )
        if len(texts) != page_range.pages:
            raise OcrError(
                f"OCR returned {len(texts)} pages for range {page_range.label()}",
                details={"expected": page_range.pages, "received": len(texts)},
            )
        return texts

    # ------------------------------------------------------------------
    # Text-layer fallback
    # ------------------------------------------------------------------

    def _extract_text_layer(self, session: "ExtractionSession", path: Path, page_count: int) -> None:
        state = session.state
        window = session.options.page_window
        start = state.progress.pages_extracted
        if start:
            self._logger.info(
                "Job %s: reading text layer from page %d", state.job_id, start + 1)

        pending: list[str] = []
        pending_start = start

        def _flush(end: int) -> None:
            page_range = PageRange(pending_start, end)
            session.emit("\n\n".join(t for t in pending if t), f"text-layer:{page_range.label()}")
            session.state_manager.update_progress(
                state,
                pages_extracted=end,
                last_extracted_page=end,
            )
            session.report_pages(end, page_count)

        try:
            for index, text in read_page_texts(path, start):
                pending.append(text)
                if len(pending) >= window or index + 1 == page_count:
                    _flush(index + 1)
                    pending = []
                    pending_start = index + 1
        except (PdfReadError, ValueError) as exc:
            raise ExtractionError(f"Text-layer extraction failed: {exc}") from exc
        if pending:
            _flush(pending_start + len(pending))


__all__ = [
    "PageRange",
    "plan_pdf_splits",
    "page_windows",
    "split_pdf_range",
    "read_page_texts",
    "count_pages",
    "PdfOcrStrategy",
]
