"""
Tests for OCR split planning and the OCR/text-layer PDF strategy.
"""

import pytest
from pypdf import PdfWriter

from config import MB, PDF_METHOD_OCR, PDF_METHOD_TEXT_LAYER
from docproc_exceptions import ExtractionError
from fakes import FakeOcr
from ingest import pdf_strategy
from ingest.pdf_strategy import PageRange, PdfOcrStrategy, page_windows, plan_pdf_splits


def write_blank_pdf(path, pages):
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    with open(path, "wb") as handle:
        writer.write(handle)
    return path


@pytest.mark.parametrize("page_count,size_mb", [
    (2000, 80),
    (1500, 120),
    (5000, 10),
    (30, 200),
])
def test_split_plan_covers_every_page_within_ceilings(page_count, size_mb):
    plan = plan_pdf_splits(page_count, size_mb * MB, max_pages=1000, ceiling_mb=48)
    mb_per_page = size_mb / page_count

    assert len(plan) > 1
    assert plan[0].start == 0
    assert plan[-1].end == page_count
    for previous, current in zip(plan, plan[1:]):
        assert current.start == previous.end
    for page_range in plan:
        assert 1 <= page_range.pages <= 1000
        assert page_range.pages * mb_per_page <= 48 + 1e-9


def test_small_pdf_is_a_single_request():
    assert plan_pdf_splits(10, 1 * MB) == [PageRange(0, 10)]


def test_empty_pdf_has_no_plan():
    assert plan_pdf_splits(0, 1 * MB) == []


def test_page_windows_group_pages():
    windows = list(page_windows(4, ["a", "", "c"], 2))

    assert windows == [(PageRange(4, 6), "a"), (PageRange(6, 7), "c")]
    assert windows[0][0].label() == "p5-6"


class TestPdfOcrStrategy:
    """OCR first, text layer on failure, resumable either way."""

    def _patch_text_layer(self, monkeypatch, pages, starts=None):
        def _read(path, start_page=0):
            if starts is not None:
                starts.append(start_page)
            for index in range(start_page, pages):
                yield index, f"layer text page {index + 1}"

        monkeypatch.setattr(pdf_strategy, "count_pages", lambda path: pages)
        monkeypatch.setattr(pdf_strategy, "read_page_texts", _read)

    def test_ocr_success_emits_page_windows(self, tmp_path, guard, make_session):
        path = write_blank_pdf(tmp_path / "five.pdf", 5)
        ocr = FakeOcr()
        session = make_session(page_window=2)

        method = PdfOcrStrategy(ocr, guard).extract(session, path)

        assert method == PDF_METHOD_OCR
        assert ocr.requests == [5]
        progress = session.state.progress
        assert progress.segments_chunked == ["ocr:p1-2", "ocr:p3-4", "ocr:p5-5"]
        assert progress.chunks_generated == 3
        assert progress.pages_extracted == 5
        assert progress.last_ocr_chunk == 1
        assert session.state.metadata["pdf_method"] == PDF_METHOD_OCR

    def test_ocr_failure_falls_back_to_text_layer(self, tmp_path, guard, make_session,
                                                  monkeypatch, sleeps):
        path = tmp_path / "broken-ocr.pdf"
        path.write_bytes(b"%PDF-1.4 placeholder")
        self._patch_text_layer(monkeypatch, 3)
        ocr = FakeOcr(fail=True)
        session = make_session()

        method = PdfOcrStrategy(ocr, guard).extract(session, path)

        assert method == PDF_METHOD_TEXT_LAYER
        assert len(ocr.requests) == 3
        assert len(sleeps) == 2
        assert session.state.metadata["pdf_method"] == PDF_METHOD_TEXT_LAYER
        assert session.state.progress.segments_chunked == ["text-layer:p1-3"]
        assert session.state.progress.pages_extracted == 3

    def test_text_layer_resumes_after_extracted_pages(self, tmp_path, guard, make_session,
                                                      monkeypatch):
        path = tmp_path / "resume.pdf"
        path.write_bytes(b"%PDF-1.4 placeholder")
        starts = []
        self._patch_text_layer(monkeypatch, 25, starts)
        ocr = FakeOcr()
        session = make_session(page_window=10)
        session.state.metadata["pdf_method"] = PDF_METHOD_TEXT_LAYER
        session.state_manager.update_progress(
            session.state, pages_extracted=10, last_extracted_page=10)

        PdfOcrStrategy(ocr, guard).extract(session, path)

        assert ocr.requests == []
        assert starts == [10]
        assert session.state.progress.segments_chunked == [
            "text-layer:p11-20", "text-layer:p21-25"]
        assert session.state.progress.pages_extracted == 25

    def test_without_ocr_provider_reads_text_layer(self, tmp_path, guard, make_session,
                                                   monkeypatch):
        path = tmp_path / "no-ocr.pdf"
        path.write_bytes(b"%PDF-1.4 placeholder")
        self._patch_text_layer(monkeypatch, 2)
        session = make_session()

        assert PdfOcrStrategy(None, guard).extract(session, path) == PDF_METHOD_TEXT_LAYER
        assert session.state.progress.chunks_generated == 1

    def test_split_ocr_resumes_at_next_range(self, tmp_path, guard, make_session):
        path = write_blank_pdf(tmp_path / "long.pdf", 1001)
        ocr = FakeOcr()
        session = make_session()
        session.state_manager.update_progress(
            session.state, pages_extracted=500, last_extracted_page=500, last_ocr_chunk=1)

        method = PdfOcrStrategy(ocr, guard, max_pages=500).extract(session, path)

        assert method == PDF_METHOD_OCR
        assert ocr.requests == [500, 1]
        progress = session.state.progress
        assert progress.last_ocr_chunk == 3
        assert progress.pages_extracted == 1001
        assert progress.pages_total == 1001
        assert "ocr:p1-10" not in progress.segments_chunked
        assert "ocr:p501-510" in progress.segments_chunked
        assert progress.segments_chunked[-1] == "ocr:p1001-1001"

    def test_unreadable_pdf_is_an_extraction_error(self, tmp_path, guard, make_session):
        path = tmp_path / "garbage.pdf"
        path.write_bytes(b"this is not a pdf at all")

        with pytest.raises(ExtractionError):
            PdfOcrStrategy(FakeOcr(), guard).extract(make_session(), path)
