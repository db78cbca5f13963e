#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Constants for the document processor configuration.
"""

from __future__ import annotations

import os
import tempfile

# ===========================================================================
# CORE CONSTANTS
# ===========================================================================
DEFAULT_EMBED_MODEL = "text-embedding-3-small"
DIMENSION = 1536
DEFAULT_INDEX_NAME = "documents"
DEFAULT_NAMESPACE = ""
DEFAULT_SCRATCH_ROOT = os.path.join(tempfile.gettempdir(), "docproc")

SCOPE_TYPE_CASE = "case"
SCOPE_TYPE_LIBRARY = "library"
SCOPE_TYPES = (SCOPE_TYPE_CASE, SCOPE_TYPE_LIBRARY)

# ===========================================================================
# CHUNKING CONFIGURATION
# ===========================================================================
CHUNK_MAX_TOKENS = 400
CHUNK_OVERLAP_RATIO = 0.15
CHUNK_PAGE_WINDOW = 50
CHUNK_MIN_TOKENS = 50
CHUNK_MAX_OVERLAP_RATIO = 0.5

# ===========================================================================
# EMBEDDING / UPSERT BATCHING
# ===========================================================================
INGEST_EMBED_BATCH_SIZE = 64
INGEST_UPSERT_BATCH_SIZE = 20
INGEST_BATCH_MAX_RETRIES = 4
INGEST_BACKOFF_BASE = 0.5
INGEST_BACKOFF_CAP = 10.0
INGEST_BACKOFF_JITTER_MIN = 0.5
INGEST_BACKOFF_JITTER_SPAN = 1.0
INGEST_METADATA_MAX_TEXT_CHARS = 8000

# ===========================================================================
# OPERATION TIMEOUTS (seconds) / ATTEMPTS
# ===========================================================================
TIMEOUT_FILE_DOWNLOAD_S = 10 * 60.0
TIMEOUT_OCR_S = 15 * 60.0
TIMEOUT_TRANSCRIPTION_S = 20 * 60.0
TIMEOUT_EXTRACTION_S = 10 * 60.0
TIMEOUT_EMBEDDING_S = 5 * 60.0
TIMEOUT_VECTOR_UPSERT_S = 60.0
TIMEOUT_CALLBACK_S = 30.0

ATTEMPTS_FILE_DOWNLOAD = 3
ATTEMPTS_OCR = 3
ATTEMPTS_TRANSCRIPTION = 2
ATTEMPTS_EXTRACTION = 2
# Embedding and upsert batches are retried by the adaptive batcher.
ATTEMPTS_EMBEDDING = 1
ATTEMPTS_VECTOR_UPSERT = 1
ATTEMPTS_CALLBACK = 2

OPERATION_BACKOFF_BASE_S = 1.0
OPERATION_BACKOFF_CAP_S = 10.0

OPENAI_TIMEOUT_DEFAULT_S = 60.0
OPENAI_CONNECT_TIMEOUT_S = 10.0
OPENAI_READ_TIMEOUT_S = 60.0
OPENAI_WRITE_TIMEOUT_S = 60.0
OPENAI_POOL_TIMEOUT_S = 30.0
HTTP_CONNECT_TIMEOUT_S = 10.0

# ===========================================================================
# DOWNLOAD
# ===========================================================================
DOWNLOAD_CHUNK_BYTES = 1024 * 1024

# ===========================================================================
# PDF / OCR STRATEGY
# ===========================================================================
OCR_MODEL = "mistral-ocr-latest"
OCR_BASE_URL = "https://api.mistral.ai"
OCR_SINGLE_MAX_PAGES = 1000
OCR_SINGLE_MAX_MB = 50.0
OCR_HARD_LIMIT_MB = 50.0
OCR_SAFETY_RATIO = 0.9
OCR_MAX_PAGES_PER_REQUEST = 1000

PDF_METHOD_OCR = "mistral-ocr"
PDF_METHOD_TEXT_LAYER = "pdf-text-layer"

# ===========================================================================
# TRANSCRIPTION
# ===========================================================================
TRANSCRIPTION_MODEL = "nova-3"
TRANSCRIPTION_LANGUAGE = "multi"
TRANSCRIPTION_BASE_URL = "https://api.deepgram.com"
TRANSCRIPTION_MIN_CHARS = 10
TRANSCRIPTION_MIN_CONFIDENCE = 0.5
TRANSCRIPTION_SEGMENT_THRESHOLD_MB = 200.0
TRANSCRIPT_SEGMENT_CHARS = 8000

# ===========================================================================
# CONCURRENCY
# ===========================================================================
WORKER_CONCURRENCY = 2
JOB_MAX_ATTEMPTS = 3
JOB_RETRY_BACKOFF_S = 2.0
EXTERNAL_MAX_CONCURRENT = 4
EXTERNAL_MAX_QUEUED = 100
EXTERNAL_QUEUE_TIMEOUT_S = 5 * 60.0

# ===========================================================================
# JOB STATE / LEASES
# ===========================================================================
JOB_STATE_KEY_PREFIX = "docproc:job:state:"
JOB_STATE_TTL_SECONDS = 7 * 24 * 60 * 60
JOB_MAX_CONSECUTIVE_ERRORS = 3
JOB_LEASE_KEY_PREFIX = "docproc:job:lease"
JOB_LEASE_TTL_MS = 30 * 60 * 1000
JOB_LEASE_ACQUIRE_SECONDS = 5.0
JOB_LEASE_RETRY_INTERVAL_S = 0.2
JOB_LEASE_JITTER_S = 0.1

REDIS_POOL_MAX_CONNECTIONS = 20
REDIS_POOL_SOCKET_TIMEOUT_S = 5.0
REDIS_POOL_SOCKET_CONNECT_TIMEOUT_S = 5.0
REDIS_POOL_HEALTH_CHECK_INTERVAL_S = 30.0

# ===========================================================================
# CALLBACKS
# ===========================================================================
CALLBACK_SIGNATURE_HEADER = "X-Signature"

# ===========================================================================
# MIME TYPES & SIZE LIMITS
# ===========================================================================
MIME_PDF = "application/pdf"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
MIME_XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
MIME_PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
MIME_LEGACY_DOC = "application/msword"
MIME_CSV = "text/csv"
MIME_TEXT = "text/plain"
MIME_MARKDOWN = "text/markdown"

TEXT_MIME_TYPES = frozenset({MIME_TEXT, MIME_MARKDOWN})
OFFICE_MIME_TYPES = frozenset({MIME_DOCX, MIME_XLSX, MIME_PPTX})
CSV_MIME_TYPES = frozenset({MIME_CSV, "application/csv"})
MIME_JSON = "application/json"
SUPPORTED_MIME_TYPES = frozenset(
    {MIME_PDF, MIME_JSON} | TEXT_MIME_TYPES | OFFICE_MIME_TYPES | CSV_MIME_TYPES
)
# Other text/* types get a best-effort text attempt.
SUPPORTED_MIME_PREFIXES = ("audio/", "video/", "text/")

LEGACY_DOC_MESSAGE = (
    "Legacy .doc files are not supported. Please convert to .docx format."
)

MB = 1024 * 1024
FILE_SIZE_LIMITS_MB: dict[str, float] = {
    MIME_PDF: 100,
    MIME_DOCX: 50,
    MIME_XLSX: 50,
    MIME_PPTX: 50,
    MIME_CSV: 100,
    "application/csv": 100,
    MIME_TEXT: 100,
    MIME_MARKDOWN: 100,
    "audio/": 500,
    "video/": 1000,
}
DEFAULT_FILE_SIZE_LIMIT_MB = 100

# ===========================================================================
# STATUS QUERY
# ===========================================================================
PHASE_PERCENT: dict[str, int] = {
    "initialized": 0,
    "downloading": 5,
    "download_complete": 15,
    "extracting": 20,
    "extraction_complete": 50,
    "embedding": 55,
    "embedding_complete": 95,
    "completed": 100,
    "failed": 0,
}


__all__ = [
    "DEFAULT_EMBED_MODEL",
    "DIMENSION",
    "DEFAULT_INDEX_NAME",
    "DEFAULT_NAMESPACE",
    "DEFAULT_SCRATCH_ROOT",
    "SCOPE_TYPE_CASE",
    "SCOPE_TYPE_LIBRARY",
    "SCOPE_TYPES",
    "CHUNK_MAX_TOKENS",
    "CHUNK_OVERLAP_RATIO",
    "CHUNK_PAGE_WINDOW",
    "CHUNK_MIN_TOKENS",
    "CHUNK_MAX_OVERLAP_RATIO",
    "INGEST_EMBED_BATCH_SIZE",
    "INGEST_UPSERT_BATCH_SIZE",
    "INGEST_BATCH_MAX_RETRIES",
    "INGEST_BACKOFF_BASE",
    "INGEST_BACKOFF_CAP",
    "INGEST_BACKOFF_JITTER_MIN",
    "INGEST_BACKOFF_JITTER_SPAN",
    "INGEST_METADATA_MAX_TEXT_CHARS",
    "TIMEOUT_FILE_DOWNLOAD_S",
    "TIMEOUT_OCR_S",
    "TIMEOUT_TRANSCRIPTION_S",
    "TIMEOUT_EXTRACTION_S",
    "TIMEOUT_EMBEDDING_S",
    "TIMEOUT_VECTOR_UPSERT_S",
    "TIMEOUT_CALLBACK_S",
    "ATTEMPTS_FILE_DOWNLOAD",
    "ATTEMPTS_OCR",
    "ATTEMPTS_TRANSCRIPTION",
    "ATTEMPTS_EXTRACTION",
    "ATTEMPTS_EMBEDDING",
    "ATTEMPTS_VECTOR_UPSERT",
    "ATTEMPTS_CALLBACK",
    "OPERATION_BACKOFF_BASE_S",
    "OPERATION_BACKOFF_CAP_S",
    "OPENAI_TIMEOUT_DEFAULT_S",
    "OPENAI_CONNECT_TIMEOUT_S",
    "OPENAI_READ_TIMEOUT_S",
    "OPENAI_WRITE_TIMEOUT_S",
    "OPENAI_POOL_TIMEOUT_S",
    "HTTP_CONNECT_TIMEOUT_S",
    "DOWNLOAD_CHUNK_BYTES",
    "OCR_MODEL",
    "OCR_BASE_URL",
    "OCR_SINGLE_MAX_PAGES",
    "OCR_SINGLE_MAX_MB",
    "OCR_HARD_LIMIT_MB",
    "OCR_SAFETY_RATIO",
    "OCR_MAX_PAGES_PER_REQUEST",
    "PDF_METHOD_OCR",
    "PDF_METHOD_TEXT_LAYER",
    "TRANSCRIPTION_MODEL",
    "TRANSCRIPTION_LANGUAGE",
    "TRANSCRIPTION_BASE_URL",
    "TRANSCRIPTION_MIN_CHARS",
    "TRANSCRIPTION_MIN_CONFIDENCE",
    "TRANSCRIPTION_SEGMENT_THRESHOLD_MB",
    "TRANSCRIPT_SEGMENT_CHARS",
    "WORKER_CONCURRENCY",
    "JOB_MAX_ATTEMPTS",
    "JOB_RETRY_BACKOFF_S",
    "EXTERNAL_MAX_CONCURRENT",
    "EXTERNAL_MAX_QUEUED",
    "EXTERNAL_QUEUE_TIMEOUT_S",
    "JOB_STATE_KEY_PREFIX",
    "JOB_STATE_TTL_SECONDS",
    "JOB_MAX_CONSECUTIVE_ERRORS",
    "JOB_LEASE_KEY_PREFIX",
    "JOB_LEASE_TTL_MS",
    "JOB_LEASE_ACQUIRE_SECONDS",
    "JOB_LEASE_RETRY_INTERVAL_S",
    "JOB_LEASE_JITTER_S",
    "REDIS_POOL_MAX_CONNECTIONS",
    "REDIS_POOL_SOCKET_TIMEOUT_S",
    "REDIS_POOL_SOCKET_CONNECT_TIMEOUT_S",
    "REDIS_POOL_HEALTH_CHECK_INTERVAL_S",
    "CALLBACK_SIGNATURE_HEADER",
    "MIME_PDF",
    "MIME_DOCX",
    "MIME_XLSX",
    "MIME_PPTX",
    "MIME_LEGACY_DOC",
    "MIME_CSV",
    "MIME_TEXT",
    "MIME_MARKDOWN",
    "MIME_JSON",
    "TEXT_MIME_TYPES",
    "OFFICE_MIME_TYPES",
    "CSV_MIME_TYPES",
    "SUPPORTED_MIME_TYPES",
    "SUPPORTED_MIME_PREFIXES",
    "LEGACY_DOC_MESSAGE",
    "MB",
    "FILE_SIZE_LIMITS_MB",
    "DEFAULT_FILE_SIZE_LIMIT_MB",
    "PHASE_PERCENT",
]
