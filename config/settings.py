#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration settings for the document processor.
Enhanced with validation and type safety.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from docproc_exceptions import ConfigError, ErrorCode
from .constant import (
    ATTEMPTS_CALLBACK,
    ATTEMPTS_EMBEDDING,
    ATTEMPTS_EXTRACTION,
    ATTEMPTS_FILE_DOWNLOAD,
    ATTEMPTS_OCR,
    ATTEMPTS_TRANSCRIPTION,
    ATTEMPTS_VECTOR_UPSERT,
    CHUNK_MAX_OVERLAP_RATIO,
    CHUNK_MAX_TOKENS,
    CHUNK_MIN_TOKENS,
    CHUNK_OVERLAP_RATIO,
    CHUNK_PAGE_WINDOW,
    DEFAULT_EMBED_MODEL,
    DEFAULT_INDEX_NAME,
    DEFAULT_NAMESPACE,
    DEFAULT_SCRATCH_ROOT,
    DIMENSION,
    EXTERNAL_MAX_CONCURRENT,
    EXTERNAL_MAX_QUEUED,
    EXTERNAL_QUEUE_TIMEOUT_S,
    INGEST_BATCH_MAX_RETRIES,
    INGEST_EMBED_BATCH_SIZE,
    INGEST_UPSERT_BATCH_SIZE,
    JOB_LEASE_TTL_MS,
    JOB_MAX_ATTEMPTS,
    JOB_MAX_CONSECUTIVE_ERRORS,
    JOB_RETRY_BACKOFF_S,
    JOB_STATE_TTL_SECONDS,
    OCR_BASE_URL,
    OCR_HARD_LIMIT_MB,
    OCR_MAX_PAGES_PER_REQUEST,
    OCR_MODEL,
    OCR_SAFETY_RATIO,
    OPENAI_CONNECT_TIMEOUT_S,
    OPENAI_POOL_TIMEOUT_S,
    OPENAI_READ_TIMEOUT_S,
    OPENAI_TIMEOUT_DEFAULT_S,
    OPENAI_WRITE_TIMEOUT_S,
    TIMEOUT_CALLBACK_S,
    TIMEOUT_EMBEDDING_S,
    TIMEOUT_EXTRACTION_S,
    TIMEOUT_FILE_DOWNLOAD_S,
    TIMEOUT_OCR_S,
    TIMEOUT_TRANSCRIPTION_S,
    TIMEOUT_VECTOR_UPSERT_S,
    TRANSCRIPT_SEGMENT_CHARS,
    TRANSCRIPTION_BASE_URL,
    TRANSCRIPTION_LANGUAGE,
    TRANSCRIPTION_MIN_CHARS,
    TRANSCRIPTION_MIN_CONFIDENCE,
    TRANSCRIPTION_MODEL,
    TRANSCRIPTION_SEGMENT_THRESHOLD_MB,
    WORKER_CONCURRENCY,
)


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class OperationTimeout:
    """Timeout and attempt budget for one category of external call."""

    timeout_s: float
    max_attempts: int
    retry_on_timeout: bool = True


def default_operation_timeouts() -> dict[str, OperationTimeout]:
    return {
        "file_download": OperationTimeout(TIMEOUT_FILE_DOWNLOAD_S, ATTEMPTS_FILE_DOWNLOAD),
        "ocr": OperationTimeout(TIMEOUT_OCR_S, ATTEMPTS_OCR),
        "transcription": OperationTimeout(TIMEOUT_TRANSCRIPTION_S, ATTEMPTS_TRANSCRIPTION),
        "extraction": OperationTimeout(TIMEOUT_EXTRACTION_S, ATTEMPTS_EXTRACTION),
        "embedding": OperationTimeout(TIMEOUT_EMBEDDING_S, ATTEMPTS_EMBEDDING),
        "vector_upsert": OperationTimeout(TIMEOUT_VECTOR_UPSERT_S, ATTEMPTS_VECTOR_UPSERT),
        # A timed-out callback may still have been delivered.
        "callback": OperationTimeout(TIMEOUT_CALLBACK_S, ATTEMPTS_CALLBACK, retry_on_timeout=False),
    }


# ===========================================================================
# PROCESSOR CONFIGURATION
# ===========================================================================


@dataclass
class ProcessorConfig:
    """Centralised configuration for the document processor."""

    openai_api_key: str = ""
    pinecone_api_key: str = ""
    mistral_api_key: str = ""
    deepgram_api_key: str = ""
    redis_host: str = ""
    redis_port: int = 0
    redis_username: str = ""
    redis_password: str = ""

    index_name: str = DEFAULT_INDEX_NAME
    namespace: str = DEFAULT_NAMESPACE
    embed_model: str = DEFAULT_EMBED_MODEL
    dimension: int = DIMENSION

    chunk_tokens: int = CHUNK_MAX_TOKENS
    chunk_overlap_ratio: float = CHUNK_OVERLAP_RATIO
    page_window: int = CHUNK_PAGE_WINDOW

    embed_batch: int = INGEST_EMBED_BATCH_SIZE
    upsert_batch: int = INGEST_UPSERT_BATCH_SIZE
    batch_max_retries: int = INGEST_BATCH_MAX_RETRIES

    ocr_model: str = OCR_MODEL
    ocr_base_url: str = OCR_BASE_URL
    ocr_hard_limit_mb: float = OCR_HARD_LIMIT_MB
    ocr_safety_ratio: float = OCR_SAFETY_RATIO
    ocr_max_pages: int = OCR_MAX_PAGES_PER_REQUEST

    transcription_model: str = TRANSCRIPTION_MODEL
    transcription_language: str = TRANSCRIPTION_LANGUAGE
    transcription_base_url: str = TRANSCRIPTION_BASE_URL
    transcription_min_chars: int = TRANSCRIPTION_MIN_CHARS
    transcription_min_confidence: float = TRANSCRIPTION_MIN_CONFIDENCE
    transcription_segment_threshold_mb: float = TRANSCRIPTION_SEGMENT_THRESHOLD_MB
    transcript_segment_chars: int = TRANSCRIPT_SEGMENT_CHARS

    worker_concurrency: int = WORKER_CONCURRENCY
    job_max_attempts: int = JOB_MAX_ATTEMPTS
    job_retry_backoff_s: float = JOB_RETRY_BACKOFF_S
    max_consecutive_errors: int = JOB_MAX_CONSECUTIVE_ERRORS
    external_max_concurrent: int = EXTERNAL_MAX_CONCURRENT
    external_max_queued: int = EXTERNAL_MAX_QUEUED
    external_queue_timeout_s: float = EXTERNAL_QUEUE_TIMEOUT_S

    scratch_root: str = DEFAULT_SCRATCH_ROOT
    state_ttl_seconds: int = JOB_STATE_TTL_SECONDS
    state_backend: str = "redis"
    lease_ttl_ms: int = JOB_LEASE_TTL_MS
    cleanup_on_success: bool = True
    cleanup_on_failure: bool = True

    operation_timeouts: dict[str, OperationTimeout] = field(
        default_factory=default_operation_timeouts
    )

    openai_timeout: float = OPENAI_TIMEOUT_DEFAULT_S
    openai_connect_timeout: float = OPENAI_CONNECT_TIMEOUT_S
    openai_read_timeout: float = OPENAI_READ_TIMEOUT_S
    openai_write_timeout: float = OPENAI_WRITE_TIMEOUT_S
    openai_pool_timeout: float = OPENAI_POOL_TIMEOUT_S

    log_level: str = "INFO"
    dry_run: bool = False

    @property
    def chunk_overlap(self) -> int:
        return int(self.chunk_tokens * self.chunk_overlap_ratio)

    def timeout_for(self, operation: str) -> OperationTimeout:
        try:
            return self.operation_timeouts[operation]
        except KeyError as exc:
            raise ConfigError(
                f"No timeout configured for operation '{operation}'",
                code=ErrorCode.CONFIG_MISSING,
            ) from exc

    # -----------------------------------------------------------------------
    # ENVIRONMENT LOADERS
    # -----------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> "ProcessorConfig":
        defaults = cls()
        try:
            config = cls(
                openai_api_key=os.getenv("OPENAI_API_KEY", ""),
                pinecone_api_key=os.getenv("PINECONE_API_KEY", ""),
                mistral_api_key=os.getenv("MISTRAL_API_KEY", ""),
                deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
                redis_host=os.getenv("REDIS_HOST", ""),
                redis_port=int(os.getenv("REDIS_PORT") or 0),
                redis_username=os.getenv("REDIS_USERNAME", ""),
                redis_password=os.getenv("REDIS_PASSWORD", ""),
                index_name=os.getenv("INDEX_NAME", defaults.index_name),
                namespace=os.getenv("PINECONE_NAMESPACE", defaults.namespace),
                embed_model=os.getenv("EMBED_MODEL", defaults.embed_model),
                dimension=int(os.getenv("DIMENSION", str(defaults.dimension))),
                chunk_tokens=int(
                    os.getenv("CHUNK_TOKENS", str(defaults.chunk_tokens))),
                chunk_overlap_ratio=float(
                    os.getenv("CHUNK_OVERLAP_RATIO", str(defaults.chunk_overlap_ratio))),
                page_window=int(
                    os.getenv("PAGE_WINDOW", str(defaults.page_window))),
                embed_batch=int(
                    os.getenv("EMBED_BATCH", str(defaults.embed_batch))),
                upsert_batch=int(
                    os.getenv("UPSERT_BATCH", str(defaults.upsert_batch))),
                batch_max_retries=int(
                    os.getenv("BATCH_MAX_RETRIES", str(defaults.batch_max_retries))),
                ocr_model=os.getenv("OCR_MODEL", defaults.ocr_model),
                ocr_base_url=os.getenv("OCR_BASE_URL", defaults.ocr_base_url),
                transcription_model=os.getenv(
                    "TRANSCRIPTION_MODEL", defaults.transcription_model),
                transcription_language=os.getenv(
                    "TRANSCRIPTION_LANGUAGE", defaults.transcription_language),
                transcription_base_url=os.getenv(
                    "TRANSCRIPTION_BASE_URL", defaults.transcription_base_url),
                transcription_segment_threshold_mb=float(
                    os.getenv("TRANSCRIPTION_SEGMENT_THRESHOLD_MB",
                              str(defaults.transcription_segment_threshold_mb))),
                worker_concurrency=int(
                    os.getenv("WORKER_CONCURRENCY", str(defaults.worker_concurrency))),
                job_max_attempts=int(
                    os.getenv("JOB_MAX_ATTEMPTS", str(defaults.job_max_attempts))),
                job_retry_backoff_s=float(
                    os.getenv("JOB_RETRY_BACKOFF_S", str(defaults.job_retry_backoff_s))),
                max_consecutive_errors=int(
                    os.getenv("MAX_CONSECUTIVE_ERRORS",
                              str(defaults.max_consecutive_errors))),
                external_max_concurrent=int(
                    os.getenv("EXTERNAL_MAX_CONCURRENT",
                              str(defaults.external_max_concurrent))),
                external_max_queued=int(
                    os.getenv("EXTERNAL_MAX_QUEUED", str(defaults.external_max_queued))),
                external_queue_timeout_s=float(
                    os.getenv("EXTERNAL_QUEUE_TIMEOUT_S",
                              str(defaults.external_queue_timeout_s))),
                scratch_root=os.getenv("SCRATCH_ROOT", defaults.scratch_root),
                state_ttl_seconds=int(
                    os.getenv("STATE_TTL_SECONDS", str(defaults.state_ttl_seconds))),
                state_backend=os.getenv("STATE_BACKEND", defaults.state_backend),
                lease_ttl_ms=int(
                    os.getenv("LEASE_TTL_MS", str(defaults.lease_ttl_ms))),
                cleanup_on_success=_env_bool(
                    "CLEANUP_ON_SUCCESS", defaults.cleanup_on_success),
                cleanup_on_failure=_env_bool(
                    "CLEANUP_ON_FAILURE", defaults.cleanup_on_failure),
                openai_timeout=float(
                    os.getenv("OPENAI_TIMEOUT", str(defaults.openai_timeout))),
                log_level=os.getenv("LOG_LEVEL", defaults.log_level),
                dry_run=_env_bool("DRY_RUN", defaults.dry_run),
            )
        except ValueError as exc:
            raise ConfigError(
                f"Invalid numeric setting in environment: {exc}") from exc
        return config

    # -----------------------------------------------------------------------
    # VALIDATION
    # -----------------------------------------------------------------------

    def validate(self) -> None:

        if self.dimension not in [1536, 3072]:
            raise ConfigError(f"Invalid embedding dimension: {self.dimension}")

        if self.chunk_tokens < CHUNK_MIN_TOKENS:
            raise ConfigError(
                f"chunk_tokens too small (<{CHUNK_MIN_TOKENS})")

        if not 0 <= self.chunk_overlap_ratio <= CHUNK_MAX_OVERLAP_RATIO:
            raise ConfigError(
                f"chunk_overlap_ratio out of range (0-{CHUNK_MAX_OVERLAP_RATIO})")

        if self.page_window < 1:
            raise ConfigError("page_window must be >= 1")

        if self.embed_batch < 1 or self.embed_batch > 2048:
            raise ConfigError("embed_batch out of range (1-2048)")

        if self.upsert_batch < 1 or self.upsert_batch > 1000:
            raise ConfigError("upsert_batch out of range (1-1000)")

        if self.batch_max_retries < 0:
            raise ConfigError("batch_max_retries must be >= 0")

        if not 0 < self.ocr_safety_ratio <= 1:
            raise ConfigError("ocr_safety_ratio must be in (0, 1]")
        if self.ocr_max_pages < 1:
            raise ConfigError("ocr_max_pages must be >= 1")

        if self.worker_concurrency < 1:
            raise ConfigError("worker_concurrency must be >= 1")
        if self.job_max_attempts < 1:
            raise ConfigError("job_max_attempts must be >= 1")
        if self.max_consecutive_errors < 1:
            raise ConfigError("max_consecutive_errors must be >= 1")
        if self.external_max_concurrent < 1:
            raise ConfigError("external_max_concurrent must be >= 1")
        if self.external_max_queued < 0:
            raise ConfigError("external_max_queued must be >= 0")
        if self.external_queue_timeout_s <= 0:
            raise ConfigError("external_queue_timeout_s must be > 0")

        for name, timeout in self.operation_timeouts.items():
            if timeout.timeout_s <= 0:
                raise ConfigError(f"timeout for {name} must be > 0")
            if timeout.max_attempts < 1:
                raise ConfigError(f"max_attempts for {name} must be >= 1")

        if self.state_backend not in ("redis", "memory"):
            raise ConfigError(f"Invalid state_backend: {self.state_backend}")
        if self.state_backend == "redis" and not self.dry_run:
            if not self.redis_host or not self.redis_port:
                raise ConfigError(
                    "REDIS_HOST/REDIS_PORT not set",
                    code=ErrorCode.CONFIG_MISSING,
                )
            if self.redis_username and not self.redis_password:
                raise ConfigError(
                    "redis_password must be set when redis_username is provided"
                )
            logging.info(
                "Redis target: %s:%s",
                self.redis_host,
                self.redis_port,
            )
        else:
            logging.warning(
                "state_backend=memory: job state will not survive a restart.")

        longest_phase_ms = 1000 * max(
            (t.timeout_s * t.max_attempts for t in self.operation_timeouts.values()),
            default=0,
        )
        if self.lease_ttl_ms < longest_phase_ms:
            logging.warning(
                "lease_ttl_ms (%d) is shorter than the longest operation budget (%.0fms); "
                "the lease relies on auto-renewal.",
                self.lease_ttl_ms,
                longest_phase_ms,
            )

    def require(self, attr: str, env_name: Optional[str] = None) -> str:
        """Return a credential, raising CONFIG_MISSING when it is unset."""
        value = getattr(self, attr, "")
        if not value:
            raise ConfigError(
                f"{env_name or attr.upper()} not set",
                code=ErrorCode.CONFIG_MISSING,
            )
        return value


__all__ = [
    "OperationTimeout",
    "default_operation_timeouts",
    "ProcessorConfig",
]
