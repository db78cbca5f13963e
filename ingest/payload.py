"""
Job submission payload.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from config import (
    CHUNK_MAX_OVERLAP_RATIO,
    CHUNK_MIN_TOKENS,
    SCOPE_TYPE_CASE,
    SCOPE_TYPES,
    ProcessorConfig,
)
from docproc_exceptions import ValidationError


@dataclass(frozen=True)
class ChunkingOptions:
    max_tokens: int
    overlap_ratio: float
    page_window: int

    @property
    def overlap_tokens(self) -> int:
        return int(self.max_tokens * self.overlap_ratio)

    @classmethod
    def from_config(cls, config: ProcessorConfig) -> "ChunkingOptions":
        return cls(
            max_tokens=config.chunk_tokens,
            overlap_ratio=config.chunk_overlap_ratio,
            page_window=config.page_window,
        )

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "ChunkingOptions":
        if not overrides:
            return self
        try:
            merged = replace(
                self,
                max_tokens=int(overrides.get("maxTokens", overrides.get("max_tokens", self.max_tokens))),
                overlap_ratio=float(overrides.get(
                    "overlapRatio", overrides.get("overlap_ratio", self.overlap_ratio))),
                page_window=int(overrides.get(
                    "pageWindow", overrides.get("page_window", self.page_window))),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid chunking options: {exc}") from exc
        merged.validate()
        return merged

    def validate(self) -> None:
        if self.max_tokens < CHUNK_MIN_TOKENS:
            raise ValidationError(f"chunking.maxTokens must be >= {CHUNK_MIN_TOKENS}")
        if not 0 <= self.overlap_ratio <= CHUNK_MAX_OVERLAP_RATIO:
            raise ValidationError(
                f"chunking.overlapRatio must be between 0 and {CHUNK_MAX_OVERLAP_RATIO}")
        if self.page_window < 1:
            raise ValidationError("chunking.pageWindow must be >= 1")


@dataclass
class JobPayload:
    owner_id: str
    scope_id: str
    document_id: str
    source_url: Optional[str] = None
    file_bytes: Optional[bytes] = field(default=None, repr=False)
    declared_content_type: Optional[str] = None
    original_file_name: Optional[str] = None
    callback_url: Optional[str] = None
    callback_signing_secret: Optional[str] = field(default=None, repr=False)
    transcript_callback_url: Optional[str] = None
    scope_type: str = SCOPE_TYPE_CASE
    chunking: Optional[dict[str, Any]] = None

    def validate(self) -> None:
        for name in ("owner_id", "scope_id", "document_id"):
            if not getattr(self, name):
                raise ValidationError(f"{name} is required")
        if not self.source_url and self.file_bytes is None:
            raise ValidationError("Either sourceUrl or file bytes must be supplied")
        if self.scope_type not in SCOPE_TYPES:
            raise ValidationError(f"Invalid scope type: {self.scope_type}")

    def chunking_options(self, config: ProcessorConfig) -> ChunkingOptions:
        return ChunkingOptions.from_config(config).merged(self.chunking)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "JobPayload":
        """Build from the submission JSON (camelCase) or snake_case keys."""

        def pick(*keys: str) -> Any:
            for key in keys:
                if payload.get(key) not in (None, ""):
                    return payload[key]
            return None

        file_bytes = pick("fileBuffer", "file_bytes")
        if isinstance(file_bytes, str):
            file_bytes = file_bytes.encode("utf-8")
        job = cls(
            owner_id=str(pick("ownerId", "owner_id", "userId") or ""),
            scope_id=str(pick("scopeId", "scope_id", "caseId") or ""),
            document_id=str(pick("documentIdentifier", "documentId", "document_id") or ""),
            source_url=pick("sourceUrl", "source_url", "fileUrl"),
            file_bytes=file_bytes,
            declared_content_type=pick("declaredContentType", "declared_content_type", "mimeType"),
            original_file_name=pick("originalFileName", "original_file_name", "fileName"),
            callback_url=pick("callbackUrl", "callback_url"),
            callback_signing_secret=pick("callbackSigningSecret", "callback_signing_secret"),
            transcript_callback_url=pick("transcriptCallbackUrl", "transcript_callback_url"),
            scope_type=str(pick("scopeType", "scope_type") or SCOPE_TYPE_CASE),
            chunking=pick("chunking"),
        )
        job.validate()
        return job


__all__ = [
    "ChunkingOptions",
    "JobPayload",
]
