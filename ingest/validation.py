"""
MIME resolution, classification and size validation for submitted files.
"""

from __future__ import annotations

import mimetypes
import os
from enum import Enum
from typing import Optional

from config import (
    CSV_MIME_TYPES,
    DEFAULT_FILE_SIZE_LIMIT_MB,
    FILE_SIZE_LIMITS_MB,
    LEGACY_DOC_MESSAGE,
    MB,
    MIME_DOCX,
    MIME_LEGACY_DOC,
    MIME_PDF,
    MIME_PPTX,
    MIME_XLSX,
    SUPPORTED_MIME_PREFIXES,
    SUPPORTED_MIME_TYPES,
    TEXT_MIME_TYPES,
)
from docproc_exceptions import (
    ErrorCode,
    FileTooLargeError,
    UnsupportedMimeTypeError,
    ValidationError,
)

# mimetypes' tables depend on the host; pin the formats we route on.
_EXTENSION_TYPES: dict[str, str] = {
    ".pdf": MIME_PDF,
    ".docx": MIME_DOCX,
    ".xlsx": MIME_XLSX,
    ".pptx": MIME_PPTX,
    ".doc": MIME_LEGACY_DOC,
    ".csv": "text/csv",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".json": "application/json",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
}


class MimeKind(str, Enum):
    TEXT = "text"
    DOCX = "docx"
    XLSX = "xlsx"
    PPTX = "pptx"
    CSV = "csv"
    AUDIO = "audio"
    VIDEO = "video"
    PDF = "pdf"
    LEGACY_DOC = "legacy_doc"
    OTHER_TEXT = "other_text"
    UNSUPPORTED = "unsupported"


def normalise_mime(mime_type: Optional[str]) -> str:
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def guess_mime_from_name(file_name: Optional[str]) -> str:
    if not file_name:
        return ""
    extension = os.path.splitext(file_name)[1].lower()
    if extension in _EXTENSION_TYPES:
        return _EXTENSION_TYPES[extension]
    guessed, _ = mimetypes.guess_type(file_name)
    return normalise_mime(guessed)


def resolve_mime_type(declared: Optional[str], file_name: Optional[str] = None) -> str:
    """
    Use the declared type, falling back to the file name. A generic
    ``application/octet-stream`` declaration defers to the file name too.
    """
    mime = normalise_mime(declared)
    if not mime or mime == "application/octet-stream":
        mime = guess_mime_from_name(file_name) or mime
    if not mime:
        raise ValidationError(
            "No content type declared and none could be inferred from the file name",
            code=ErrorCode.MISSING_CONTENT_TYPE,
            details={"file_name": file_name},
        )
    return mime


def classify_mime(mime_type: str) -> MimeKind:
    mime = normalise_mime(mime_type)
    if mime in TEXT_MIME_TYPES:
        return MimeKind.TEXT
    if mime == MIME_DOCX:
        return MimeKind.DOCX
    if mime == MIME_XLSX:
        return MimeKind.XLSX
    if mime == MIME_PPTX:
        return MimeKind.PPTX
    if mime in CSV_MIME_TYPES:
        return MimeKind.CSV
    if mime.startswith("audio/"):
        return MimeKind.AUDIO
    if mime.startswith("video/"):
        return MimeKind.VIDEO
    if mime == MIME_PDF:
        return MimeKind.PDF
    if mime == MIME_LEGACY_DOC:
        return MimeKind.LEGACY_DOC
    if mime in SUPPORTED_MIME_TYPES or mime.startswith(SUPPORTED_MIME_PREFIXES):
        return MimeKind.OTHER_TEXT
    return MimeKind.UNSUPPORTED


def validate_mime_type(mime_type: str) -> MimeKind:
    kind = classify_mime(mime_type)
    if kind is MimeKind.LEGACY_DOC:
        raise UnsupportedMimeTypeError(
            f"Legacy Word document rejected: {mime_type}",
            user_message=LEGACY_DOC_MESSAGE,
            details={"mime_type": mime_type},
        )
    if kind is MimeKind.UNSUPPORTED:
        raise UnsupportedMimeTypeError(
            f"Unsupported MIME type: {mime_type}",
            details={"mime_type": mime_type},
        )
    return kind


def size_limit_bytes(mime_type: str) -> int:
    mime = normalise_mime(mime_type)
    limit_mb = FILE_SIZE_LIMITS_MB.get(mime)
    if limit_mb is None:
        for prefix in ("audio/", "video/"):
            if mime.startswith(prefix):
                limit_mb = FILE_SIZE_LIMITS_MB[prefix]
                break
    return int((limit_mb or DEFAULT_FILE_SIZE_LIMIT_MB) * MB)


def check_file_size(mime_type: str, size_bytes: int) -> None:
    limit = size_limit_bytes(mime_type)
    if size_bytes > limit:
        raise FileTooLargeError(
            f"File of {size_bytes / MB:.1f}MB exceeds the {limit / MB:.0f}MB limit for {mime_type}",
            details={"size_bytes": size_bytes, "limit_bytes": limit, "mime_type": mime_type},
        )


__all__ = [
    "MimeKind",
    "normalise_mime",
    "guess_mime_from_name",
    "resolve_mime_type",
    "classify_mime",
    "validate_mime_type",
    "size_limit_bytes",
    "check_file_size",
]
