"""
Error taxonomy for the document processor.

Every failure surfaced by the pipeline is a DocProcError carrying a fixed
ErrorCode, the ErrorCategory it belongs to, a retryability flag and a
user-facing message that is kept separate from the diagnostic message.
Backend adapters translate provider exceptions into these classes at the
boundary so the core only ever deals with the taxonomy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    PROCESSING = "processing"
    EXTERNAL_SERVICE = "external_service"
    RESOURCE_LIMIT = "resource_limit"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorCode(str, Enum):
    # Validation
    FILE_ACCESS_ERROR = "FILE_ACCESS_ERROR"
    MISSING_CONTENT_TYPE = "MISSING_CONTENT_TYPE"
    UNSUPPORTED_MIME_TYPE = "UNSUPPORTED_MIME_TYPE"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Processing
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    OCR_FAILED = "OCR_FAILED"
    TRANSCRIPTION_FAILED = "TRANSCRIPTION_FAILED"
    CHUNKING_FAILED = "CHUNKING_FAILED"
    EMBEDDING_FAILED = "EMBEDDING_FAILED"
    STORAGE_FAILED = "STORAGE_FAILED"

    # Timeouts
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    FILE_DOWNLOAD_TIMEOUT = "FILE_DOWNLOAD_TIMEOUT"
    OCR_TIMEOUT = "OCR_TIMEOUT"
    TRANSCRIPTION_TIMEOUT = "TRANSCRIPTION_TIMEOUT"
    PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"

    # External services
    API_RATE_LIMITED = "API_RATE_LIMITED"
    API_SERVICE_UNAVAILABLE = "API_SERVICE_UNAVAILABLE"
    API_AUTHENTICATION_FAILED = "API_AUTHENTICATION_FAILED"
    BATCH_TOO_LARGE = "BATCH_TOO_LARGE"

    # Resource limits
    MEMORY_LIMIT_EXCEEDED = "MEMORY_LIMIT_EXCEEDED"
    DISK_SPACE_EXCEEDED = "DISK_SPACE_EXCEEDED"
    CONCURRENCY_LIMIT_EXCEEDED = "CONCURRENCY_LIMIT_EXCEEDED"

    # Configuration
    CONFIG_MISSING = "CONFIG_MISSING"
    CONFIG_INVALID = "CONFIG_INVALID"

    # Unknown
    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.FILE_ACCESS_ERROR: ErrorCategory.VALIDATION,
    ErrorCode.MISSING_CONTENT_TYPE: ErrorCategory.VALIDATION,
    ErrorCode.UNSUPPORTED_MIME_TYPE: ErrorCategory.VALIDATION,
    ErrorCode.FILE_TOO_LARGE: ErrorCategory.VALIDATION,
    ErrorCode.VALIDATION_ERROR: ErrorCategory.VALIDATION,
    ErrorCode.EXTRACTION_FAILED: ErrorCategory.PROCESSING,
    ErrorCode.OCR_FAILED: ErrorCategory.PROCESSING,
    ErrorCode.TRANSCRIPTION_FAILED: ErrorCategory.PROCESSING,
    ErrorCode.CHUNKING_FAILED: ErrorCategory.PROCESSING,
    ErrorCode.EMBEDDING_FAILED: ErrorCategory.PROCESSING,
    ErrorCode.STORAGE_FAILED: ErrorCategory.PROCESSING,
    ErrorCode.TIMEOUT_ERROR: ErrorCategory.TIMEOUT,
    ErrorCode.FILE_DOWNLOAD_TIMEOUT: ErrorCategory.TIMEOUT,
    ErrorCode.OCR_TIMEOUT: ErrorCategory.TIMEOUT,
    ErrorCode.TRANSCRIPTION_TIMEOUT: ErrorCategory.TIMEOUT,
    ErrorCode.PROCESSING_TIMEOUT: ErrorCategory.TIMEOUT,
    ErrorCode.API_RATE_LIMITED: ErrorCategory.EXTERNAL_SERVICE,
    ErrorCode.API_SERVICE_UNAVAILABLE: ErrorCategory.EXTERNAL_SERVICE,
    ErrorCode.API_AUTHENTICATION_FAILED: ErrorCategory.EXTERNAL_SERVICE,
    ErrorCode.BATCH_TOO_LARGE: ErrorCategory.EXTERNAL_SERVICE,
    ErrorCode.MEMORY_LIMIT_EXCEEDED: ErrorCategory.RESOURCE_LIMIT,
    ErrorCode.DISK_SPACE_EXCEEDED: ErrorCategory.RESOURCE_LIMIT,
    ErrorCode.CONCURRENCY_LIMIT_EXCEEDED: ErrorCategory.RESOURCE_LIMIT,
    ErrorCode.CONFIG_MISSING: ErrorCategory.CONFIGURATION,
    ErrorCode.CONFIG_INVALID: ErrorCategory.CONFIGURATION,
    ErrorCode.UNKNOWN_ERROR: ErrorCategory.UNKNOWN,
    ErrorCode.INTERNAL_ERROR: ErrorCategory.UNKNOWN,
}

RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.API_RATE_LIMITED,
    ErrorCode.API_SERVICE_UNAVAILABLE,
    ErrorCode.TIMEOUT_ERROR,
    ErrorCode.FILE_DOWNLOAD_TIMEOUT,
    ErrorCode.OCR_TIMEOUT,
    ErrorCode.TRANSCRIPTION_TIMEOUT,
    ErrorCode.PROCESSING_TIMEOUT,
    ErrorCode.CONCURRENCY_LIMIT_EXCEEDED,
})

# Errors that no further attempt can fix: the input or deployment is wrong.
TERMINAL_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.FILE_ACCESS_ERROR,
    ErrorCode.MISSING_CONTENT_TYPE,
    ErrorCode.UNSUPPORTED_MIME_TYPE,
    ErrorCode.FILE_TOO_LARGE,
    ErrorCode.VALIDATION_ERROR,
    ErrorCode.API_AUTHENTICATION_FAILED,
    ErrorCode.CONFIG_MISSING,
    ErrorCode.CONFIG_INVALID,
})

USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.FILE_ACCESS_ERROR: "The file could not be accessed. Please try uploading it again.",
    ErrorCode.MISSING_CONTENT_TYPE: "The file type could not be determined. Please check the file and try again.",
    ErrorCode.UNSUPPORTED_MIME_TYPE: "This file type is not supported. Please upload a PDF, Word, Excel, PowerPoint, text, CSV, audio or video file.",
    ErrorCode.FILE_TOO_LARGE: "The file is too large to process. Please upload a smaller file.",
    ErrorCode.VALIDATION_ERROR: "The file failed validation. Please check the file and try again.",
    ErrorCode.EXTRACTION_FAILED: "We could not extract text from this document.",
    ErrorCode.OCR_FAILED: "Text recognition failed for this document.",
    ErrorCode.TRANSCRIPTION_FAILED: "We could not transcribe this recording.",
    ErrorCode.CHUNKING_FAILED: "The document text could not be prepared for search.",
    ErrorCode.EMBEDDING_FAILED: "The document could not be indexed for search.",
    ErrorCode.STORAGE_FAILED: "The document could not be saved to the search index.",
    ErrorCode.TIMEOUT_ERROR: "The operation took too long. It will be retried automatically.",
    ErrorCode.FILE_DOWNLOAD_TIMEOUT: "Downloading the file took too long. It will be retried automatically.",
    ErrorCode.OCR_TIMEOUT: "Text recognition took too long. It will be retried automatically.",
    ErrorCode.TRANSCRIPTION_TIMEOUT: "Transcription took too long. It will be retried automatically.",
    ErrorCode.PROCESSING_TIMEOUT: "Processing took too long. It will be retried automatically.",
    ErrorCode.API_RATE_LIMITED: "The processing service is busy. The document will be retried shortly.",
    ErrorCode.API_SERVICE_UNAVAILABLE: "A processing service is temporarily unavailable. The document will be retried shortly.",
    ErrorCode.API_AUTHENTICATION_FAILED: "The processing service rejected our credentials. Please contact support.",
    ErrorCode.BATCH_TOO_LARGE: "A processing request was too large and is being resized.",
    ErrorCode.MEMORY_LIMIT_EXCEEDED: "The document needs more memory than is available.",
    ErrorCode.DISK_SPACE_EXCEEDED: "There is not enough disk space to process the document.",
    ErrorCode.CONCURRENCY_LIMIT_EXCEEDED: "Too many documents are being processed. The document will be retried shortly.",
    ErrorCode.CONFIG_MISSING: "The processor is not configured correctly. Please contact support.",
    ErrorCode.CONFIG_INVALID: "The processor is not configured correctly. Please contact support.",
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred while processing the document.",
    ErrorCode.INTERNAL_ERROR: "An internal error occurred while processing the document.",
}


def category_for(code: ErrorCode) -> ErrorCategory:
    return ERROR_CATEGORIES.get(code, ErrorCategory.UNKNOWN)


def is_retryable_code(code: ErrorCode) -> bool:
    return code in RETRYABLE_CODES


def user_message_for(code: ErrorCode) -> str:
    return USER_MESSAGES.get(code, USER_MESSAGES[ErrorCode.UNKNOWN_ERROR])


# ============================================================================
# EXCEPTION HIERARCHY
# ============================================================================


class DocProcError(Exception):
    """Base exception for the document processor."""

    default_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        user_message: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.user_message = user_message or user_message_for(self.code)
        self.details = dict(details or {})

    @property
    def category(self) -> ErrorCategory:
        return category_for(self.code)

    @property
    def retryable(self) -> bool:
        return is_retryable_code(self.code)

    @property
    def terminal(self) -> bool:
        return self.code in TERMINAL_CODES

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}: {self.message})"


class ValidationError(DocProcError):
    """Raised when a submitted file or payload fails validation."""

    default_code = ErrorCode.VALIDATION_ERROR


class UnsupportedMimeTypeError(ValidationError):
    default_code = ErrorCode.UNSUPPORTED_MIME_TYPE


class FileTooLargeError(ValidationError):
    default_code = ErrorCode.FILE_TOO_LARGE


class FileAccessError(ValidationError):
    default_code = ErrorCode.FILE_ACCESS_ERROR


class ConfigError(DocProcError):
    """Raised when configuration is missing or invalid."""

    default_code = ErrorCode.CONFIG_INVALID


class ProcessingError(DocProcError):
    """Raised when a pipeline phase fails on its own terms."""

    default_code = ErrorCode.INTERNAL_ERROR


class ExtractionError(ProcessingError):
    default_code = ErrorCode.EXTRACTION_FAILED


class OcrError(ExtractionError):
    default_code = ErrorCode.OCR_FAILED


class TranscriptionError(ExtractionError):
    default_code = ErrorCode.TRANSCRIPTION_FAILED


class ChunkingError(ProcessingError):
    default_code = ErrorCode.CHUNKING_FAILED


class EmbeddingError(ProcessingError):
    default_code = ErrorCode.EMBEDDING_FAILED


class StorageError(ProcessingError):
    default_code = ErrorCode.STORAGE_FAILED


class StateStoreError(StorageError):
    """Raised when the job state store cannot be read or written."""


class ProcessingTimeoutError(DocProcError):
    default_code = ErrorCode.TIMEOUT_ERROR


class ExternalServiceError(DocProcError):
    """Raised when an external service fails (OCR/transcription/OpenAI/Pinecone)."""

    default_code = ErrorCode.API_SERVICE_UNAVAILABLE


class RateLimitedError(ExternalServiceError):
    default_code = ErrorCode.API_RATE_LIMITED


class ServiceUnavailableError(ExternalServiceError):
    default_code = ErrorCode.API_SERVICE_UNAVAILABLE


class AuthenticationFailedError(ExternalServiceError):
    default_code = ErrorCode.API_AUTHENTICATION_FAILED


class BatchTooLargeError(ExternalServiceError):
    """Raised when a provider rejects a request because the batch is too big."""

    default_code = ErrorCode.BATCH_TOO_LARGE


class ConcurrencyLimitError(DocProcError):
    default_code = ErrorCode.CONCURRENCY_LIMIT_EXCEEDED


class JobLeaseError(DocProcError):
    """Raised when a job lease cannot be acquired or has been lost."""

    default_code = ErrorCode.CONCURRENCY_LIMIT_EXCEEDED


class UnexpectedError(DocProcError):
    """Fallback for unexpected exceptions raised during processing."""

    default_code = ErrorCode.UNKNOWN_ERROR


def wrap_exception(
    error: BaseException,
    *,
    code: Optional[ErrorCode] = None,
) -> DocProcError:
    """
    Map non-docproc exceptions to suitable docproc_exceptions types.
    Use this to standardise error handling in pipeline paths. When ``code``
    is given it is used for otherwise unclassified errors.
    """
    if isinstance(error, DocProcError):
        return error

    message = str(error) or type(error).__name__

    if isinstance(error, TimeoutError):
        return ProcessingTimeoutError(message, code=ErrorCode.TIMEOUT_ERROR)

    if isinstance(error, ConnectionError):
        return ServiceUnavailableError(message)

    if isinstance(error, MemoryError):
        return DocProcError(message, code=ErrorCode.MEMORY_LIMIT_EXCEEDED)

    if isinstance(error, (FileNotFoundError, PermissionError)):
        return FileAccessError(message)

    if isinstance(error, OSError) and getattr(error, "errno", None) == 28:
        return DocProcError(message, code=ErrorCode.DISK_SPACE_EXCEEDED)

    if code is not None:
        return DocProcError(message, code=code)

    if isinstance(error, (ValueError, KeyError, TypeError, UnicodeError)):
        return ProcessingError(message, code=ErrorCode.INTERNAL_ERROR)

    return UnexpectedError(message)


# ============================================================================
# STANDARDISED ERROR RECORDS
# ============================================================================


@dataclass(frozen=True)
class StandardisedError:
    code: ErrorCode
    category: ErrorCategory
    message: str
    user_message: str
    retryable: bool
    terminal: bool
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "retryable": self.retryable,
            "terminal": self.terminal,
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }


def standardise_error(error: BaseException) -> StandardisedError:
    wrapped = wrap_exception(error)
    return StandardisedError(
        code=wrapped.code,
        category=wrapped.category,
        message=wrapped.message,
        user_message=wrapped.user_message,
        retryable=wrapped.retryable,
        terminal=wrapped.terminal,
        timestamp=datetime.now(timezone.utc).isoformat(),
        details=wrapped.details,
    )


def create_error_response(error: BaseException) -> dict[str, Any]:
    """Build the user-facing error body; diagnostic text stays in the logs."""
    std = standardise_error(error)
    return {
        "success": False,
        "error": {
            "code": std.code.value,
            "category": std.category.value,
            "message": std.user_message,
            "retryable": std.retryable,
            "timestamp": std.timestamp,
        },
    }


def is_terminal(error: BaseException) -> bool:
    return wrap_exception(error).terminal


__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "ERROR_CATEGORIES",
    "RETRYABLE_CODES",
    "TERMINAL_CODES",
    "USER_MESSAGES",
    "category_for",
    "is_retryable_code",
    "user_message_for",
    "DocProcError",
    "ValidationError",
    "UnsupportedMimeTypeError",
    "FileTooLargeError",
    "FileAccessError",
    "ConfigError",
    "ProcessingError",
    "ExtractionError",
    "OcrError",
    "TranscriptionError",
    "ChunkingError",
    "EmbeddingError",
    "StorageError",
    "StateStoreError",
    "ProcessingTimeoutError",
    "ExternalServiceError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "AuthenticationFailedError",
    "BatchTooLargeError",
    "ConcurrencyLimitError",
    "JobLeaseError",
    "UnexpectedError",
    "wrap_exception",
    "StandardisedError",
    "standardise_error",
    "create_error_response",
    "is_terminal",
]
