"""
Tests for the error taxonomy and its standardised responses.
"""

import errno

import pytest

from docproc_exceptions import (
    ERROR_CATEGORIES,
    USER_MESSAGES,
    BatchTooLargeError,
    ConfigError,
    DocProcError,
    ErrorCategory,
    ErrorCode,
    FileAccessError,
    OcrError,
    ProcessingError,
    ProcessingTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
    UnexpectedError,
    create_error_response,
    is_terminal,
    standardise_error,
    wrap_exception,
)


def test_every_code_has_a_category_and_message():
    for code in ErrorCode:
        assert code in ERROR_CATEGORIES
        assert USER_MESSAGES[code]


@pytest.mark.parametrize("error,code,category,retryable", [
    (RateLimitedError("429"), ErrorCode.API_RATE_LIMITED, ErrorCategory.EXTERNAL_SERVICE, True),
    (BatchTooLargeError("413"), ErrorCode.BATCH_TOO_LARGE, ErrorCategory.EXTERNAL_SERVICE, False),
    (OcrError("bad scan"), ErrorCode.OCR_FAILED, ErrorCategory.PROCESSING, False),
    (FileAccessError("403"), ErrorCode.FILE_ACCESS_ERROR, ErrorCategory.VALIDATION, False),
    (ConfigError("no key"), ErrorCode.CONFIG_INVALID, ErrorCategory.CONFIGURATION, False),
])
def test_exception_classes_carry_codes(error, code, category, retryable):
    assert error.code is code
    assert error.category is category
    assert error.retryable is retryable


def test_explicit_code_overrides_default():
    error = ProcessingTimeoutError("slow", code=ErrorCode.OCR_TIMEOUT)

    assert error.code is ErrorCode.OCR_TIMEOUT
    assert error.category is ErrorCategory.TIMEOUT
    assert error.user_message == USER_MESSAGES[ErrorCode.OCR_TIMEOUT]


@pytest.mark.parametrize("raw,expected_type,code", [
    (TimeoutError("read timed out"), ProcessingTimeoutError, ErrorCode.TIMEOUT_ERROR),
    (ConnectionError("reset"), ServiceUnavailableError, ErrorCode.API_SERVICE_UNAVAILABLE),
    (MemoryError(), DocProcError, ErrorCode.MEMORY_LIMIT_EXCEEDED),
    (FileNotFoundError("gone"), FileAccessError, ErrorCode.FILE_ACCESS_ERROR),
    (OSError(errno.ENOSPC, "No space left on device"), DocProcError,
     ErrorCode.DISK_SPACE_EXCEEDED),
    (ValueError("bad"), ProcessingError, ErrorCode.INTERNAL_ERROR),
    (RuntimeError("odd"), UnexpectedError, ErrorCode.UNKNOWN_ERROR),
])
def test_wrap_exception_maps_builtin_errors(raw, expected_type, code):
    wrapped = wrap_exception(raw)

    assert isinstance(wrapped, expected_type)
    assert wrapped.code is code


def test_wrap_exception_keeps_docproc_errors():
    error = RateLimitedError("429")

    assert wrap_exception(error) is error


def test_wrap_exception_uses_fallback_code():
    assert wrap_exception(RuntimeError("odd"), code=ErrorCode.STORAGE_FAILED).code is \
        ErrorCode.STORAGE_FAILED


def test_error_response_hides_diagnostics():
    response = create_error_response(
        ProcessingError("Traceback: secret path /srv/app", code=ErrorCode.EMBEDDING_FAILED))

    assert response["success"] is False
    assert response["error"]["code"] == "EMBEDDING_FAILED"
    assert response["error"]["category"] == "processing"
    assert "secret" not in response["error"]["message"]
    assert response["error"]["message"] == USER_MESSAGES[ErrorCode.EMBEDDING_FAILED]


def test_standardised_error_record():
    record = standardise_error(RateLimitedError("429", details={"service": "embedding"}))
    payload = record.to_dict()

    assert payload["code"] == "API_RATE_LIMITED"
    assert payload["retryable"] is True
    assert payload["terminal"] is False
    assert payload["details"] == {"service": "embedding"}
    assert payload["timestamp"]


@pytest.mark.parametrize("error,terminal", [
    (FileAccessError("404"), True),
    (ConfigError("no key"), True),
    (RateLimitedError("429"), False),
    (OcrError("bad scan"), False),
])
def test_is_terminal(error, terminal):
    assert is_terminal(error) is terminal
