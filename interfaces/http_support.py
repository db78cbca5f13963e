# HTTP helpers shared by the httpx-backed adapters
from __future__ import annotations

from typing import Optional

import httpx

from config.constant import HTTP_CONNECT_TIMEOUT_S
from docproc_exceptions import (
    AuthenticationFailedError,
    BatchTooLargeError,
    DocProcError,
    ErrorCode,
    ExternalServiceError,
    FileAccessError,
    ProcessingTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
)


def build_timeout(total_s: float) -> httpx.Timeout:
    return httpx.Timeout(total_s, connect=min(HTTP_CONNECT_TIMEOUT_S, total_s))


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text[:500]
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""


def error_for_status(
    response: httpx.Response,
    service: str,
    *,
    failure_code: ErrorCode,
    not_found_is_access_error: bool = False,
) -> Optional[DocProcError]:
    """Classify a non-2xx response; returns None for success codes."""
    status = response.status_code
    if status < 400:
        return None
    body = _response_text(response)
    message = f"{service} returned HTTP {status}: {body}".strip()
    details = {"service": service, "status": status}
    if status == 429:
        return RateLimitedError(message, details=details)
    if status in (401, 403):
        if not_found_is_access_error:
            return FileAccessError(message, details=details)
        return AuthenticationFailedError(message, details=details)
    if status == 404 and not_found_is_access_error:
        return FileAccessError(message, details=details)
    if status == 413:
        return BatchTooLargeError(message, details=details)
    if status in (408, 504):
        return ProcessingTimeoutError(message, details=details)
    if status >= 500:
        return ServiceUnavailableError(message, details=details)
    return ExternalServiceError(message, code=failure_code, details=details)


def raise_for_service_status(
    response: httpx.Response,
    service: str,
    *,
    failure_code: ErrorCode,
    not_found_is_access_error: bool = False,
) -> None:
    error = error_for_status(
        response,
        service,
        failure_code=failure_code,
        not_found_is_access_error=not_found_is_access_error,
    )
    if error is not None:
        raise error


def translate_transport_error(
    error: httpx.HTTPError,
    service: str,
    *,
    timeout_code: ErrorCode = ErrorCode.TIMEOUT_ERROR,
) -> DocProcError:
    if isinstance(error, httpx.TimeoutException):
        return ProcessingTimeoutError(
            f"{service} request timed out: {error}",
            code=timeout_code,
            details={"service": service},
        )
    return ServiceUnavailableError(
        f"{service} request failed: {error}",
        details={"service": service},
    )


__all__ = [
    "build_timeout",
    "error_for_status",
    "raise_for_service_status",
    "translate_transport_error",
]
