# VectorStore port
from __future__ import annotations

from threading import Lock
from typing import Any, Optional, Protocol

from docproc_exceptions import (
    AuthenticationFailedError,
    BatchTooLargeError,
    DocProcError,
    ProcessingTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
    StorageError,
)

_SIZE_MARKERS = (
    "request size",
    "message length",
    "too large",
    "exceeds the maximum",
    "payload",
)


class VectorStore(Protocol):
    def upsert(self, vectors: list[dict[str, Any]], namespace: Optional[str] = None) -> Any: ...


def _normalise_ns(namespace: Optional[str]) -> Optional[str]:
    if namespace in ("", None):
        return None
    return namespace


def classify_pinecone_error(error: Exception) -> DocProcError:
    """
    Pinecone raises ApiException-style errors carrying an HTTP ``status``;
    classify on that and the message rather than on SDK class names, which
    move between client releases.
    """
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    message = str(error)
    lowered = message.lower()
    details = {"service": "pinecone", "status": status}
    if status == 429 or "rate limit" in lowered or "too many requests" in lowered:
        return RateLimitedError(message, details=details)
    if status in (401, 403):
        return AuthenticationFailedError(message, details=details)
    if status == 413 or any(marker in lowered for marker in _SIZE_MARKERS):
        return BatchTooLargeError(message, details=details)
    if isinstance(error, TimeoutError) or status in (408, 504):
        return ProcessingTimeoutError(message, details=details)
    if isinstance(error, ConnectionError) or (isinstance(status, int) and status >= 500):
        return ServiceUnavailableError(message, details=details)
    return StorageError(message, details=details)


class PineconeVectorStore:
    """Thin wrapper around a Pinecone index with namespace normalisation."""

    def __init__(self, index: Any, *, namespace: Optional[str] = None):
        self._index = index
        self._namespace = namespace

    def upsert(self, vectors: list[dict[str, Any]], namespace: Optional[str] = None) -> Any:
        try:
            return self._index.upsert(
                vectors=vectors,
                namespace=_normalise_ns(namespace or self._namespace),
            )
        except Exception as error:  # pylint: disable=broad-except
            raise classify_pinecone_error(error) from error


class InMemoryVectorStore:
    """Dictionary-backed store keyed by point id; upsert overwrites."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.points: dict[str, dict[str, Any]] = {}
        self.upsert_calls = 0

    def upsert(self, vectors: list[dict[str, Any]], namespace: Optional[str] = None) -> Any:
        with self._lock:
            self.upsert_calls += 1
            for vector in vectors:
                self.points[vector["id"]] = dict(vector)
        return {"upserted_count": len(vectors)}


__all__ = [
    "VectorStore",
    "PineconeVectorStore",
    "InMemoryVectorStore",
    "classify_pinecone_error",
]
