# Embedder port
from __future__ import annotations

from typing import Optional, Protocol

from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    OpenAI,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)

from docproc_exceptions import (
    AuthenticationFailedError,
    BatchTooLargeError,
    DocProcError,
    EmbeddingError,
    ErrorCode,
    ProcessingTimeoutError,
    RateLimitedError,
    ServiceUnavailableError,
)

# Provider wording for "too many inputs / tokens in one request".
_BATCH_TOO_LARGE_MARKERS = (
    "maximum context length",
    "max_tokens_per_request",
    "tokens per request",
    "too many inputs",
    "too many tokens",
    "request too large",
    "maximum request size",
    "array too long",
)


class Embedder(Protocol):
    def embed_texts(
        self,
        texts: list[str],
        *,
        model: str,
        timeout: Optional[float] = None,
    ) -> list[list[float]]: ...


def _looks_like_batch_too_large(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _BATCH_TOO_LARGE_MARKERS)


def classify_openai_error(error: Exception) -> DocProcError:
    """Translate an OpenAI SDK exception into the processor taxonomy."""
    message = str(error)
    if isinstance(error, RateLimitError):
        return RateLimitedError(message, details={"service": "openai"})
    if isinstance(error, APITimeoutError):
        return ProcessingTimeoutError(message, details={"service": "openai"})
    if isinstance(error, APIConnectionError):
        return ServiceUnavailableError(message, details={"service": "openai"})
    if isinstance(error, (AuthenticationError, PermissionDeniedError)):
        return AuthenticationFailedError(message, details={"service": "openai"})
    if isinstance(error, (BadRequestError, UnprocessableEntityError)):
        if _looks_like_batch_too_large(error):
            return BatchTooLargeError(message, details={"service": "openai"})
        return EmbeddingError(message, details={"service": "openai"})
    if isinstance(error, APIStatusError) and error.status_code == 413:
        return BatchTooLargeError(message, details={"service": "openai"})
    if isinstance(error, InternalServerError):
        return ServiceUnavailableError(message, details={"service": "openai"})
    if isinstance(error, APIError):
        return ServiceUnavailableError(message, details={"service": "openai"})
    return EmbeddingError(message, code=ErrorCode.EMBEDDING_FAILED)


class OpenAIEmbedder:
    """
    OpenAI embeddings, one request per call.

    Retries, backoff and batch shrinking are owned by the caller's batch
    policy; this adapter only classifies failures.
    """

    def __init__(self, client: OpenAI):
        self._client = client

    def embed_texts(
        self,
        texts: list[str],
        *,
        model: str,
        timeout: Optional[float] = None,
    ) -> list[list[float]]:
        if not texts:
            return []
        try:
            res = self._client.embeddings.create(
                model=model,
                input=texts,
                timeout=timeout,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise classify_openai_error(error) from error

        vectors = [d.embedding for d in sorted(res.data, key=lambda d: d.index)]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding response size mismatch: sent {len(texts)}, got {len(vectors)}"
            )
        return vectors


__all__ = [
    "Embedder",
    "OpenAIEmbedder",
    "classify_openai_error",
]
