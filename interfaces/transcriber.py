# Transcriber port
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx

from config.constant import (
    DOWNLOAD_CHUNK_BYTES,
    TRANSCRIPTION_BASE_URL,
    TRANSCRIPTION_LANGUAGE,
    TRANSCRIPTION_MODEL,
)
from docproc_exceptions import ErrorCode, TranscriptionError
from .http_support import (
    build_timeout,
    raise_for_service_status,
    translate_transport_error,
)


@dataclass(frozen=True)
class TranscriptionResult:
    transcript: str
    confidence: float
    duration_s: float
    model: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "transcript": self.transcript,
            "confidence": self.confidence,
            "duration_s": self.duration_s,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TranscriptionResult":
        return cls(
            transcript=str(payload.get("transcript", "")),
            confidence=float(payload.get("confidence", 0.0)),
            duration_s=float(payload.get("duration_s", 0.0)),
            model=str(payload.get("model", "")),
        )


class Transcriber(Protocol):
    def transcribe(
        self,
        path: str,
        mime_type: str,
        *,
        stream: bool = False,
        timeout: Optional[float] = None,
    ) -> TranscriptionResult: ...


def _iter_file(path: str) -> Iterator[bytes]:
    with open(path, "rb") as handle:
        while True:
            block = handle.read(DOWNLOAD_CHUNK_BYTES)
            if not block:
                return
            yield block


class DeepgramTranscriber:
    """Deepgram pre-recorded transcription over its REST API."""

    name = "deepgram"

    def __init__(
        self,
        client: httpx.Client,
        *,
        api_key: str,
        model: str = TRANSCRIPTION_MODEL,
        language: str = TRANSCRIPTION_LANGUAGE,
        base_url: str = TRANSCRIPTION_BASE_URL,
    ):
        self._client = client
        self._api_key = api_key
        self._model = model
        self._language = language
        self._url = base_url.rstrip("/") + "/v1/listen"

    def transcribe(
        self,
        path: str,
        mime_type: str,
        *,
        stream: bool = False,
        timeout: Optional[float] = None,
    ) -> TranscriptionResult:
        params = {
            "model": self._model,
            "language": self._language,
            "smart_format": "true",
            "punctuate": "true",
            "paragraphs": "true",
        }
        headers = {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": mime_type,
        }
        content: bytes | Iterator[bytes]
        if stream:
            content = _iter_file(path)
        else:
            content = Path(path).read_bytes()
        try:
            response = self._client.post(
                self._url,
                params=params,
                headers=headers,
                content=content,
                timeout=build_timeout(timeout) if timeout else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as error:
            raise translate_transport_error(
                error, self.name, timeout_code=ErrorCode.TRANSCRIPTION_TIMEOUT) from error
        raise_for_service_status(
            response, self.name, failure_code=ErrorCode.TRANSCRIPTION_FAILED)

        try:
            body = response.json()
            alternative = body["results"]["channels"][0]["alternatives"][0]
        except (ValueError, KeyError, IndexError, TypeError) as error:
            raise TranscriptionError(
                f"{self.name} returned an unexpected response shape") from error

        metadata = body.get("metadata") or {}
        return TranscriptionResult(
            transcript=str(alternative.get("transcript") or ""),
            confidence=float(alternative.get("confidence") or 0.0),
            duration_s=float(metadata.get("duration") or 0.0),
            model=self._model,
        )


__all__ = [
    "TranscriptionResult",
    "Transcriber",
    "DeepgramTranscriber",
]
