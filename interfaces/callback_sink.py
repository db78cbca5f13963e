# CallbackSink port
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from threading import Lock
from typing import Any, Optional, Protocol

import httpx

from config.constant import CALLBACK_SIGNATURE_HEADER
from docproc_exceptions import ErrorCode
from .http_support import (
    build_timeout,
    raise_for_service_status,
    translate_transport_error,
)


class CallbackSink(Protocol):
    def send(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None: ...


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def sign_body(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the exact bytes sent."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    return hmac.compare_digest(sign_body(body, secret), signature)


class HttpCallbackSink:
    """POSTs JSON callbacks, signing the body when a secret is supplied."""

    def __init__(
        self,
        client: httpx.Client,
        *,
        signature_header: str = CALLBACK_SIGNATURE_HEADER,
    ):
        self._client = client
        self._signature_header = signature_header

    def send(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        body = encode_body(payload)
        headers = {"Content-Type": "application/json"}
        if secret:
            headers[self._signature_header] = sign_body(body, secret)
        try:
            response = self._client.post(
                url,
                content=body,
                headers=headers,
                timeout=build_timeout(timeout) if timeout else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as error:
            raise translate_transport_error(error, "callback") from error
        raise_for_service_status(
            response, "callback", failure_code=ErrorCode.UNKNOWN_ERROR)


@dataclass(frozen=True)
class SentCallback:
    url: str
    payload: dict[str, Any]
    signature: Optional[str]


class RecordingCallbackSink:
    """Keeps callbacks in memory instead of sending them."""

    def __init__(self) -> None:
        self._lock = Lock()
        self.sent: list[SentCallback] = []

    def send(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        # pylint: disable=unused-argument
        signature = sign_body(encode_body(payload), secret) if secret else None
        with self._lock:
            self.sent.append(SentCallback(url=url, payload=dict(payload), signature=signature))

    def payloads(self, status: Optional[str] = None) -> list[dict[str, Any]]:
        with self._lock:
            return [
                item.payload for item in self.sent
                if status is None or item.payload.get("status") == status
            ]


__all__ = [
    "CallbackSink",
    "HttpCallbackSink",
    "RecordingCallbackSink",
    "SentCallback",
    "encode_body",
    "sign_body",
    "verify_signature",
]
