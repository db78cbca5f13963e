# OcrProvider port
from __future__ import annotations

import base64
from typing import Optional, Protocol

import httpx

from config.constant import OCR_BASE_URL, OCR_MODEL
from docproc_exceptions import ErrorCode, OcrError
from .http_support import (
    build_timeout,
    raise_for_service_status,
    translate_transport_error,
)


class OcrProvider(Protocol):
    name: str

    def ocr_pdf(self, pdf_bytes: bytes, *, timeout: Optional[float] = None) -> list[str]:
        """Return one markdown string per page, in page order."""
        ...


class MistralOcrProvider:
    """Mistral document OCR over its REST API."""

    name = "mistral-ocr"

    def __init__(
        self,
        client: httpx.Client,
        *,
        api_key: str,
        model: str = OCR_MODEL,
        base_url: str = OCR_BASE_URL,
    ):
        self._client = client
        self._api_key = api_key
        self._model = model
        self._url = base_url.rstrip("/") + "/v1/ocr"

    def ocr_pdf(self, pdf_bytes: bytes, *, timeout: Optional[float] = None) -> list[str]:
        encoded = base64.b64encode(pdf_bytes).decode("ascii")
        payload = {
            "model": self._model,
            "document": {
                "type": "document_url",
                "document_url": f"data:application/pdf;base64,{encoded}",
            },
            "include_image_base64": False,
        }
        try:
            response = self._client.post(
                self._url,
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=build_timeout(timeout) if timeout else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as error:
            raise translate_transport_error(
                error, self.name, timeout_code=ErrorCode.OCR_TIMEOUT) from error
        raise_for_service_status(
            response, self.name, failure_code=ErrorCode.OCR_FAILED)

        try:
            pages = response.json().get("pages") or []
        except ValueError as error:
            raise OcrError(f"{self.name} returned invalid JSON") from error
        if not pages:
            raise OcrError(f"{self.name} returned no pages")
        pages = sorted(pages, key=lambda p: p.get("index", 0))
        return [str(page.get("markdown") or "") for page in pages]


__all__ = [
    "OcrProvider",
    "MistralOcrProvider",
]
