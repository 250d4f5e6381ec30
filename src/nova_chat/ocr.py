"""Text extraction for attached images (OCR.space-compatible API)."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from .config import resolve_secret, secret_name
from .errors import ConfigurationError, OcrError

logger = logging.getLogger(__name__)


class TextExtractor(Protocol):
    async def extract_text(self, image: str) -> str:
        ...


class OcrClient:
    """One request per image; every failure surfaces as :class:`OcrError`.

    ``image`` is whatever the browser attached: a ``data:`` URL (sent as
    ``base64Image``) or a plain http(s) URL (sent as ``url``).
    """

    def __init__(
        self,
        url: str,
        api_key: Optional[str],
        *,
        language: str = "eng",
        timeout: float = 60.0,
        key_name: str = "OCR_API_KEY",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.language = language
        self._api_key = api_key
        self._key_name = key_name
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(
        cls, cfg: Mapping[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> Optional["OcrClient"]:
        section = dict(cfg.get("ocr", {}) or {})
        if not section.get("enabled"):
            return None
        return cls(
            section["url"],
            resolve_secret(section),
            language=str(section.get("language", "eng")),
            timeout=float(section.get("timeout", 60.0)),
            key_name=secret_name(section),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def extract_text(self, image: str) -> str:
        if not self._api_key:
            raise ConfigurationError(f"{self._key_name} is not configured")

        form: Dict[str, str] = {"apikey": self._api_key, "language": self.language}
        if image.startswith("data:"):
            form["base64Image"] = image
        else:
            form["url"] = image

        try:
            r = await self._client.post(self.url, data=form)
        except httpx.HTTPError as e:
            raise OcrError(f"OCR request failed: {type(e).__name__}") from e
        if r.status_code != 200:
            raise OcrError(f"OCR service returned {r.status_code}")

        try:
            data = r.json()
        except ValueError as e:
            raise OcrError("OCR service returned invalid JSON") from e

        if not isinstance(data, dict):
            raise OcrError("OCR service returned an unexpected response")

        if data.get("IsErroredOnProcessing"):
            detail = data.get("ErrorMessage") or "processing error"
            if isinstance(detail, list):
                detail = "; ".join(str(d) for d in detail)
            raise OcrError(f"OCR failed: {detail}")

        results = data.get("ParsedResults") or []
        if not isinstance(results, list) or not all(isinstance(item, dict) for item in results):
            raise OcrError("OCR service returned an unexpected response")
        texts = []
        for item in results:
            parsed = item.get("ParsedText") or ""
            if not isinstance(parsed, str):
                raise OcrError("OCR service returned an unexpected response")
            texts.append(parsed.strip())
        return "\n".join(texts).strip()
