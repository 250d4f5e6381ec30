"""Upstream chat-completions API: request building and transport."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .config import resolve_secret, secret_name
from .errors import ConfigurationError, OcrError, UpstreamError
from .models import Message
from .ocr import TextExtractor

logger = logging.getLogger(__name__)

OCR_FAILED_MARKER = "(text extraction failed)"


# -----------------------------
# Message building
# -----------------------------
def no_vision_placeholder(index: int) -> str:
    return f"[Image {index} attached: this model cannot view images, so its contents are unknown]"


def ocr_segment(index: int, text: str) -> str:
    return f"[Image {index} content: {text or '(no text found)'}]"


def multimodal_content(message: Message) -> List[Dict[str, Any]]:
    """All images first, then the text part when there is any text."""
    parts: List[Dict[str, Any]] = [
        {"type": "image_url", "image_url": {"url": url}} for url in message.images or []
    ]
    if message.content and message.content.strip():
        parts.append({"type": "text", "text": message.content})
    return parts


async def describe_images(images: Sequence[str], ocr: Optional[TextExtractor]) -> List[str]:
    """Textual stand-ins for images, in order, tagged with 1-based indexes.

    OCR runs sequentially; a failure only affects its own image.
    """
    segments: List[str] = []
    for index, image in enumerate(images, start=1):
        if ocr is None:
            segments.append(no_vision_placeholder(index))
            continue
        try:
            text = await ocr.extract_text(image)
        except (OcrError, ConfigurationError) as e:
            logger.warning("OCR failed for image %d: %s", index, e)
            segments.append(ocr_segment(index, OCR_FAILED_MARKER))
            continue
        segments.append(ocr_segment(index, text))
    return segments


async def build_upstream_messages(
    system_prompt: str,
    messages: Sequence[Message],
    *,
    multimodal: bool = False,
    ocr: Optional[TextExtractor] = None,
) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for msg in messages:
        if not msg.has_images():
            out.append({"role": msg.role, "content": msg.content})
        elif multimodal:
            out.append({"role": msg.role, "content": multimodal_content(msg)})
        else:
            segments = await describe_images(msg.images or [], ocr)
            text = "\n".join(segments)
            if msg.content and msg.content.strip():
                text = f"{text}\n\n{msg.content}"
            out.append({"role": msg.role, "content": text})
    return out


# -----------------------------
# Transport
# -----------------------------
class UpstreamClient:
    """Async client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        chat_path: str = "/chat/completions",
        model: str = "deepseek-chat",
        api_key: Optional[str] = None,
        provider: str = "Upstream",
        key_name: str = "api_key",
        multimodal: bool = False,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = base_url.rstrip("/") + chat_path
        self.model = model
        self.provider = provider
        self.multimodal = multimodal
        self._api_key = api_key
        self._key_name = key_name
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0), transport=transport
        )

    @classmethod
    def from_config(
        cls, cfg: Mapping[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "UpstreamClient":
        section = dict(cfg.get("upstream", {}) or {})
        return cls(
            base_url=str(section.get("base_url", "")),
            chat_path=str(section.get("chat_path", "/chat/completions")),
            model=str(section.get("model", "deepseek-chat")),
            api_key=resolve_secret(section),
            provider=str(section.get("provider", "Upstream")),
            key_name=secret_name(section),
            multimodal=bool(section.get("multimodal", False)),
            timeout=float(section.get("timeout", 120.0)),
            transport=transport,
        )

    def require_api_key(self) -> str:
        if not self._api_key:
            logger.error("%s is not configured", self._key_name)
            raise ConfigurationError(f"{self._key_name} is not configured")
        return self._api_key

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.require_api_key()}",
            "Content-Type": "application/json",
            # keep upstream bytes untouched so they can be relayed verbatim
            "Accept-Encoding": "identity",
        }

    async def open_stream(self, messages: List[Dict[str, Any]]) -> httpx.Response:
        """Start a streaming completion and return the still-open response.

        Non-success statuses are read, logged, closed and raised as
        :class:`UpstreamError`; the caller owns closing a successful response.
        """
        payload = {"model": self.model, "messages": messages, "stream": True}
        request = self._client.build_request("POST", self.url, json=payload, headers=self._headers())
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("%s request failed: %s", self.provider, e)
            raise UpstreamError(f"Could not reach {self.provider} API.") from e

        if response.is_success:
            return response

        try:
            body = await response.aread()
        finally:
            await response.aclose()
        logger.error(
            "%s API error: %s - %s",
            self.provider,
            response.status_code,
            body[:500].decode("utf-8", errors="replace"),
        )
        raise UpstreamError.from_status(response.status_code, provider=self.provider)

    async def aclose(self) -> None:
        await self._client.aclose()
