"""Image generation: the server-side proxy and the client used by the chat UI."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from .config import resolve_secret, secret_name
from .errors import RATE_LIMIT_MESSAGE, ConfigurationError, ErrorKind, InvalidRequestError, UpstreamError
from .models import ImageResponse

logger = logging.getLogger(__name__)


class ImageGenerator:
    """Proxy for an OpenAI-style ``/images/generations`` endpoint."""

    def __init__(
        self,
        *,
        url: str,
        api_key: Optional[str],
        model: str = "dall-e-3",
        size: str = "1024x1024",
        key_name: str = "OPENAI_API_KEY",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.model = model
        self.size = size
        self._api_key = api_key
        self._key_name = key_name
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(
        cls, cfg: Mapping[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ImageGenerator":
        section = dict(cfg.get("images", {}) or {})
        return cls(
            url=str(section["url"]),
            api_key=resolve_secret(section),
            model=str(section.get("model", "dall-e-3")),
            size=str(section.get("size", "1024x1024")),
            key_name=secret_name(section),
            timeout=float(section.get("timeout", 120.0)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(self, prompt: str) -> ImageResponse:
        if not prompt or not prompt.strip():
            raise InvalidRequestError("Prompt is required")
        if not self._api_key:
            logger.error("%s is not configured", self._key_name)
            raise ConfigurationError(f"{self._key_name} is not configured")

        logger.info("Image generation request: %s", prompt)
        try:
            r = await self._client.post(
                self.url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self.model, "prompt": prompt, "n": 1, "size": self.size},
            )
        except httpx.HTTPError as e:
            logger.error("Image generation request failed: %s", e)
            raise UpstreamError("Could not reach the image service.") from e

        if not r.is_success:
            try:
                data = r.json()
            except ValueError:
                data = {}
            logger.error("Image API error: %s %s", r.status_code, data)
            if r.status_code == 429:
                raise UpstreamError(RATE_LIMIT_MESSAGE, status=429, kind=ErrorKind.RATE_LIMIT, upstream_status=429)
            if r.status_code == 401:
                raise UpstreamError("Invalid API key.", status=401, kind=ErrorKind.CONFIGURATION, upstream_status=401)
            detail = None
            if isinstance(data, dict) and isinstance(data.get("error"), dict):
                detail = data["error"].get("message")
            raise UpstreamError(
                detail or f"Image generation failed: {r.status_code}", status=500, upstream_status=r.status_code
            )

        data = r.json()
        first = (data.get("data") or [{}])[0]
        logger.info("Image generation response received")
        return ImageResponse(text=first.get("revised_prompt") or "", image_url=first.get("url"))


# -----------------------------
# Client side
# -----------------------------
@dataclass
class ImageResult:
    text: str = ""
    image_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ImageClient:
    """Calls ``POST /generate-image`` on the relay server; never raises."""

    def __init__(
        self,
        base_url: str = "",
        *,
        http_client: Optional[httpx.Client] = None,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
    ) -> None:
        self.url = base_url.rstrip("/") + "/generate-image"
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def generate(self, prompt: str) -> ImageResult:
        try:
            r = self._client.post(self.url, json={"prompt": prompt}, headers=self._headers)
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Image generation error: %s", e)
            return ImageResult(error=f"Failed to generate image: {type(e).__name__}")

        if not r.is_success or not isinstance(data, dict):
            message = data.get("error") if isinstance(data, dict) else None
            return ImageResult(error=message or f"Request failed with status {r.status_code}")
        return ImageResult(text=data.get("text") or "", image_url=data.get("imageUrl"))
