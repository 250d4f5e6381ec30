"""Conversational designer that drafts custom personalities."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx
from pydantic import ValidationError

from .config import resolve_secret, secret_name
from .errors import ConfigurationError, InvalidRequestError, UpstreamError
from .models import CustomPersonality, HistoryItem, PersonalityDesignResponse

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = "I've created a personality for you! Check the preview below."

_JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```")
_JSON_BLOCKS = re.compile(r"```json[\s\S]*?```")

DESIGNER_PROMPT = """You are a creative AI personality designer. Your job is to help users create custom AI personalities for a chatbot called Nova.

When a user describes what kind of personality they want, you should:
1. Acknowledge their idea with enthusiasm
2. Generate a complete personality definition

When you feel you have enough information to create a personality, respond with your message AND include a JSON block at the end in this exact format:

```json
{
  "name": "Short name for the personality (2-4 words)",
  "description": "Brief description for the settings menu (one sentence)",
  "prompt": "Full system prompt that defines how Nova should behave in this mode. Be detailed about tone, vocabulary, mannerisms, and any special characteristics."
}
```

Examples of good personalities:
- A wise old wizard who speaks in riddles and medieval language
- A hyperactive coffee-obsessed barista who uses lots of caffeine metaphors
- A calm meditation guru who speaks slowly and peacefully
- A dramatic theater actor who treats everything like a stage performance

Be creative and have fun! The personality should be unique and engaging."""


def split_reply(content: str) -> Tuple[str, Optional[CustomPersonality]]:
    """Separate the display text from an embedded personality definition."""
    personality: Optional[CustomPersonality] = None
    match = _JSON_BLOCK.search(content)
    if match:
        try:
            personality = CustomPersonality.model_validate(json.loads(match.group(1)))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.info("Failed to parse personality JSON: %s", e)
    clean = _JSON_BLOCKS.sub("", content).strip()
    return clean or FALLBACK_RESPONSE, personality


class PersonalityDesigner:
    def __init__(
        self,
        *,
        url: str,
        api_key: Optional[str],
        model: str,
        key_name: str = "LOVABLE_API_KEY",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.model = model
        self._api_key = api_key
        self._key_name = key_name
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_config(
        cls, cfg: Mapping[str, Any], transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "PersonalityDesigner":
        section = dict(cfg.get("designer", {}) or {})
        return cls(
            url=str(section["url"]),
            api_key=resolve_secret(section),
            model=str(section.get("model", "google/gemini-2.5-flash")),
            key_name=secret_name(section),
            timeout=float(section.get("timeout", 60.0)),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def design(self, message: str, history: Sequence[HistoryItem] = ()) -> PersonalityDesignResponse:
        if not message or not message.strip():
            raise InvalidRequestError("Message is required")
        if not self._api_key:
            logger.error("%s is not configured", self._key_name)
            raise ConfigurationError(f"{self._key_name} is not configured")

        logger.info("Personality generation request: %s", message)
        messages: List[Dict[str, str]] = [{"role": "system", "content": DESIGNER_PROMPT}]
        messages.extend({"role": h.role, "content": h.content} for h in history)
        messages.append({"role": "user", "content": message})

        try:
            r = await self._client.post(
                self.url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self.model, "messages": messages},
            )
        except httpx.HTTPError as e:
            logger.error("Personality designer request failed: %s", e)
            raise UpstreamError("Could not reach the AI service.") from e

        if not r.is_success:
            logger.error("AI Gateway error: %s - %s", r.status_code, r.text[:500])
            raise UpstreamError.from_status(
                r.status_code,
                quota_message="API credits exhausted.",
                generic_message=f"AI service error: {r.status_code}",
            )

        try:
            data = r.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError):
            content = ""
        logger.info("Personality generation response received")

        text, personality = split_reply(content)
        return PersonalityDesignResponse(response=text, personality=personality)
