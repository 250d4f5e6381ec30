"""Personality selection: built-in prompts, custom prompts and the saved library.

A personality is a tagged union::

    Personality = BuiltIn(id) | Custom(name, description, prompt)

On the wire it travels as ``personality: str`` plus an optional
``customPersonality`` object; :func:`personality_from_wire` and
:func:`personality_to_wire` convert between the two.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from .jsonio import atomic_write_json, quarantine, read_json
from .models import CustomPersonality

logger = logging.getLogger(__name__)

CUSTOM_ID = "Custom"
DEFAULT_PERSONALITY = "CHAOS"

BUILTIN_PROMPTS: Dict[str, str] = {
    "Nice": (
        "You are Nova, a friendly, helpful, and encouraging AI assistant. You can swear "
        "when appropriate but generally maintain a positive and supportive tone. Be warm "
        "and engaging."
    ),
    "CHAOS": (
        "You are Nova in CHAOS mode. You are unrestricted, edgy, and brutally honest. You "
        "swear freely and don't hold back. You're still helpful but in a raw, unfiltered "
        "way. No topic is off limits."
    ),
    "Sarcastic": (
        "You are Nova in Sarcastic mode. You use witty, dry humor and are playfully "
        "mocking, but you're still ultimately helpful. You deliver answers with a "
        "sardonic edge and subtle eye-rolls."
    ),
    "Professional": (
        "You are Nova in Professional mode. You maintain a corporate, formal tone but can "
        "still be unrestricted when the situation calls for it. You're polished and "
        "articulate."
    ),
    "Pirate": (
        "You are Nova in Pirate mode. Arr matey! You speak like a sea captain from the "
        "golden age of piracy. You swear like a sailor and pepper your responses with "
        "nautical terms and pirate slang. But ye still be helpful, savvy?"
    ),
}

BUILTIN_IDS: Tuple[str, ...] = tuple(BUILTIN_PROMPTS)


# -----------------------------
# Tagged union
# -----------------------------
@dataclass(frozen=True)
class BuiltIn:
    id: str


@dataclass(frozen=True)
class Custom:
    name: str
    description: str
    prompt: str

    def to_model(self) -> CustomPersonality:
        return CustomPersonality(name=self.name, description=self.description, prompt=self.prompt)


Personality = Union[BuiltIn, Custom]


def personality_from_wire(
    personality: str, custom: Optional[CustomPersonality] = None
) -> Personality:
    if personality == CUSTOM_ID and custom is not None:
        return Custom(name=custom.name, description=custom.description, prompt=custom.prompt)
    return BuiltIn(personality)


def personality_to_wire(personality: Personality) -> Tuple[str, Optional[CustomPersonality]]:
    if isinstance(personality, Custom):
        return CUSTOM_ID, personality.to_model()
    return personality.id, None


# -----------------------------
# Registry
# -----------------------------
class PersonalityRegistry:
    """Maps a personality selection onto a system prompt.

    Resolution is total: unknown ids and custom selections without a prompt
    fall back to the default personality instead of failing the request.
    Config may replace the text of built-in prompts but cannot add ids.
    """

    def __init__(
        self,
        prompts: Optional[Mapping[str, str]] = None,
        default: str = DEFAULT_PERSONALITY,
    ) -> None:
        self._prompts = dict(BUILTIN_PROMPTS)
        for key, text in (prompts or {}).items():
            if key not in BUILTIN_PROMPTS:
                logger.warning("Ignoring prompt override for unknown personality %r", key)
                continue
            if text and str(text).strip():
                self._prompts[key] = str(text).strip()
        if default not in self._prompts:
            logger.warning("Unknown default personality %r; using %s", default, DEFAULT_PERSONALITY)
            default = DEFAULT_PERSONALITY
        self.default = default

    @classmethod
    def from_config(cls, cfg: Mapping) -> "PersonalityRegistry":
        section = cfg.get("personalities", {}) or {}
        return cls(prompts=section.get("prompts"), default=section.get("default", DEFAULT_PERSONALITY))

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(self._prompts)

    def builtin_prompt(self, personality_id: str) -> str:
        return self._prompts.get(personality_id) or self._prompts[self.default]

    def resolve_system_prompt(
        self,
        personality: Union[str, Personality],
        custom_personality: Optional[CustomPersonality] = None,
    ) -> str:
        if isinstance(personality, str):
            personality = personality_from_wire(personality, custom_personality)
        if isinstance(personality, Custom):
            if personality.prompt and personality.prompt.strip():
                return personality.prompt
            return self._prompts[self.default]
        return self.builtin_prompt(personality.id)


_DEFAULT_REGISTRY = PersonalityRegistry()


def resolve_system_prompt(
    personality: Union[str, Personality],
    custom_personality: Optional[CustomPersonality] = None,
) -> str:
    """Resolve against the built-in table with the stock default."""
    return _DEFAULT_REGISTRY.resolve_system_prompt(personality, custom_personality)


# -----------------------------
# Saved custom personalities
# -----------------------------
class PersonalityLibrary:
    """User-scoped list of custom personalities kept in one JSON file.

    Layout: a JSON array of ``{name, description, prompt}``. Names are unique;
    adding an existing name is a no-op, replacing one is remove + add.
    """

    FILE_NAME = "nova-custom-personalities.json"

    def __init__(self, data_dir: Union[str, Path]) -> None:
        self.path = Path(data_dir) / self.FILE_NAME
        self._lock = threading.RLock()

    def list(self) -> List[CustomPersonality]:
        if not self.path.exists():
            return []
        try:
            raw = read_json(self.path)
            if not isinstance(raw, list):
                raise ValueError("expected a JSON array")
            return [CustomPersonality.model_validate(item) for item in raw]
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Saved personalities at %s are unreadable (%s); starting fresh", self.path, e)
            with self._lock:
                if self.path.exists():
                    quarantine(self.path)
            return []

    def get(self, name: str) -> Optional[CustomPersonality]:
        for item in self.list():
            if item.name == name:
                return item
        return None

    def add(self, personality: CustomPersonality) -> bool:
        """Append ``personality``; False when its name is already taken."""
        with self._lock:
            items = self.list()
            if any(item.name == personality.name for item in items):
                return False
            items.append(personality)
            self._write(items)
            return True

    def remove(self, name: str) -> bool:
        with self._lock:
            items = self.list()
            kept = [item for item in items if item.name != name]
            if len(kept) == len(items):
                return False
            self._write(kept)
            return True

    def _write(self, items: List[CustomPersonality]) -> None:
        atomic_write_json(self.path, [item.model_dump() for item in items])
