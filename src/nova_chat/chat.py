"""Headless chat controller: the logic behind the chat screen.

Wires a :class:`ConversationStore` to the relay, the image endpoint and
session persistence. Rendering is left to whoever reads
``controller.store.snapshot()`` and ``controller.notices``.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Callable, List, Optional, Sequence

from .client import ChatRelayClient, RelayRequest
from .conversation import ConversationStore
from .images import ImageClient
from .models import ChatSession, CustomPersonality, Message
from .personalities import CUSTOM_ID, Personality, personality_from_wire, personality_to_wire
from .sessions import SessionPersistence

logger = logging.getLogger(__name__)

_IMAGE_COMMAND = re.compile(r"^/image\s+(.+)$", re.IGNORECASE | re.DOTALL)


def parse_image_command(text: str) -> Optional[str]:
    """Prompt of a ``/image <prompt>`` command, or None for ordinary text."""
    match = _IMAGE_COMMAND.match(text.strip())
    if not match:
        return None
    prompt = match.group(1).strip()
    return prompt or None


class ChatController:
    """One conversation, at most one in-flight request."""

    def __init__(
        self,
        relay: ChatRelayClient,
        *,
        images: Optional[ImageClient] = None,
        persistence: Optional[SessionPersistence] = None,
        personality: str = "CHAOS",
        custom_personality: Optional[CustomPersonality] = None,
        notify: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.relay = relay
        self.images = images
        self.persistence = persistence
        self.store = ConversationStore()
        self.personality = personality
        self.custom_personality = custom_personality
        self.session_id: Optional[str] = None
        self.notices: List[str] = []
        self._notify_hook = notify
        self._loading = False
        self._lock = threading.Lock()
        self._active: Optional[RelayRequest] = None

    # --------- state ----------
    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def messages(self) -> Sequence[Message]:
        return self.store.snapshot()

    def notify(self, message: str) -> None:
        self.notices.append(message)
        if self._notify_hook is not None:
            self._notify_hook(message)

    def set_personality(self, personality: str, custom: Optional[CustomPersonality] = None) -> None:
        self.personality = personality
        self.custom_personality = custom if personality == CUSTOM_ID else None

    @property
    def active_personality(self) -> Personality:
        return personality_from_wire(self.personality, self.custom_personality)

    def use_personality(self, personality: Personality) -> None:
        wire, custom = personality_to_wire(personality)
        self.set_personality(wire, custom)

    # --------- sending ----------
    def _begin(self) -> bool:
        with self._lock:
            if self._loading:
                return False
            self._loading = True
            self._active = None
            return True

    def _end(self) -> None:
        with self._lock:
            self._loading = False
            self._active = None

    def send(self, content: str, images: Optional[Sequence[str]] = None) -> bool:
        """Send a user message; False when refused (empty or already busy)."""
        text = content.strip()
        if not text and not images:
            return False
        if not self._begin():
            self.notify("Please wait for the current response to finish.")
            return False

        try:
            prompt = parse_image_command(text) if not images else None
            if prompt is not None:
                self._generate_image(text, prompt)
            else:
                self._stream(text, list(images) if images else None)
        finally:
            self._end()
        return True

    def cancel(self) -> None:
        """Stop the in-flight stream and close its connection; no further deltas are applied."""
        with self._lock:
            request = self._active
        if request is not None:
            request.abort()
            self.store.finish_assistant()

    def _stream(self, text: str, images: Optional[List[str]]) -> None:
        self.store.append(Message(role="user", content=text, images=images))
        request = RelayRequest(
            messages=self.store.snapshot(),
            personality=self.personality,
            custom_personality=self.custom_personality if self.personality == CUSTOM_ID else None,
            on_delta=self.store.append_or_extend_assistant,
            on_done=self._on_done,
            on_error=self._on_error,
        )
        with self._lock:
            self._active = request
        self.relay.stream_chat(request)

    def _on_done(self) -> None:
        self.store.finish_assistant()
        if self.session_id is not None and self.persistence is not None:
            self._resync()

    def _on_error(self, message: str) -> None:
        self.store.abort_assistant()
        self.notify(message)

    def _generate_image(self, text: str, prompt: str) -> None:
        if self.images is None:
            self.notify("Image generation is not available.")
            return
        self.store.append(Message(role="user", content=text))
        result = self.images.generate(prompt)
        if not result.ok:
            self.notify(result.error or "Failed to generate image")
            return
        self.store.append(
            Message(
                role="assistant",
                content=result.text or f"Here's your image of {prompt}",
                images=[result.image_url] if result.image_url else None,
            )
        )
        if self.session_id is not None and self.persistence is not None:
            self._resync()

    # --------- sessions ----------
    def _resync(self) -> None:
        ok = self.persistence.update(
            self.session_id,
            self.store.snapshot(),
            self.personality,
            self.custom_personality,
        )
        if not ok:
            self.notify("Failed to sync chat.")

    def save(self, name: str) -> Optional[ChatSession]:
        if self.persistence is None:
            self.notify("Saving chats is not available.")
            return None
        session = self.persistence.create(
            name, self.store.snapshot(), self.personality, self.custom_personality
        )
        if session is None:
            self.notify("Failed to save chat.")
            return None
        self.session_id = session.id
        return session

    def load(self, session: ChatSession) -> None:
        if self._loading:
            self.notify("Please wait for the current response to finish.")
            return
        self.store.replace_all(session.messages)
        self.set_personality(session.personality, session.custom_personality)
        self.session_id = session.id

    def rename(self, name: str) -> bool:
        if self.session_id is None or self.persistence is None:
            return False
        ok = self.persistence.rename(self.session_id, name)
        if not ok:
            self.notify("Failed to rename chat.")
        return ok

    def delete(self) -> bool:
        if self.session_id is None or self.persistence is None:
            return False
        ok = self.persistence.delete(self.session_id)
        if not ok:
            self.notify("Failed to delete chat.")
            return False
        self.new_chat()
        return True

    def new_chat(self) -> None:
        self.store.replace_all([])
        self.session_id = None
