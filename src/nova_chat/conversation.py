"""In-memory working copy of the active conversation."""
from __future__ import annotations

import threading
from typing import Iterable, Optional, Tuple

from .models import Message

Snapshot = Tuple[Message, ...]


class ConversationStore:
    """Ordered message list for one conversation.

    Streaming deltas only ever reach the list through
    :meth:`append_or_extend_assistant`, which grows the in-progress assistant
    message instead of creating one bubble per network chunk. Callers must
    deliver deltas in order; the store does not reorder or deduplicate.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages = list(messages)
        self._streaming_id: Optional[str] = None
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def is_streaming(self) -> bool:
        return self._streaming_id is not None

    def snapshot(self) -> Snapshot:
        with self._lock:
            return tuple(self._messages)

    def last(self) -> Optional[Message]:
        with self._lock:
            return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> Snapshot:
        with self._lock:
            self._messages.append(message)
            return tuple(self._messages)

    def append_or_extend_assistant(self, delta_text: str) -> Snapshot:
        with self._lock:
            last = self._messages[-1] if self._messages else None
            if (
                last is not None
                and last.role == "assistant"
                and last.id == self._streaming_id
            ):
                self._messages[-1] = last.model_copy(update={"content": last.content + delta_text})
            else:
                message = Message(role="assistant", content=delta_text)
                self._messages.append(message)
                self._streaming_id = message.id
            return tuple(self._messages)

    def finish_assistant(self) -> Snapshot:
        """Freeze the in-progress assistant message; later deltas start a new one."""
        with self._lock:
            self._streaming_id = None
            return tuple(self._messages)

    def abort_assistant(self) -> Snapshot:
        """Stop the in-progress message after a failed stream.

        Text already shown stays; an in-progress message that never received
        any text is dropped.
        """
        with self._lock:
            if self._streaming_id is not None and self._messages:
                last = self._messages[-1]
                if last.id == self._streaming_id and not last.content:
                    self._messages.pop()
            self._streaming_id = None
            return tuple(self._messages)

    def replace_all(self, messages: Iterable[Message]) -> Snapshot:
        with self._lock:
            self._messages = list(messages)
            self._streaming_id = None
            return tuple(self._messages)
