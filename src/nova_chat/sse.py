"""Incremental decoder for the relay's event-stream framing.

The relay body is a sequence of newline-terminated records::

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

Network chunks do not respect record boundaries (nor UTF-8 character
boundaries), so :class:`EventStreamDecoder` keeps a carry-over buffer and only
emits payloads of complete lines.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, List, Optional

DONE = "[DONE]"


class StreamFormatError(ValueError):
    """A record could not be understood."""


class StreamErrorEvent(Exception):
    """The stream itself carried an error object instead of a delta."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EventStreamDecoder:
    """Turn raw body chunks into ``data:`` payload strings, in order.

    Blank lines, ``:`` comments and non-``data`` fields (``event:``, ``id:``,
    ``retry:``) are skipped. Lines may end in ``\\n`` or ``\\r\\n``.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer = ""
        self._closed = False

    @property
    def pending(self) -> str:
        """Text of the current incomplete line."""
        return self._buffer

    def feed(self, chunk: bytes) -> List[str]:
        if self._closed:
            raise StreamFormatError("decoder already closed")
        try:
            self._buffer += self._utf8.decode(chunk)
        except UnicodeDecodeError as e:
            raise StreamFormatError(f"invalid UTF-8 in stream: {e}") from e
        return self._drain_lines()

    def close(self) -> List[str]:
        """Flush at end of stream; a trailing unterminated line counts as a record."""
        if self._closed:
            return []
        self._closed = True
        try:
            self._buffer += self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise StreamFormatError(f"stream ended inside a UTF-8 sequence: {e}") from e
        payloads = self._drain_lines()
        tail, self._buffer = self._buffer, ""
        payload = _parse_line(tail)
        if payload is not None:
            payloads.append(payload)
        return payloads

    def _drain_lines(self) -> List[str]:
        payloads: List[str] = []
        start = 0
        while True:
            end = self._buffer.find("\n", start)
            if end < 0:
                break
            payload = _parse_line(self._buffer[start:end])
            if payload is not None:
                payloads.append(payload)
            start = end + 1
        self._buffer = self._buffer[start:]
        return payloads


def _parse_line(line: str) -> Optional[str]:
    if line.endswith("\r"):
        line = line[:-1]
    if not line.strip() or line.startswith(":"):
        return None
    # a line without a colon is a field name with an empty value
    field, _, value = line.partition(":")
    if field != "data":
        return None
    return value.strip() or None


def extract_delta(payload: str) -> Optional[str]:
    """Return the text carried by one chat-completions chunk.

    ``None`` for chunks without text (role announcements, finish markers).
    Raises :class:`StreamErrorEvent` for an in-band error object and
    :class:`StreamFormatError` for anything that is not a JSON chunk.
    """
    try:
        data: Any = json.loads(payload)
    except json.JSONDecodeError as e:
        raise StreamFormatError(f"malformed stream payload: {payload[:80]!r}") from e
    if not isinstance(data, dict):
        raise StreamFormatError(f"unexpected stream payload: {payload[:80]!r}")

    if data.get("error"):
        err = data["error"]
        message = err.get("message") if isinstance(err, dict) else str(err)
        raise StreamErrorEvent(message or "The model stream reported an error.")

    choices = data.get("choices")
    if not choices:
        return None
    if not isinstance(choices, list) or not isinstance(choices[0], dict):
        raise StreamFormatError(f"unexpected stream payload: {payload[:80]!r}")
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        raise StreamFormatError(f"unexpected stream payload: {payload[:80]!r}")
    content = delta.get("content")
    if content is None or content == "":
        return None
    if not isinstance(content, str):
        raise StreamFormatError(f"unexpected delta content: {content!r}")
    return content
