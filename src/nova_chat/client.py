"""Client side of the streaming chat relay.

:class:`ChatRelayClient` posts the whole conversation to ``/chat``, decodes
the event stream as it arrives and reports through three callbacks. It never
raises: every failure ends in exactly one ``on_error`` call.

Typical usage
-------------
client = ChatRelayClient("http://127.0.0.1:8000")
client.stream_chat(RelayRequest(
    messages=store.snapshot(),
    personality="Pirate",
    on_delta=store.append_or_extend_assistant,
    on_done=store.finish_assistant,
    on_error=show_notice,
))
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from .models import CustomPersonality, Message
from .sse import DONE, EventStreamDecoder, StreamErrorEvent, StreamFormatError, extract_delta

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(connect=10.0, read=120.0, write=30.0, pool=10.0)


def _noop(*_args: Any) -> None:
    return None


@dataclass
class RelayRequest:
    messages: Sequence[Message]
    personality: str = "CHAOS"
    custom_personality: Optional[CustomPersonality] = None
    on_delta: Callable[[str], Any] = _noop
    on_done: Callable[[], Any] = _noop
    on_error: Callable[[str], Any] = _noop
    cancel: threading.Event = field(default_factory=threading.Event)
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False)
    _response: Optional[httpx.Response] = field(default=None, init=False, repr=False)

    def abort(self) -> None:
        """Cancel from any thread: stop callbacks and close the open connection.

        Once this returns no further callback will start.
        """
        with self._lock:
            self.cancel.set()
            response, self._response = self._response, None
        if response is not None:
            response.close()

    def _attach(self, response: httpx.Response) -> bool:
        """Register the live response; False when already cancelled."""
        with self._lock:
            if self.cancel.is_set():
                return False
            self._response = response
            return True

    def _detach(self) -> None:
        with self._lock:
            self._response = None

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "messages": [_wire_message(m) for m in self.messages],
            "personality": self.personality,
        }
        if self.custom_personality is not None:
            body["customPersonality"] = self.custom_personality.model_dump()
        return body


def _wire_message(message: Message) -> Dict[str, Any]:
    out: Dict[str, Any] = {"role": message.role, "content": message.content}
    if message.images:
        out["images"] = list(message.images)
    return out


class _Callbacks:
    """Delivers callbacks under the stream contract.

    At most one terminal call (``on_done`` or ``on_error``), no deltas after
    it, and nothing at all once the caller cancelled. Each check-and-call runs
    under the request lock that :meth:`RelayRequest.abort` takes.
    """

    def __init__(self, request: RelayRequest) -> None:
        self._req = request
        self.finished = False

    @property
    def stopped(self) -> bool:
        return self.finished or self._req.cancel.is_set()

    def delta(self, text: str) -> None:
        with self._req._lock:
            if not self.stopped:
                self._req.on_delta(text)

    def done(self) -> None:
        with self._req._lock:
            if not self.stopped:
                self.finished = True
                self._req.on_done()

    def error(self, message: str) -> None:
        with self._req._lock:
            if self.stopped:
                return
            self.finished = True
            try:
                self._req.on_error(message)
            except Exception:
                logger.exception("on_error callback raised")


class ChatRelayClient:
    """Consumes ``POST /chat`` on a relay server. No automatic retries."""

    def __init__(
        self,
        base_url: str = "",
        *,
        http_client: Optional[httpx.Client] = None,
        api_key: Optional[str] = None,
        chat_path: str = "/chat",
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ) -> None:
        self.url = base_url.rstrip("/") + chat_path
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "ChatRelayClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def stream_chat(self, request: RelayRequest) -> None:
        cb = _Callbacks(request)
        if cb.stopped:
            return
        try:
            with self._client.stream(
                "POST", self.url, json=request.payload(), headers=self._headers
            ) as response:
                if not request._attach(response):
                    return
                try:
                    if not 200 <= response.status_code < 300:
                        response.read()
                        cb.error(_error_message(response))
                        return
                    self._consume(response, cb)
                finally:
                    request._detach()
        except httpx.HTTPError as e:
            if cb.stopped:
                # the connection was closed by abort()
                return
            logger.warning("Chat relay transport failure: %s", e)
            cb.error(f"Connection to the chat service failed: {type(e).__name__}")
        except (StreamFormatError, StreamErrorEvent) as e:
            logger.warning("Chat relay stream rejected: %s", e)
            cb.error(getattr(e, "message", None) or "Received a malformed response stream.")
        except Exception as e:
            if cb.stopped:
                return
            # Raised by a caller callback; still reported, never propagated.
            logger.exception("Chat stream aborted: %s", e)
            cb.error("The chat stream was interrupted.")

    def _consume(self, response: httpx.Response, cb: _Callbacks) -> None:
        decoder = EventStreamDecoder()
        for chunk in response.iter_bytes():
            if cb.stopped:
                return
            if self._dispatch(decoder.feed(chunk), cb):
                return
        if cb.stopped:
            return
        if self._dispatch(decoder.close(), cb):
            return
        # Clean close without a sentinel.
        cb.done()

    @staticmethod
    def _dispatch(payloads: List[str], cb: _Callbacks) -> bool:
        """Deliver payloads in order; True once the stream is over."""
        for payload in payloads:
            if cb.stopped:
                return True
            if payload == DONE:
                cb.done()
                return True
            text = extract_delta(payload)
            if text:
                cb.delta(text)
        return cb.stopped


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    return f"Request failed with status {response.status_code}"
