"""Saved chat sessions: a durable keyed store and a non-throwing facade.

``DiskSessionStore`` and ``RemoteSessionStore`` share one interface and raise
:class:`SessionStoreError` / :class:`SessionNotFound`. ``SessionPersistence``
wraps either of them the way the chat UI uses it: every operation reports
success or failure and nothing escapes.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

import httpx
from pydantic import ValidationError

from .errors import SessionNotFound, SessionStoreError
from .jsonio import atomic_write_json, ensure_dir, quarantine, read_json, safe_filename
from .models import ChatSession, CustomPersonality, Message

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class SessionBackend(Protocol):
    def list(self) -> List[ChatSession]: ...
    def get(self, session_id: str) -> ChatSession: ...
    def create(
        self,
        name: str,
        messages: Sequence[Message],
        personality: str,
        custom_personality: Optional[CustomPersonality],
    ) -> ChatSession: ...
    def update(
        self,
        session_id: str,
        messages: Sequence[Message],
        personality: Any = UNSET,
        custom_personality: Any = UNSET,
    ) -> ChatSession: ...
    def rename(self, session_id: str, name: str) -> ChatSession: ...
    def delete(self, session_id: str) -> None: ...


# -----------------------------
# DiskSessionStore
# -----------------------------
class DiskSessionStore:
    """JSON-file-per-session store (thread-safe, atomic).

    Layout:
        data_dir/
          <id>.json       # one ChatSession record
          <id>.corrupt.json  # unreadable records moved aside on load

    Last write wins; writes are serialised by a process-wide lock.
    """

    def __init__(self, data_dir: Union[str, Path]) -> None:
        self.root = ensure_dir(data_dir)
        self._lock = threading.RLock()

    def _path(self, session_id: str) -> Path:
        return self.root / f"{safe_filename(session_id)}.json"

    def _load(self, path: Path) -> Optional[ChatSession]:
        try:
            return ChatSession.model_validate(read_json(path))
        except (ValueError, ValidationError) as e:
            logger.warning("Unreadable session file %s (%s); moving it aside", path, e)
            with self._lock:
                try:
                    quarantine(path)
                except OSError:
                    logger.exception("Could not quarantine %s", path)
            return None
        except OSError as e:
            raise SessionStoreError(f"Failed to read chat session: {e}") from e

    def _save(self, session: ChatSession) -> ChatSession:
        try:
            atomic_write_json(self._path(session.id), session.model_dump(mode="json"))
        except (OSError, TypeError, ValueError) as e:
            raise SessionStoreError(f"Failed to write chat session: {e}") from e
        return session

    # --------- core API ----------
    def list(self) -> List[ChatSession]:
        """All sessions, most recently updated first."""
        sessions: List[ChatSession] = []
        for p in self.root.glob("*.json"):
            if p.name.endswith(".corrupt.json"):
                continue
            session = self._load(p)
            if session is not None:
                sessions.append(session)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def get(self, session_id: str) -> ChatSession:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFound(session_id)
        session = self._load(path)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def create(
        self,
        name: str,
        messages: Sequence[Message],
        personality: str,
        custom_personality: Optional[CustomPersonality] = None,
    ) -> ChatSession:
        now = _utc_iso()
        session = ChatSession(
            id=uuid.uuid4().hex,
            name=name,
            messages=list(messages),
            personality=personality,
            custom_personality=custom_personality,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            return self._save(session)

    def update(
        self,
        session_id: str,
        messages: Sequence[Message],
        personality: Any = UNSET,
        custom_personality: Any = UNSET,
    ) -> ChatSession:
        """Replace the transcript; personality fields change only when given."""
        with self._lock:
            current = self.get(session_id)
            changes: Dict[str, Any] = {"messages": list(messages), "updated_at": _utc_iso()}
            if personality is not UNSET:
                changes["personality"] = personality
            if custom_personality is not UNSET:
                changes["custom_personality"] = custom_personality
            return self._save(current.model_copy(update=changes))

    def rename(self, session_id: str, name: str) -> ChatSession:
        with self._lock:
            current = self.get(session_id)
            return self._save(current.model_copy(update={"name": name}))

    def delete(self, session_id: str) -> None:
        with self._lock:
            path = self._path(session_id)
            if not path.exists():
                raise SessionNotFound(session_id)
            try:
                path.unlink()
            except OSError as e:
                raise SessionStoreError(f"Failed to delete chat session: {e}") from e


# -----------------------------
# RemoteSessionStore
# -----------------------------
class RemoteSessionStore:
    """Same interface, backed by the relay server's ``/sessions`` routes."""

    def __init__(
        self,
        base_url: str = "",
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self.url = base_url.rstrip("/") + "/sessions"
        self._client = http_client or httpx.Client(timeout=timeout)

    def _call(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            r = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise SessionStoreError(f"Session service unreachable: {type(e).__name__}") from e
        if r.status_code == 404:
            raise SessionNotFound(url.rsplit("/", 1)[-1])
        if not r.is_success:
            try:
                message = r.json().get("error")
            except (ValueError, AttributeError):
                message = None
            raise SessionStoreError(message or f"Session request failed with status {r.status_code}")
        if r.status_code == 204 or not r.content:
            return None
        try:
            return r.json()
        except ValueError as e:
            raise SessionStoreError("Session service returned invalid JSON") from e

    @staticmethod
    def _session(data: Any) -> ChatSession:
        try:
            return ChatSession.model_validate(data)
        except ValidationError as e:
            raise SessionStoreError("Session service returned an invalid record") from e

    def list(self) -> List[ChatSession]:
        data = self._call("GET", self.url) or []
        return [self._session(item) for item in data]

    def get(self, session_id: str) -> ChatSession:
        return self._session(self._call("GET", f"{self.url}/{session_id}"))

    def create(
        self,
        name: str,
        messages: Sequence[Message],
        personality: str,
        custom_personality: Optional[CustomPersonality] = None,
    ) -> ChatSession:
        body = {
            "name": name,
            "messages": [m.model_dump(mode="json") for m in messages],
            "personality": personality,
            "custom_personality": custom_personality.model_dump() if custom_personality else None,
        }
        return self._session(self._call("POST", self.url, json=body))

    def update(
        self,
        session_id: str,
        messages: Sequence[Message],
        personality: Any = UNSET,
        custom_personality: Any = UNSET,
    ) -> ChatSession:
        body: Dict[str, Any] = {"messages": [m.model_dump(mode="json") for m in messages]}
        if personality is not UNSET:
            body["personality"] = personality
        if custom_personality is not UNSET:
            body["custom_personality"] = (
                custom_personality.model_dump() if custom_personality is not None else None
            )
        return self._session(self._call("PUT", f"{self.url}/{session_id}", json=body))

    def rename(self, session_id: str, name: str) -> ChatSession:
        return self._session(self._call("PATCH", f"{self.url}/{session_id}", json={"name": name}))

    def delete(self, session_id: str) -> None:
        self._call("DELETE", f"{self.url}/{session_id}")


# -----------------------------
# SessionPersistence
# -----------------------------
class SessionPersistence:
    """Failure-reporting facade over a session backend.

    Nothing raises: creation returns the session or None, mutations return a
    bool, listing returns an empty list on failure. Failures are logged.
    """

    def __init__(self, backend: SessionBackend) -> None:
        self.backend = backend

    def list(self) -> List[ChatSession]:
        try:
            return self.backend.list()
        except SessionStoreError as e:
            logger.error("Error fetching chats: %s", e)
            return []

    def get(self, session_id: str) -> Optional[ChatSession]:
        try:
            return self.backend.get(session_id)
        except SessionStoreError as e:
            logger.error("Error loading chat %s: %s", session_id, e)
            return None

    def create(
        self,
        name: str,
        messages: Sequence[Message],
        personality: str,
        custom_personality: Optional[CustomPersonality] = None,
    ) -> Optional[ChatSession]:
        try:
            return self.backend.create(name, messages, personality, custom_personality)
        except SessionStoreError as e:
            logger.error("Error saving chat: %s", e)
            return None

    def update(
        self,
        session_id: str,
        messages: Sequence[Message],
        personality: Any = UNSET,
        custom_personality: Any = UNSET,
    ) -> bool:
        try:
            self.backend.update(session_id, messages, personality, custom_personality)
        except SessionStoreError as e:
            logger.error("Error updating chat %s: %s", session_id, e)
            return False
        return True

    def rename(self, session_id: str, name: str) -> bool:
        try:
            self.backend.rename(session_id, name)
        except SessionStoreError as e:
            logger.error("Error renaming chat %s: %s", session_id, e)
            return False
        return True

    def delete(self, session_id: str) -> bool:
        try:
            self.backend.delete(session_id)
        except SessionStoreError as e:
            logger.error("Error deleting chat %s: %s", session_id, e)
            return False
        return True
