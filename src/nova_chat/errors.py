"""Stable error vocabulary shared by the relay server and its clients.

Every server-side failure is raised as a :class:`RelayError` subclass and
converted into a small ``{"error": message}`` JSON envelope at the HTTP
boundary. Upstream response bodies never travel past that boundary.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

RATE_LIMIT_MESSAGE = "Rate limits exceeded, please try again later."


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    RATE_LIMIT = "rate_limit"
    QUOTA = "quota"
    UPSTREAM = "upstream"
    TRANSPORT = "transport"
    PERSISTENCE = "persistence"
    OCR = "ocr"
    INVALID_REQUEST = "invalid_request"


class RelayError(Exception):
    """Base error carrying a kind, an HTTP status and a short public message."""

    kind: ErrorKind = ErrorKind.UPSTREAM
    status: int = 500

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status

    def to_dict(self) -> dict:
        return {"error": self.message}


class ConfigurationError(RelayError):
    """A required setting (usually an API credential) is missing."""

    kind = ErrorKind.CONFIGURATION
    status = 500


class InvalidRequestError(RelayError):
    kind = ErrorKind.INVALID_REQUEST
    status = 400


class UpstreamError(RelayError):
    """Non-success answer (or no answer at all) from a third-party API."""

    kind = ErrorKind.UPSTREAM
    status = 500

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        kind: Optional[ErrorKind] = None,
        upstream_status: Optional[int] = None,
    ) -> None:
        super().__init__(message, status=status)
        if kind is not None:
            self.kind = kind
        self.upstream_status = upstream_status

    @classmethod
    def from_status(
        cls,
        upstream_status: int,
        *,
        provider: str = "Upstream",
        quota_message: Optional[str] = None,
        generic_message: Optional[str] = None,
    ) -> "UpstreamError":
        """Map an upstream HTTP status onto the public error vocabulary.

        429 keeps its status as a rate-limit error, 402 keeps its status as a
        quota error, everything else becomes a generic 500 that only names
        the upstream status code.
        """
        if upstream_status == 429:
            return cls(
                RATE_LIMIT_MESSAGE,
                status=429,
                kind=ErrorKind.RATE_LIMIT,
                upstream_status=upstream_status,
            )
        if upstream_status == 402:
            return cls(
                quota_message or f"Payment required, please check your {provider} account.",
                status=402,
                kind=ErrorKind.QUOTA,
                upstream_status=upstream_status,
            )
        return cls(
            generic_message or f"{provider} API error: {upstream_status}",
            status=500,
            kind=ErrorKind.UPSTREAM,
            upstream_status=upstream_status,
        )


class OcrError(RelayError):
    """Text extraction failed for a single image."""

    kind = ErrorKind.OCR
    status = 502


class SessionStoreError(RelayError):
    kind = ErrorKind.PERSISTENCE
    status = 500


class SessionNotFound(SessionStoreError):
    status = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Chat session not found: {session_id}")
        self.session_id = session_id
