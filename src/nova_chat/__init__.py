"""Nova chat relay: personality-switchable chat over a streaming completion API.

The server half is a FastAPI application factory named ``create_app``
inside ``nova_chat/server.py`` (see :func:`create_app`). The client half
(``ChatRelayClient``, ``ConversationStore``, ``ChatController``) is what a UI
drives.

Typical usage
-------------
from nova_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .chat import ChatController, parse_image_command
from .client import ChatRelayClient, RelayRequest
from .conversation import ConversationStore
from .models import ChatSession, CustomPersonality, Message
from .personalities import BuiltIn, Custom, PersonalityLibrary, PersonalityRegistry, resolve_system_prompt
from .sessions import DiskSessionStore, RemoteSessionStore, SessionPersistence

__all__ = [
    "create_app",
    "__version__",
    "get_version",
    "BuiltIn",
    "ChatController",
    "ChatRelayClient",
    "ChatSession",
    "ConversationStore",
    "Custom",
    "CustomPersonality",
    "DiskSessionStore",
    "Message",
    "PersonalityLibrary",
    "PersonalityRegistry",
    "RelayRequest",
    "RemoteSessionStore",
    "SessionPersistence",
    "parse_image_command",
    "resolve_system_prompt",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`nova_chat.server.create_app`; the import is
    deferred so client-only users never load the server stack.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
