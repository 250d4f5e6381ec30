"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Iterable, List

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """The shipped config/default.yaml."""
    return project_root / "config" / "default.yaml"


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for sessions / saved personalities during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in ["NOVA_CHAT_CONFIG", "DEEPSEEK_API_KEY", "OPENAI_API_KEY", "LOVABLE_API_KEY", "OCR_API_KEY"]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("NOVA_CHAT__"):
            monkeypatch.delenv(var, raising=False)
    yield


def sse_chunk(text: str) -> bytes:
    """One chat-completions delta record."""
    payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def sse_body(deltas: Iterable[str], done: bool = True) -> bytes:
    body = b"".join(sse_chunk(d) for d in deltas)
    if done:
        body += b"data: [DONE]\n\n"
    return body


class Recorder:
    """Collects relay callbacks in call order."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    def on_delta(self, text: str) -> None:
        self.events.append(("delta", text))

    def on_done(self) -> None:
        self.events.append(("done",))

    def on_error(self, message: str) -> None:
        self.events.append(("error", message))

    @property
    def deltas(self) -> List[str]:
        return [e[1] for e in self.events if e[0] == "delta"]

    @property
    def kinds(self) -> List[str]:
        return [e[0] for e in self.events]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
