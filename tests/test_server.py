from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import Recorder, sse_body
from nova_chat.client import ChatRelayClient, RelayRequest
from nova_chat.models import Message
from nova_chat.personalities import resolve_system_prompt
from nova_chat.server import create_app, relay_response
from nova_chat.sessions import DiskSessionStore
from nova_chat.upstream import UpstreamClient


class SpyUpstream:
    """Mock upstream that records the last request body it received."""

    def __init__(self, status: int = 200, body: bytes = b"", json_body=None):
        self.status = status
        self.body = body
        self.json_body = json_body
        self.requests: List[Dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        if self.json_body is not None:
            return httpx.Response(self.status, json=self.json_body)
        return httpx.Response(self.status, content=self.body)

    @property
    def last(self) -> Dict:
        return self.requests[-1]


def _app(tmp_path: Path, spy: SpyUpstream, api_key="sk-test", **cfg):
    upstream = UpstreamClient(
        base_url="https://llm.test",
        api_key=api_key,
        provider="DeepSeek",
        key_name="DEEPSEEK_API_KEY",
        multimodal=cfg.pop("multimodal", False),
        transport=httpx.MockTransport(spy),
    )
    config = {"sessions": {"data_dir": str(tmp_path / "sessions")}}
    config.update(cfg)
    return create_app(config=config, upstream=upstream, sessions=DiskSessionStore(tmp_path / "sessions"))


def test_chat_relays_upstream_bytes_verbatim(tmp_path: Path):
    upstream_body = sse_body(["Arr", ", matey"]) + b": trailing comment kept\n"
    spy = SpyUpstream(body=upstream_body)
    client = TestClient(_app(tmp_path, spy))

    r = client.post("/chat", json={"messages": [{"role": "user", "content": "Hello"}], "personality": "Pirate"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["access-control-allow-origin"] == "*"
    assert r.content == upstream_body


def test_system_prompt_prepended_and_history_forwarded(tmp_path: Path):
    spy = SpyUpstream(body=sse_body(["ok"]))
    client = TestClient(_app(tmp_path, spy))

    client.post(
        "/chat",
        json={
            "messages": [
                {"role": "user", "content": "Hi there"},
                {"role": "assistant", "content": "Ahoy"},
                {"role": "user", "content": "How are you?"},
            ],
            "personality": "Pirate",
        },
    )
    sent = spy.last["messages"]
    assert sent[0] == {"role": "system", "content": resolve_system_prompt("Pirate")}
    assert [m["content"] for m in sent[1:]] == ["Hi there", "Ahoy", "How are you?"]
    assert spy.last["stream"] is True


def test_custom_personality_prompt_is_used(tmp_path: Path):
    spy = SpyUpstream(body=sse_body(["ok"]))
    client = TestClient(_app(tmp_path, spy))
    client.post(
        "/chat",
        json={
            "messages": [{"role": "user", "content": "Hi"}],
            "personality": "Custom",
            "customPersonality": {"name": "Wizard", "description": "", "prompt": "Speak in riddles."},
        },
    )
    assert spy.last["messages"][0]["content"] == "Speak in riddles."


def test_unknown_personality_uses_default(tmp_path: Path):
    spy = SpyUpstream(body=sse_body(["ok"]))
    client = TestClient(_app(tmp_path, spy))
    client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}], "personality": "Grumpy"})
    assert spy.last["messages"][0]["content"] == resolve_system_prompt("CHAOS")


def test_images_become_parts_for_multimodal_upstream(tmp_path: Path):
    spy = SpyUpstream(body=sse_body(["ok"]))
    client = TestClient(_app(tmp_path, spy, multimodal=True))
    client.post(
        "/chat",
        json={"messages": [{"role": "user", "content": "what?", "images": ["data:image/png;base64,AA"]}]},
    )
    content = spy.last["messages"][1]["content"]
    assert [p["type"] for p in content] == ["image_url", "text"]


@pytest.mark.parametrize(
    "status, expected_status, message",
    [
        (429, 429, "Rate limits exceeded, please try again later."),
        (402, 402, "Payment required, please check your DeepSeek account."),
        (500, 500, "DeepSeek API error: 500"),
        (404, 500, "DeepSeek API error: 404"),
    ],
)
def test_upstream_errors_become_json_envelopes(tmp_path: Path, status, expected_status, message):
    spy = SpyUpstream(status=status, json_body={"error": {"message": "internal detail", "code": "xyz"}})
    client = TestClient(_app(tmp_path, spy))
    r = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
    assert r.status_code == expected_status
    assert r.json() == {"error": message}
    assert r.headers["access-control-allow-origin"] == "*"


def test_missing_api_key_is_500_without_calling_upstream(tmp_path: Path):
    spy = SpyUpstream(body=sse_body(["ok"]))
    client = TestClient(_app(tmp_path, spy, api_key=None))
    r = client.post("/chat", json={"messages": [{"role": "user", "content": "Hi"}]})
    assert r.status_code == 500
    assert r.json() == {"error": "DEEPSEEK_API_KEY is not configured"}
    assert spy.requests == []


def test_invalid_body_is_400_envelope(tmp_path: Path):
    client = TestClient(_app(tmp_path, SpyUpstream()))
    r = client.post("/chat", json={"messages": [{"role": "robot", "content": "Hi"}]})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid request body"}


@pytest.mark.parametrize(
    "body",
    [b"{not json", b"null", b"[1, 2]"],
)
def test_unparseable_body_is_400_envelope(tmp_path: Path, body):
    client = TestClient(_app(tmp_path, SpyUpstream()))
    r = client.post("/chat", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"error": "Invalid request body"}


@pytest.mark.parametrize("body", [b"{not json", b'{"messages": "nope"}'])
def test_missing_api_key_is_reported_before_body_problems(tmp_path: Path, body):
    spy = SpyUpstream()
    client = TestClient(_app(tmp_path, spy, api_key=None))
    r = client.post("/chat", content=body, headers={"content-type": "application/json"})
    assert r.status_code == 500
    assert r.json() == {"error": "DEEPSEEK_API_KEY is not configured"}
    assert spy.requests == []


def test_relay_response_closes_upstream_even_if_never_iterated():
    closed: List[bool] = []

    class UpstreamBody(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield sse_body(["never read"])

        async def aclose(self) -> None:
            closed.append(True)

    async def run() -> bool:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, stream=UpstreamBody()))
        async with httpx.AsyncClient(transport=transport) as http:
            upstream = await http.send(http.build_request("POST", "https://llm.test"), stream=True)
            response = relay_response(upstream, {})
            # a caller that disconnects early never pulls the body; only the background task runs
            await response.background()
            return upstream.is_closed

    assert asyncio.run(run()) is True
    assert closed == [True]


def test_bare_preflight_succeeds(tmp_path: Path):
    client = TestClient(_app(tmp_path, SpyUpstream()))
    r = client.options("/chat")
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"
    assert "content-type" in r.headers["access-control-allow-headers"]


def test_browser_preflight_succeeds(tmp_path: Path):
    client = TestClient(_app(tmp_path, SpyUpstream()))
    r = client.options(
        "/chat",
        headers={
            "Origin": "http://ui.test",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        },
    )
    assert r.status_code == 200
    assert r.headers["access-control-allow-origin"] == "*"


def test_health(tmp_path: Path):
    client = TestClient(_app(tmp_path, SpyUpstream()))
    data = client.get("/health").json()
    assert data["ok"] is True
    assert "Pirate" in data["personalities"]


# -----------------------------
# Relay client against the real app
# -----------------------------
def test_client_end_to_end_streams_deltas(tmp_path: Path, recorder: Recorder):
    spy = SpyUpstream(body=sse_body(["Nova ", "online"]))
    http = TestClient(_app(tmp_path, spy))
    relay = ChatRelayClient("", http_client=http)

    relay.stream_chat(
        RelayRequest(
            messages=[Message(role="user", content="status?")],
            personality="Professional",
            on_delta=recorder.on_delta,
            on_done=recorder.on_done,
            on_error=recorder.on_error,
        )
    )
    assert recorder.deltas == ["Nova ", "online"]
    assert recorder.kinds[-1] == "done"


def test_client_end_to_end_rate_limit(tmp_path: Path, recorder: Recorder):
    spy = SpyUpstream(status=429, json_body={"error": "slow down"})
    relay = ChatRelayClient("", http_client=TestClient(_app(tmp_path, spy)))
    relay.stream_chat(
        RelayRequest(
            messages=[Message(role="user", content="hi")],
            on_delta=recorder.on_delta,
            on_done=recorder.on_done,
            on_error=recorder.on_error,
        )
    )
    assert recorder.events == [("error", "Rate limits exceeded, please try again later.")]


# -----------------------------
# OCR fallback for text-only upstreams
# -----------------------------
class FakeOcr:
    def __init__(self, texts: List[str]):
        self.texts = list(texts)
        self.seen: List[str] = []

    async def extract_text(self, image: str) -> str:
        self.seen.append(image)
        return self.texts[len(self.seen) - 1]


def test_two_images_are_described_in_order(tmp_path: Path):
    spy = SpyUpstream(body=sse_body(["ok"]))
    ocr = FakeOcr(["Invoice #42", "Total: 10 EUR"])
    upstream = UpstreamClient(base_url="https://llm.test", api_key="sk", transport=httpx.MockTransport(spy))
    app = create_app(config={}, upstream=upstream, ocr=ocr, sessions=DiskSessionStore(tmp_path))
    client = TestClient(app)

    r = client.post(
        "/chat",
        json={
            "messages": [
                {"role": "user", "content": "what do these say?", "images": ["data:a", "data:b"]}
            ]
        },
    )
    assert r.status_code == 200
    assert ocr.seen == ["data:a", "data:b"]
    assert spy.last["messages"][1]["content"] == (
        "[Image 1 content: Invoice #42]\n[Image 2 content: Total: 10 EUR]\n\nwhat do these say?"
    )


# -----------------------------
# Image + personality designer proxies
# -----------------------------
def _image_app(tmp_path: Path, handler, api_key="sk-img"):
    from nova_chat.images import ImageGenerator

    images = ImageGenerator(
        url="https://images.test/v1/images/generations",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )
    return create_app(config={}, upstream=UpstreamClient(base_url="https://llm.test"), images=images,
                      sessions=DiskSessionStore(tmp_path))


def test_generate_image_success(tmp_path: Path):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["model"] == "dall-e-3" and body["n"] == 1
        return httpx.Response(200, json={"data": [{"url": "https://img.test/fox.png", "revised_prompt": "A red fox"}]})

    client = TestClient(_image_app(tmp_path, handler))
    r = client.post("/generate-image", json={"prompt": "a red fox"})
    assert r.status_code == 200
    assert r.json() == {"text": "A red fox", "imageUrl": "https://img.test/fox.png"}


@pytest.mark.parametrize(
    "status, expected_status, message",
    [
        (429, 429, "Rate limits exceeded, please try again later."),
        (401, 401, "Invalid API key."),
        (500, 500, "Image generation failed: 500"),
    ],
)
def test_generate_image_errors(tmp_path: Path, status, expected_status, message):
    client = TestClient(_image_app(tmp_path, lambda request: httpx.Response(status, json={})))
    r = client.post("/generate-image", json={"prompt": "a red fox"})
    assert r.status_code == expected_status
    assert r.json() == {"error": message}


def test_generate_image_requires_prompt(tmp_path: Path):
    client = TestClient(_image_app(tmp_path, lambda request: httpx.Response(200, json={})))
    r = client.post("/generate-image", json={"prompt": "  "})
    assert r.status_code == 400
    assert r.json() == {"error": "Prompt is required"}


def test_generate_personality_extracts_definition(tmp_path: Path):
    from nova_chat.designer import PersonalityDesigner

    reply = (
        "What a fun idea!\n\n```json\n"
        '{"name": "Riddle Wizard", "description": "Speaks in riddles.", "prompt": "You are a wizard."}'
        "\n```"
    )

    def handler(request: httpx.Request) -> httpx.Response:
        sent = json.loads(request.content)["messages"]
        assert sent[0]["role"] == "system"
        assert sent[-1] == {"role": "user", "content": "make a wizard"}
        return httpx.Response(200, json={"choices": [{"message": {"content": reply}}]})

    designer = PersonalityDesigner(url="https://ai.test", api_key="k", model="m", transport=httpx.MockTransport(handler))
    app = create_app(config={}, upstream=UpstreamClient(base_url="https://llm.test"), designer=designer,
                     sessions=DiskSessionStore(tmp_path))
    r = TestClient(app).post("/generate-personality", json={"message": "make a wizard", "history": []})
    assert r.status_code == 200
    data = r.json()
    assert data["response"] == "What a fun idea!"
    assert data["personality"]["name"] == "Riddle Wizard"


# -----------------------------
# Sessions
# -----------------------------
def test_session_routes_roundtrip(tmp_path: Path):
    client = TestClient(_app(tmp_path, SpyUpstream()))

    created = client.post(
        "/sessions",
        json={
            "name": "First",
            "messages": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "yo"}],
            "personality": "Pirate",
        },
    )
    assert created.status_code == 201
    session = created.json()
    sid = session["id"]
    assert [m["content"] for m in session["messages"]] == ["hi", "yo"]

    listed = client.get("/sessions").json()
    assert [s["id"] for s in listed] == [sid]

    updated = client.put(
        f"/sessions/{sid}",
        json={"messages": session["messages"] + [{"role": "user", "content": "more"}]},
    ).json()
    assert len(updated["messages"]) == 3
    assert updated["personality"] == "Pirate"

    renamed = client.patch(f"/sessions/{sid}", json={"name": "Renamed"}).json()
    assert renamed["name"] == "Renamed"

    assert client.delete(f"/sessions/{sid}").json() == {"ok": True}
    missing = client.get(f"/sessions/{sid}")
    assert missing.status_code == 404
    assert "error" in missing.json()
