from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from nova_chat.designer import FALLBACK_RESPONSE, PersonalityDesigner, split_reply
from nova_chat.errors import ConfigurationError, ErrorKind, InvalidRequestError, UpstreamError
from nova_chat.models import HistoryItem


def test_split_reply_extracts_personality():
    content = (
        "Here you go!\n```json\n"
        '{"name": "Barista", "description": "Caffeinated.", "prompt": "Talk fast."}\n```\nEnjoy.'
    )
    text, personality = split_reply(content)
    assert text == "Here you go!\n\nEnjoy."
    assert personality is not None
    assert personality.name == "Barista"


def test_split_reply_without_block():
    text, personality = split_reply("Tell me more about the vibe you want.")
    assert text == "Tell me more about the vibe you want."
    assert personality is None


def test_split_reply_only_block_uses_fallback_text():
    text, personality = split_reply('```json\n{"name": "Guru", "description": "", "prompt": "Breathe."}\n```')
    assert text == FALLBACK_RESPONSE
    assert personality.prompt == "Breathe."


def test_split_reply_ignores_broken_json():
    text, personality = split_reply("Almost!\n```json\n{name: oops}\n```")
    assert text == "Almost!"
    assert personality is None


def _designer(handler, api_key="k"):
    return PersonalityDesigner(
        url="https://ai.test", api_key=api_key, model="m", transport=httpx.MockTransport(handler)
    )


def test_history_is_forwarded_between_prompt_and_message():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["messages"] = json.loads(request.content)["messages"]
        return httpx.Response(200, json={"choices": [{"message": {"content": "Sounds fun!"}}]})

    history = [HistoryItem(role="user", content="a wizard"), HistoryItem(role="assistant", content="Old or young?")]
    result = asyncio.run(_designer(handler).design("old", history))
    assert result.response == "Sounds fun!"
    assert [m["content"] for m in seen["messages"][1:]] == ["a wizard", "Old or young?", "old"]


@pytest.mark.parametrize(
    "status, expected_status, message, kind",
    [
        (429, 429, "Rate limits exceeded, please try again later.", ErrorKind.RATE_LIMIT),
        (402, 402, "API credits exhausted.", ErrorKind.QUOTA),
        (503, 500, "AI service error: 503", ErrorKind.UPSTREAM),
    ],
)
def test_designer_status_mapping(status, expected_status, message, kind):
    designer = _designer(lambda request: httpx.Response(status, text="upstream detail"))
    with pytest.raises(UpstreamError) as info:
        asyncio.run(designer.design("anything"))
    assert info.value.status == expected_status
    assert info.value.message == message
    assert info.value.kind == kind


def test_designer_requires_message_and_key():
    designer = _designer(lambda request: httpx.Response(200, json={}), api_key=None)
    with pytest.raises(InvalidRequestError):
        asyncio.run(designer.design("  "))
    with pytest.raises(ConfigurationError):
        asyncio.run(designer.design("hello"))
