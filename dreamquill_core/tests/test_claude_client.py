import json

import httpx
import pytest

from dreamquill_core.domain.exceptions import RequestFailed
from dreamquill_core.domain.models import ChatTurn, VendorKind, VendorProfile
from dreamquill_core.providers.claude_client import ClaudeClient


class SettingsStub:
    http_timeout = 1.0
    connect_timeout = 1.0
    anthropic_version = "2023-06-01"
    claude_max_tokens = 1024


PROFILE = VendorProfile(
    id=2,
    display_name="claude",
    kind=VendorKind.CLAUDE,
    base_address="https://api.anthropic.com",
    credential="ak",
    model="claude-test",
)


@pytest.mark.asyncio
async def test_claude_request_shape():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"content": [{"type": "text", "text": "Hel"}, {"type": "tool_use"}, {"type": "text", "text": "lo"}]},
        )

    client = ClaudeClient(SettingsStub(), transport=httpx.MockTransport(handler))
    history = [
        ChatTurn(role="system", content="rule 1"),
        ChatTurn(role="system", content="rule 2"),
        ChatTurn(role="user", content="hi"),
        ChatTurn(role="assistant", content="hey"),
        ChatTurn(role="user", content="again"),
    ]
    assert await client.chat_once(PROFILE, history) == "Hello"
    assert captured["url"] == "https://api.anthropic.com/v1/messages"
    assert captured["headers"]["x-api-key"] == "ak"
    assert captured["headers"]["anthropic-version"] == "2023-06-01"
    body = captured["body"]
    assert body["model"] == "claude-test"
    assert body["max_tokens"] == 1024
    assert body["system"] == "rule 1\n\nrule 2"
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert body["messages"][0]["content"] == [{"type": "text", "text": "hi"}]


def test_claude_payload_without_system():
    payload = ClaudeClient(SettingsStub()).build_payload(PROFILE, [ChatTurn(role="user", content="x")])
    assert "system" not in payload


def test_claude_parse_missing_content():
    assert ClaudeClient.parse_response({}) == ""
    assert ClaudeClient.parse_response({"content": "oops"}) == ""


@pytest.mark.asyncio
async def test_claude_error_status():
    client = ClaudeClient(SettingsStub(), transport=httpx.MockTransport(lambda r: httpx.Response(400, text="bad")))
    with pytest.raises(RequestFailed):
        await client.chat_once(PROFILE, [ChatTurn(role="user", content="x")])


@pytest.mark.asyncio
async def test_claude_list_models():
    def handler(request):
        assert request.url.path == "/v1/models"
        assert request.headers["x-api-key"] == "ak"
        return httpx.Response(200, json={"data": [{"id": "claude-a"}]})

    client = ClaudeClient(SettingsStub(), transport=httpx.MockTransport(handler))
    assert await client.list_models(PROFILE) == ["claude-a"]
