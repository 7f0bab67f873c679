import json

import httpx
import pytest

from dreamquill_core.domain.exceptions import MalformedResponse
from dreamquill_core.domain.models import ChatTurn, VendorKind, VendorProfile
from dreamquill_core.providers.gemini_client import GeminiClient, normalize_gemini_base, parse_gemini_model_list


class SettingsStub:
    http_timeout = 1.0
    connect_timeout = 1.0


PROFILE = VendorProfile(
    id=3,
    display_name="gemini",
    kind=VendorKind.GEMINI,
    base_address="https://generativelanguage.googleapis.com/",
    credential="gk",
    model="gemini-test",
)


def test_normalize_gemini_base():
    assert normalize_gemini_base("https://g.example.com/") == "https://g.example.com/v1beta"
    assert normalize_gemini_base("https://g.example.com/v1") == "https://g.example.com/v1"
    assert normalize_gemini_base("https://g.example.com/v1beta/") == "https://g.example.com/v1beta"
    assert normalize_gemini_base("https://g.example.com/v1/proxy") == "https://g.example.com/v1/proxy"


@pytest.mark.asyncio
async def test_gemini_request_shape():
    captured = {}

    def handler(request):
        captured["url"] = request.url
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": "A"}, {"text": "B"}]}}]},
        )

    client = GeminiClient(SettingsStub(), transport=httpx.MockTransport(handler))
    history = [
        ChatTurn(role="system", content="sys"),
        ChatTurn(role="user", content="q"),
        ChatTurn(role="assistant", content="a"),
    ]
    assert await client.chat_once(PROFILE, history) == "AB"
    assert captured["url"].path == "/v1beta/models/gemini-test:generateContent"
    assert captured["url"].params["key"] == "gk"
    body = captured["body"]
    assert body["contents"] == [
        {"role": "user", "parts": [{"text": "q"}]},
        {"role": "model", "parts": [{"text": "a"}]},
    ]
    assert body["system_instruction"] == {"parts": [{"text": "sys"}]}


def test_gemini_parse_fallbacks():
    assert GeminiClient.parse_response({"candidates": [{"output": "legacy"}]}) == "legacy"
    assert GeminiClient.parse_response({"text": "top"}) == "top"
    assert GeminiClient.parse_response({"candidates": []}) == ""


def test_gemini_model_list():
    payload = {"models": [{"name": "models/a"}, {"id": "b"}, {"other": 1}]}
    assert parse_gemini_model_list(payload) == ["models/a", "b"]
    with pytest.raises(MalformedResponse):
        parse_gemini_model_list({"data": []})


@pytest.mark.asyncio
async def test_gemini_list_models_uses_key_param():
    def handler(request):
        assert request.url.path == "/v1beta/models"
        assert request.url.params["key"] == "gk"
        return httpx.Response(200, json={"models": [{"name": "models/gemini-test"}]})

    client = GeminiClient(SettingsStub(), transport=httpx.MockTransport(handler))
    assert await client.list_models(PROFILE) == ["models/gemini-test"]
