import json

import httpx
import pytest

from dreamquill_core.domain.exceptions import RequestFailed
from dreamquill_core.domain.models import ChatTurn, VendorKind, VendorProfile
from dreamquill_core.providers.claude_client import ClaudeClient
from dreamquill_core.providers.gateway import CompletionGateway
from dreamquill_core.providers.openai_client import OpenAIClient, OpenAIResponsesClient
from dreamquill_core.providers.registry import get_vendor_config


class SettingsStub:
    http_timeout = 1.0
    connect_timeout = 1.0
    anthropic_version = "2023-06-01"
    claude_max_tokens = 16


def _profile(kind, base="http://vendor.local"):
    return VendorProfile(id=1, display_name="p", kind=kind, base_address=base, credential="k", model="m")


HISTORY = [ChatTurn(role="user", content="hi")]


def test_adapter_selection_by_kind():
    gw = CompletionGateway(SettingsStub())
    assert isinstance(gw.adapter_for(VendorKind.OPENAI_COMPATIBLE), OpenAIClient)
    assert isinstance(gw.adapter_for("openai-response"), OpenAIResponsesClient)
    assert isinstance(gw.adapter_for("Anthropic"), ClaudeClient)
    # 未知种类按 OpenAI 兼容协议处理
    assert isinstance(gw.adapter_for("something-else"), OpenAIClient)


def test_vendor_registry_defaults():
    assert get_vendor_config("google").default_base_url == "https://generativelanguage.googleapis.com"
    assert get_vendor_config("claude").supports_streaming is False
    assert get_vendor_config(VendorKind.OPENAI_COMPATIBLE).supports_streaming is True


@pytest.mark.asyncio
async def test_non_streaming_kind_degenerates_to_single_delta():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"content": [{"type": "text", "text": "whole answer"}]})

    gw = CompletionGateway(SettingsStub(), transport=httpx.MockTransport(handler))
    stream = await gw.stream_chat(_profile(VendorKind.CLAUDE), HISTORY)
    # 首次迭代前不发请求
    assert calls == []
    async with stream:
        deltas = [d async for d in stream]
    assert deltas == ["whole answer"]
    assert calls == ["/v1/messages"]


@pytest.mark.asyncio
async def test_degenerate_stream_empty_text_yields_nothing():
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": []}}]})

    gw = CompletionGateway(SettingsStub(), transport=httpx.MockTransport(handler))
    stream = await gw.stream_chat(_profile(VendorKind.GEMINI), HISTORY)
    async with stream:
        assert [d async for d in stream] == []


@pytest.mark.asyncio
async def test_degenerate_stream_surfaces_errors_while_iterating():
    gw = CompletionGateway(SettingsStub(), transport=httpx.MockTransport(lambda r: httpx.Response(500, text="x")))
    stream = await gw.stream_chat(_profile(VendorKind.CLAUDE), HISTORY)
    with pytest.raises(RequestFailed):
        async with stream:
            async for _ in stream:
                pass


@pytest.mark.asyncio
async def test_streaming_kind_uses_sse():
    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=b'data: {"choices":[{"delta":{"content":"x"}}]}\n\ndata: [DONE]\n\n')

    gw = CompletionGateway(SettingsStub(), transport=httpx.MockTransport(handler))
    stream = await gw.stream_chat(_profile(VendorKind.OPENAI_COMPATIBLE), HISTORY)
    async with stream:
        assert [d async for d in stream] == ["x"]


@pytest.mark.asyncio
async def test_custom_adapters_are_used():
    class EchoAdapter:
        name = "echo"
        supports_streaming = False

        async def chat_once(self, profile, history):
            return history[-1].content

        async def list_models(self, profile):
            return ["echo-1"]

    gw = CompletionGateway(SettingsStub(), adapters={VendorKind.OPENAI_COMPATIBLE: EchoAdapter()})
    profile = _profile(VendorKind.OPENAI_COMPATIBLE)
    assert await gw.chat_once(profile, HISTORY) == "hi"
    assert await gw.list_models(profile) == ["echo-1"]
