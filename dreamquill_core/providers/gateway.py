"""CompletionGateway：所有调用方使用的统一门面。

按 VendorProfile.kind 选择适配器（每个交换只选择一次），对外提供
chat_once / stream_chat / list_models 三个操作。对没有流式实现的厂商，
stream_chat 合成一个退化流：首次迭代时执行一次 chat_once，把完整文本
作为唯一增量产出（空文本不产出增量），这样所有调用方的消费代码保持一致。

除了对外的网络调用外没有副作用，不缓存任何响应，也不做重试。
"""

from typing import AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx

from dreamquill_core.config.settings import settings as default_settings
from dreamquill_core.domain.models import ChatTurn, VendorKind, VendorProfile
from dreamquill_core.infrastructure.logging.logger import logger
from dreamquill_core.providers.base import DeltaStream, VendorAdapter
from dreamquill_core.providers.claude_client import ClaudeClient
from dreamquill_core.providers.gemini_client import GeminiClient
from dreamquill_core.providers.openai_client import OpenAIClient, OpenAIResponsesClient


def default_adapters(cfg=default_settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[VendorKind, VendorAdapter]:
    return {
        VendorKind.OPENAI_COMPATIBLE: OpenAIClient(cfg, transport=transport),
        VendorKind.OPENAI_RESPONSES: OpenAIResponsesClient(cfg, transport=transport),
        VendorKind.CLAUDE: ClaudeClient(cfg, transport=transport),
        VendorKind.GEMINI: GeminiClient(cfg, transport=transport),
    }


class CompletionGateway:
    def __init__(
        self,
        cfg=default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        adapters: Optional[Mapping[VendorKind, VendorAdapter]] = None,
    ):
        self._adapters = dict(adapters) if adapters is not None else default_adapters(cfg, transport)

    def adapter_for(self, kind: "VendorKind | str") -> VendorAdapter:
        return self._adapters[VendorKind.parse(kind)]

    async def chat_once(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> str:
        adapter = self.adapter_for(profile.kind)
        logger.debug("gateway.chat_once", extra={"extra": {"adapter": adapter.name, **profile.describe()}})
        return await adapter.chat_once(profile, history)

    async def stream_chat(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> DeltaStream:
        adapter = self.adapter_for(profile.kind)
        logger.debug(
            "gateway.stream_chat",
            extra={"extra": {"adapter": adapter.name, "streaming": adapter.supports_streaming, **profile.describe()}},
        )
        if adapter.supports_streaming:
            return await adapter.stream_chat(profile, history)
        return DeltaStream(self._single_shot(adapter, profile, list(history)))

    async def list_models(self, profile: VendorProfile) -> List[str]:
        return await self.adapter_for(profile.kind).list_models(profile)

    @staticmethod
    async def _single_shot(adapter: VendorAdapter, profile: VendorProfile, history: List[ChatTurn]) -> AsyncIterator[str]:
        full = await adapter.chat_once(profile, history)
        if full:
            yield full
