"""LLM Provider 集成层。

该包下的模块负责：
- 定义适配器协议与公共 HTTP 逻辑 (base)。
- SSE 分帧状态机 (sse)。
- 维护厂商种类的静态配置 (registry)。
- 各厂商的具体实现 (openai_client、claude_client、gemini_client)。
- 对外统一门面 (gateway)。
"""

from typing import Optional

import httpx

from dreamquill_core.config.settings import settings
from dreamquill_core.providers.base import DeltaStream, VendorAdapter
from dreamquill_core.providers.gateway import CompletionGateway


def create_gateway(transport: Optional[httpx.AsyncBaseTransport] = None) -> CompletionGateway:
    """使用全局配置创建 CompletionGateway。"""

    return CompletionGateway(settings, transport=transport)


__all__ = ["CompletionGateway", "DeltaStream", "VendorAdapter", "create_gateway"]
