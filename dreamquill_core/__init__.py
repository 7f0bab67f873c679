"""DreamQuill Core 顶层包。

该包提供多厂商对话的核心实现：厂商协议适配与 SSE 分帧、
统一的 CompletionGateway 门面、可取消的流式会话引擎，
以及配置加载、日志与会话持久化。
"""

from dreamquill_core.api.service import ChatService
from dreamquill_core.providers.gateway import CompletionGateway
from dreamquill_core.sessions.engine import StreamSessionEngine

__all__ = ["ChatService", "CompletionGateway", "StreamSessionEngine"]
