"""统一的对话与会话数据模型。

本模块定义了核心在不同厂商之间共享的标准数据结构：

- VendorKind: 支持的厂商协议种类（封闭集合）。
- VendorProfile: 一个已配置的远端模型服务。
- ChatTurn: 一条对话历史（system/user/assistant）。
- SessionEvent: 会话引擎推送给 EventSink 的生命周期/增量事件。

所有 Provider 适配器都只依赖这些模型，并负责在各自的 API JSON
和这些模型之间做转换。
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Literal, Optional


# 对话角色（与 OpenAI Chat 消息格式对齐）
Role = Literal["system", "user", "assistant"]

# 会话事件名称
EventKind = Literal["meta", "log", "chunk", "error", "end"]


class VendorKind(str, Enum):
    """厂商协议种类。"""

    OPENAI_COMPATIBLE = "openai"
    OPENAI_RESPONSES = "openai-response"
    CLAUDE = "claude"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, raw: "str | VendorKind | None") -> "VendorKind":
        """把存储中的类型字符串解析为 VendorKind。

        大小写不敏感；anthropic/google 为别名；未知取值一律按
        OpenAI 兼容协议处理。
        """

        if isinstance(raw, VendorKind):
            return raw
        key = (raw or "").strip().lower()
        if key in ("claude", "anthropic"):
            return cls.CLAUDE
        if key in ("gemini", "google"):
            return cls.GEMINI
        if key == "openai-response":
            return cls.OPENAI_RESPONSES
        return cls.OPENAI_COMPATIBLE


@dataclass(frozen=True)
class VendorProfile:
    """单个远端模型服务的静态配置。

    - id: 存储主键；临时配置（如健康检查预检）为 None。
    - credential: API Key；为空且设置了 secret_alias 时，
      由 SecretStore 延迟解析。
    """

    id: Optional[int]
    display_name: str
    kind: VendorKind
    base_address: str
    credential: str
    model: str
    secret_alias: Optional[str] = None

    def with_credential(self, credential: str) -> "VendorProfile":
        return replace(self, credential=credential)

    def describe(self) -> Dict[str, Any]:
        """日志/健康检查用的描述信息，不包含凭据。"""

        return {
            "profile_id": self.id,
            "kind": self.kind.value,
            "base": self.base_address,
            "model": self.model,
        }


@dataclass(frozen=True)
class ChatTurn:
    """一条对话历史。"""

    role: Role
    content: str


@dataclass(frozen=True)
class SessionEvent:
    """会话引擎推送的事件。

    data 的约定：
    - meta/end: {"conversation_id": ...}
    - log/error: 文本说明
    - chunk: 本次增量文本（不会重复之前的增量）
    """

    kind: EventKind
    session_id: str
    data: Any = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {"event": self.kind, "session_id": self.session_id, "data": self.data}
