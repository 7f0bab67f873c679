"""厂商种类配置。

本模块把“厂商种类”与其静态属性集中在一处：

- default_base_url: 新建 Profile 未填写地址时使用的默认地址。
- supports_streaming: 该种类是否有流式归一化实现；不支持的种类在
  CompletionGateway 中退化为一次性调用。"""

from dataclasses import dataclass
from typing import Mapping

from dreamquill_core.domain.models import VendorKind


@dataclass(frozen=True)
class VendorConfig:
    """某个厂商种类的整体配置。"""

    kind: VendorKind
    default_base_url: str
    supports_streaming: bool


OPENAI_CONFIG = VendorConfig(
    kind=VendorKind.OPENAI_COMPATIBLE,
    default_base_url="https://api.openai.com",
    supports_streaming=True,
)

OPENAI_RESPONSES_CONFIG = VendorConfig(
    kind=VendorKind.OPENAI_RESPONSES,
    default_base_url="https://api.openai.com",
    supports_streaming=True,
)

CLAUDE_CONFIG = VendorConfig(
    kind=VendorKind.CLAUDE,
    default_base_url="https://api.anthropic.com",
    supports_streaming=False,
)

GEMINI_CONFIG = VendorConfig(
    kind=VendorKind.GEMINI,
    default_base_url="https://generativelanguage.googleapis.com",
    supports_streaming=False,
)


VENDOR_REGISTRY: Mapping[VendorKind, VendorConfig] = {
    VendorKind.OPENAI_COMPATIBLE: OPENAI_CONFIG,
    VendorKind.OPENAI_RESPONSES: OPENAI_RESPONSES_CONFIG,
    VendorKind.CLAUDE: CLAUDE_CONFIG,
    VendorKind.GEMINI: GEMINI_CONFIG,
}


def get_vendor_config(name: "str | VendorKind") -> VendorConfig:
    """根据名称获取 VendorConfig，名称不区分大小写，支持别名。"""

    return VENDOR_REGISTRY[VendorKind.parse(name)]
