"""Claude (Anthropic Messages API) Provider 适配器。

- URL: {base}/v1/messages
- 认证: x-api-key 头 + 固定的 anthropic-version 头
- system 轮次不进入 messages，而是空行拼接后放入顶层 system 字段。

该种类没有流式归一化实现，调用方必须走一次性路径
（CompletionGateway 会自动退化）。
"""

from typing import Any, Dict, List, Sequence

from dreamquill_core.domain.models import ChatTurn, VendorProfile
from dreamquill_core.providers.base import HttpAdapter, join_url, parse_model_list, split_system_turns


class ClaudeClient(HttpAdapter):
    """Claude 客户端实现。"""

    name = "claude"
    supports_streaming = False

    async def chat_once(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> str:
        payload = self.build_payload(profile, history)
        data = await self._post_json(
            join_url(profile.base_address, "/v1/messages"),
            payload,
            headers={**self._headers(profile), "Content-Type": "application/json"},
        )
        return self.parse_response(data)

    async def list_models(self, profile: VendorProfile) -> List[str]:
        data = await self._get_json(join_url(profile.base_address, "/v1/models"), headers=self._headers(profile))
        return parse_model_list(data)

    def _headers(self, profile: VendorProfile) -> Dict[str, str]:
        return {
            "x-api-key": profile.credential,
            "anthropic-version": self._settings.anthropic_version,
        }

    def build_payload(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> Dict[str, Any]:
        system_prompt, turns = split_system_turns(history)
        payload: Dict[str, Any] = {
            "model": profile.model,
            "max_tokens": self._settings.claude_max_tokens,
            "messages": [
                {
                    # 除 assistant 以外的角色都按 user 发送
                    "role": "assistant" if t.role == "assistant" else "user",
                    "content": [{"type": "text", "text": t.content}],
                }
                for t in turns
            ],
        }
        if system_prompt is not None:
            payload["system"] = system_prompt
        return payload

    @staticmethod
    def parse_response(data: Any) -> str:
        """按顺序拼接 content 数组中所有 text 块。"""

        blocks = data.get("content") if isinstance(data, dict) else None
        if not isinstance(blocks, list):
            return ""
        return "".join(
            b["text"] for b in blocks if isinstance(b, dict) and isinstance(b.get("text"), str)
        )
