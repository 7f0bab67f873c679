"""Gemini (Google Generative Language API) Provider 适配器。

- URL: {base}/models/{model}:generateContent，base 自动补全 /v1beta
- 认证: 凭据作为查询参数 key 传递
- assistant 角色改名为 model；system 轮次放入 system_instruction。

该种类没有流式归一化实现。
"""

from typing import Any, Dict, List, Sequence

from dreamquill_core.domain.exceptions import MalformedResponse
from dreamquill_core.domain.models import ChatTurn, VendorProfile
from dreamquill_core.providers.base import HttpAdapter, split_system_turns


def normalize_gemini_base(base_address: str) -> str:
    """去掉结尾斜杠，未带版本号时补上 /v1beta。"""

    trimmed = base_address.rstrip("/")
    if (
        trimmed.endswith("/v1")
        or trimmed.endswith("/v1beta")
        or "/v1/" in trimmed
        or "/v1beta/" in trimmed
    ):
        return trimmed
    return f"{trimmed}/v1beta"


def parse_gemini_model_list(payload: Any) -> List[str]:
    """解析 ``{"models": [{"name": ...}]}``，name 缺失时退回 id。"""

    models = payload.get("models") if isinstance(payload, dict) else None
    if not isinstance(models, list):
        raise MalformedResponse(f"unexpected gemini models payload: {payload!r}", raw=payload)
    names: List[str] = []
    for item in models:
        if not isinstance(item, dict):
            continue
        name = item.get("name")
        if not isinstance(name, str):
            name = item.get("id")
        if isinstance(name, str):
            names.append(name)
    return names


class GeminiClient(HttpAdapter):
    """Gemini 客户端实现。"""

    name = "gemini"
    supports_streaming = False

    async def chat_once(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> str:
        base = normalize_gemini_base(profile.base_address)
        data = await self._post_json(
            f"{base}/models/{profile.model}:generateContent",
            self.build_payload(history),
            headers={"Content-Type": "application/json"},
            params={"key": profile.credential},
        )
        return self.parse_response(data)

    async def list_models(self, profile: VendorProfile) -> List[str]:
        base = normalize_gemini_base(profile.base_address)
        data = await self._get_json(f"{base}/models", params={"key": profile.credential})
        return parse_gemini_model_list(data)

    @staticmethod
    def build_payload(history: Sequence[ChatTurn]) -> Dict[str, Any]:
        system_prompt, turns = split_system_turns(history)
        payload: Dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if t.role == "assistant" else "user",
                    "parts": [{"text": t.content}],
                }
                for t in turns
            ],
        }
        if system_prompt is not None:
            payload["system_instruction"] = {"parts": [{"text": system_prompt}]}
        return payload

    @staticmethod
    def parse_response(data: Any) -> str:
        """拼接第一个 candidate 的所有 text part。

        没有 parts 时依次退回 candidate.output、顶层 text 字段。
        """

        if not isinstance(data, dict):
            return ""
        candidates = data.get("candidates")
        if isinstance(candidates, list) and candidates:
            first = candidates[0] if isinstance(candidates[0], dict) else {}
            content = first.get("content")
            parts = content.get("parts") if isinstance(content, dict) else None
            if isinstance(parts, list):
                return "".join(
                    p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str)
                )
            output = first.get("output")
            if isinstance(output, str):
                return output
        text = data.get("text")
        return text if isinstance(text, str) else ""
