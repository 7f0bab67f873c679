"""OpenAI 兼容 Provider 适配器。

接口风格：
- URL: {base}/v1/chat/completions
- 认证: Authorization: Bearer <api_key>
- 流式: SSE，每个 data 块为一个 chat.completion.chunk，以 ``data: [DONE]`` 结束。

本实现只依赖公共字段：model/messages/stream。OpenAI Responses 种类目前沿用
同一套 chat/completions 线协议。
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from dreamquill_core.domain.exceptions import TransportError
from dreamquill_core.domain.models import ChatTurn, VendorProfile
from dreamquill_core.providers.base import DeltaStream, HttpAdapter, join_url, parse_model_list
from dreamquill_core.providers.sse import SseFramer, is_done


class OpenAIClient(HttpAdapter):
    """OpenAI 兼容协议客户端实现。"""

    name = "openai"
    supports_streaming = True

    # ---- 非流式 ----

    async def chat_once(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> str:
        payload = self.build_payload(profile, history, stream=False)
        data = await self._post_json(self._chat_url(profile), payload, headers=self._headers(profile))
        return self.parse_response(data)

    # ---- 流式 ----

    async def stream_chat(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> DeltaStream:
        """发起流式请求并返回 DeltaStream。

        请求发送和状态码检查在这里完成，失败直接抛出（调用方据此回退到
        一次性调用）；之后读取过程中的错误从迭代器中抛出。
        """

        payload = self.build_payload(profile, history, stream=True)
        client = self._client()
        try:
            request = client.build_request(
                "POST",
                self._chat_url(profile),
                json=payload,
                headers={**self._headers(profile), "Accept": "text/event-stream"},
            )
            resp = await client.send(request, stream=True)
        except httpx.RequestError as e:
            await client.aclose()
            raise TransportError(str(e) or type(e).__name__, provider=self.name)
        except BaseException:
            await client.aclose()
            raise

        if not resp.is_success:
            try:
                body = (await resp.aread()).decode("utf-8", errors="replace")
            except httpx.RequestError:
                body = ""
            finally:
                await resp.aclose()
                await client.aclose()
            self._raise_for_status(resp.status_code, body)

        async def close() -> None:
            try:
                await resp.aclose()
            finally:
                await client.aclose()

        return DeltaStream(self._iter_deltas(resp), on_close=close)

    async def _iter_deltas(self, resp: httpx.Response) -> AsyncIterator[str]:
        framer = SseFramer()
        try:
            async for chunk in resp.aiter_bytes():
                for data in framer.feed(chunk):
                    if is_done(data):
                        return
                    delta = self.parse_stream_delta(data)
                    if delta:
                        yield delta
        except httpx.RequestError as e:
            # 流不可恢复，需要重新发起请求
            raise TransportError(str(e) or type(e).__name__, provider=self.name)
        tail = framer.finish()
        if tail is not None and not is_done(tail):
            delta = self.parse_stream_delta(tail)
            if delta:
                yield delta

    # ---- 模型列表 ----

    async def list_models(self, profile: VendorProfile) -> List[str]:
        data = await self._get_json(
            join_url(profile.base_address, "/v1/models"),
            headers={"Authorization": f"Bearer {profile.credential}"},
        )
        return parse_model_list(data)

    # ---- 辅助方法 ----

    def _chat_url(self, profile: VendorProfile) -> str:
        return join_url(profile.base_address, "/v1/chat/completions")

    def _headers(self, profile: VendorProfile) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {profile.credential}",
            "Content-Type": "application/json",
        }

    def build_payload(self, profile: VendorProfile, history: Sequence[ChatTurn], stream: bool) -> Dict[str, Any]:
        return {
            "model": profile.model,
            "messages": [{"role": t.role, "content": t.content} for t in history],
            "stream": stream,
        }

    @staticmethod
    def parse_response(data: Any) -> str:
        """读取 choices[0].message.content，缺失时返回空串。"""

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            return ""
        return content if isinstance(content, str) else ""

    @staticmethod
    def parse_stream_delta(data: str) -> Optional[str]:
        """解析单个 data 块中的 choices[0].delta.content。

        无法解析的 JSON（心跳帧等）与缺少该字段的块一样视为“无增量”。
        """

        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            return None
        try:
            content = payload["choices"][0]["delta"]["content"]
        except (KeyError, IndexError, TypeError):
            return None
        return content if isinstance(content, str) else None


class OpenAIResponsesClient(OpenAIClient):
    """OpenAI Responses 种类，线协议与 OpenAI 兼容种类一致。"""

    name = "openai-response"
