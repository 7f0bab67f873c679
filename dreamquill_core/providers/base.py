"""Provider 抽象接口与公共 HTTP 逻辑。

上层 CompletionGateway 不直接依赖具体厂商的 HTTP 细节，而是依赖 VendorAdapter 协议：

- 每个厂商种类实现一个 Adapter（OpenAIClient、ClaudeClient、GeminiClient）。
- Adapter 负责：把 ChatTurn 序列转成厂商请求体，把响应 JSON 归一化为纯文本。
- 支持流式的 Adapter 额外提供 stream_chat，返回 DeltaStream。

HttpAdapter 收敛了各厂商共用的部分：创建 httpx.AsyncClient、状态码检查、
JSON 解析，以及把 httpx 异常包装成业务异常。
"""

from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import httpx

from dreamquill_core.config.settings import settings as default_settings
from dreamquill_core.domain.exceptions import MalformedResponse, RateLimitError, RequestFailed, TransportError
from dreamquill_core.domain.models import ChatTurn, VendorProfile


class DeltaStream:
    """文本增量的异步迭代器，同时持有底层 HTTP 响应。

    aclose() 幂等：先关闭增量生成器，再释放连接；
    流被完整消费、出错或消费任务被取消后都应调用，
    一般通过 ``async with`` 保证。
    """

    def __init__(
        self,
        deltas: AsyncIterator[str],
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self._deltas = deltas
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "DeltaStream":
        return self

    async def __anext__(self) -> str:
        return await self._deltas.__anext__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._deltas, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def __aenter__(self) -> "DeltaStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class VendorAdapter(Protocol):
    """厂商适配器协议。

    实现者需要提供：
    - name: 厂商名称，用于日志。
    - supports_streaming: 是否实现了流式归一化。
    - chat_once / list_models: 所有厂商都必须支持。
    """

    name: str
    supports_streaming: bool

    async def chat_once(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> str:
        ...

    async def stream_chat(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> DeltaStream:
        ...

    async def list_models(self, profile: VendorProfile) -> List[str]:
        ...


class HttpAdapter:
    """基于 httpx.AsyncClient 的适配器基类。

    transport 参数透传给 httpx（测试时注入 httpx.MockTransport）。
    """

    name = "http"
    supports_streaming = False

    def __init__(self, cfg=default_settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = cfg
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self._settings.http_timeout,
            connect=getattr(self._settings, "connect_timeout", 10.0),
        )
        return httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport)

    async def stream_chat(self, profile: VendorProfile, history: Sequence[ChatTurn]) -> DeltaStream:
        raise NotImplementedError(f"{self.name} has no streaming normalizer")

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload, headers=headers, params=params)
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise TransportError(str(e) or type(e).__name__, provider=self.name)
        return self._decode(resp)

    async def _get_json(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        try:
            async with self._client() as client:
                resp = await client.get(url, headers=headers, params=params)
        except httpx.RequestError as e:
            raise TransportError(str(e) or type(e).__name__, provider=self.name)
        return self._decode(resp)

    def _decode(self, resp: httpx.Response) -> Any:
        self._raise_for_status(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError:
            raise MalformedResponse(f"{self.name} returned non-JSON body", raw=resp.text, provider=self.name)

    def _raise_for_status(self, status_code: int, body: str) -> None:
        if status_code == 429:
            raise RateLimitError(body, provider=self.name)
        if status_code < 200 or status_code >= 300:
            raise RequestFailed(status_code, body, provider=self.name)


def join_url(base: str, path: str) -> str:
    return f"{base.rstrip('/')}{path}"


def parse_model_list(payload: Any) -> List[str]:
    """解析 OpenAI/Claude 风格的模型列表：``{"data": [{"id": ...}]}``。

    同时兼容直接返回数组的网关（元素为对象或字符串）。
    """

    if isinstance(payload, dict) and isinstance(payload.get("data"), list):
        return [item["id"] for item in payload["data"] if isinstance(item, dict) and isinstance(item.get("id"), str)]
    if isinstance(payload, list):
        models: List[str] = []
        for item in payload:
            if isinstance(item, dict) and isinstance(item.get("id"), str):
                models.append(item["id"])
            elif isinstance(item, str):
                models.append(item)
        return models
    raise MalformedResponse(f"unexpected models payload: {payload!r}", raw=payload)


def split_system_turns(history: Sequence[ChatTurn]) -> "tuple[Optional[str], List[ChatTurn]]":
    """抽出 system 轮次（空行拼接），返回 (system_prompt, 其余轮次)。"""

    system_parts: List[str] = []
    rest: List[ChatTurn] = []
    for turn in history:
        if turn.role == "system":
            system_parts.append(turn.content)
        else:
            rest.append(turn)
    return ("\n\n".join(system_parts) if system_parts else None), rest
