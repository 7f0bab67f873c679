"""对外 API 服务模块。

ChatService 把会话存储、密钥存储、CompletionGateway 与 StreamSessionEngine
组装在一起，提供桌面端/HTTP 层直接调用的操作：流式发送、一次性发送、
分支、取消、模型列表与健康检查。命令分发与路由本身不在这里。

存储调用是同步的（可能因繁忙重试而 sleep），统一放到工作线程执行，
不阻塞事件循环。
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from dreamquill_core.config.settings import settings
from dreamquill_core.domain.conversation import Conversation
from dreamquill_core.domain.exceptions import BusinessError, EmptyReply, ValidationError
from dreamquill_core.domain.models import ChatTurn, VendorKind, VendorProfile
from dreamquill_core.infrastructure.logging.logger import logger
from dreamquill_core.infrastructure.secrets import EnvSecretStore, SecretStore, resolve_credential
from dreamquill_core.infrastructure.storage.json_store import JsonConversationStore
from dreamquill_core.infrastructure.storage.sqlite_store import SqliteConversationStore
from dreamquill_core.providers import create_gateway
from dreamquill_core.providers.gateway import CompletionGateway
from dreamquill_core.providers.registry import get_vendor_config
from dreamquill_core.sessions.engine import StreamSessionEngine
from dreamquill_core.sessions.events import EventSink, QueueEventSink
from dreamquill_core.sessions.registry import SessionRegistry


def create_store(cfg=settings):
    """按 store_backend 配置创建会话存储。"""

    if cfg.store_backend == "sqlite":
        store = SqliteConversationStore(path=cfg.database_path, busy_timeout=cfg.store_busy_timeout)
        store.initialize()
        return store
    return JsonConversationStore(root=cfg.storage_root)


class ChatService:
    def __init__(
        self,
        store=None,
        sink: Optional[EventSink] = None,
        gateway: Optional[CompletionGateway] = None,
        secrets: Optional[SecretStore] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self._store = store if store is not None else create_store()
        self._sink = sink if sink is not None else QueueEventSink()
        self._gateway = gateway or create_gateway()
        self._secrets = secrets if secrets is not None else EnvSecretStore()
        self._engine = StreamSessionEngine(self._gateway, self._store, self._sink, registry=registry)

    @property
    def engine(self) -> StreamSessionEngine:
        return self._engine

    @property
    def store(self):
        return self._store

    @property
    def sink(self) -> EventSink:
        return self._sink

    # ---- Profile 选择 ----

    def pick_profile(self, conversation_id: Optional[str], profile_id: Optional[int]) -> VendorProfile:
        """确定本次交换使用的 Profile，并解析凭据。

        规则：
        1. 会话已绑定 Profile：显式指定了不同的 profile_id 时改绑，否则沿用。
        2. 会话未绑定：绑定显式指定的或默认的 Profile。
        3. 没有会话：使用显式指定的或默认的 Profile。
        """

        if conversation_id is not None:
            conv = self._store.get_conversation(conversation_id)
            if conv is None:
                raise ValidationError(code="CONVERSATION_NOT_FOUND", message=f"会话 {conversation_id} 不存在")
            current = self._store.get_profile(conv.profile_id) if conv.profile_id is not None else None
            if current is not None and (profile_id is None or profile_id == current.id):
                resolved = current
            else:
                resolved = self._explicit_or_default(profile_id)
                self._store.set_conversation_profile(conversation_id, resolved.id)
        else:
            resolved = self._explicit_or_default(profile_id)
        return resolve_credential(resolved, self._secrets)

    def _explicit_or_default(self, profile_id: Optional[int]) -> VendorProfile:
        if profile_id is not None:
            profile = self._store.get_profile(profile_id)
            if profile is None:
                raise ValidationError(code="PROFILE_NOT_FOUND", message="指定的模型服务不存在")
            return profile
        profile = self._store.get_default_profile()
        if profile is None:
            raise ValidationError(code="NO_PROFILE", message="尚未配置模型服务，请先创建模型服务")
        return profile

    def _resolve_for_listing(self, profile_id: Optional[int]) -> VendorProfile:
        return resolve_credential(self._explicit_or_default(profile_id), self._secrets)

    # ---- 对话 ----

    def _prepare(
        self,
        prompt: str,
        conversation_id: Optional[str],
        profile_id: Optional[int],
        regen_turn_id: Optional[str] = None,
    ) -> Tuple[str, VendorProfile, List[ChatTurn]]:
        """选定 Profile、创建/绑定会话、写入用户轮次（或截断以重新生成），返回完整历史。"""

        profile = self.pick_profile(conversation_id, profile_id)
        if conversation_id is None:
            conversation_id = self._store.create_conversation(f"{profile.display_name} 会话", profile.id).id

        if regen_turn_id is not None:
            target = next((t for t in self._store.list_turns(conversation_id) if t.id == regen_turn_id), None)
            if target is None:
                raise ValidationError(code="TURN_NOT_FOUND", message="待重新生成的消息不存在")
            if target.role != "assistant":
                raise ValidationError(code="INVALID_REQUEST", message="仅支持对助手消息重新生成")
            self._store.delete_turns_from(conversation_id, regen_turn_id)
        else:
            self._store.append_turn(conversation_id, "user", prompt)

        return conversation_id, profile, self._store.load_history(conversation_id)

    async def send_chat_stream(
        self,
        session_id: str,
        prompt: str,
        conversation_id: Optional[str] = None,
        profile_id: Optional[int] = None,
        stream: bool = True,
        debug: bool = False,
        regen_turn_id: Optional[str] = None,
    ) -> str:
        """启动一次可取消的流式对话，返回会话 ID。

        前端需订阅 meta/log/chunk/error/end 事件，并根据 session_id 过滤所属事件。
        """

        prompt_trimmed = prompt.strip()
        if regen_turn_id is not None and prompt_trimmed:
            raise ValidationError(code="INVALID_REQUEST", message="prompt 与 regen_turn_id 不可同时提供")
        if regen_turn_id is not None and conversation_id is None:
            raise ValidationError(code="INVALID_REQUEST", message="重新生成需要指定会话 ID")
        if regen_turn_id is None and not prompt_trimmed:
            raise ValidationError(code="EMPTY_PROMPT", message="发送内容不能为空")

        conversation_id, profile, history = await asyncio.to_thread(
            self._prepare, prompt_trimmed, conversation_id, profile_id, regen_turn_id
        )
        logger.info(
            "chat.stream",
            extra={"extra": {
                "session_id": session_id,
                "conversation_id": conversation_id,
                "action": "regenerate" if regen_turn_id is not None else "send",
                "prompt_len": len(prompt_trimmed),
                **profile.describe(),
            }},
        )
        debug_message = None
        if debug:
            debug_message = (
                f"request -> provider={profile.display_name} type={profile.kind.value} "
                f"base={profile.base_address} model={profile.model} "
                f"chat_id={conversation_id} msgs={len(history)}"
            )
        self._engine.begin(
            session_id,
            conversation_id,
            profile,
            history,
            prefer_streaming=stream,
            debug_message=debug_message,
        )
        return conversation_id

    async def send_chat(
        self,
        prompt: str,
        conversation_id: Optional[str] = None,
        profile_id: Optional[int] = None,
    ) -> Tuple[str, str]:
        """一次性对话：返回 (会话 ID, 回复文本)，回复会被持久化。"""

        prompt_trimmed = prompt.strip()
        if not prompt_trimmed:
            raise ValidationError(code="EMPTY_PROMPT", message="发送内容不能为空")
        conversation_id, profile, history = await asyncio.to_thread(
            self._prepare, prompt_trimmed, conversation_id, profile_id
        )
        reply = await self._gateway.chat_once(profile, history)
        if not reply:
            raise EmptyReply()
        await asyncio.to_thread(self._store.append_turn, conversation_id, "assistant", reply)
        return conversation_id, reply

    async def branch_conversation(
        self,
        conversation_id: str,
        title: Optional[str] = None,
        until_turn_id: Optional[str] = None,
    ) -> Conversation:
        """从已有会话分出一个新会话，可截止到某条消息（含）。"""

        title = title or f"Chat {conversation_id} 分支"
        conv = await asyncio.to_thread(
            self._store.clone_conversation_until, conversation_id, title, until_turn_id
        )
        logger.info(
            "chat.branch",
            extra={"extra": {"conversation_id": conversation_id, "new_conversation_id": conv.id, "until": until_turn_id}},
        )
        return conv

    def cancel_stream(self, session_id: str) -> None:
        self._engine.cancel(session_id)

    async def join(self) -> None:
        await self._engine.join()

    # ---- 模型与健康检查 ----

    async def list_models(self, profile_id: Optional[int] = None) -> List[str]:
        profile = await asyncio.to_thread(self._resolve_for_listing, profile_id)
        return await self._gateway.list_models(profile)

    async def health_check(self, profile_id: Optional[int] = None) -> Dict[str, Any]:
        """尝试列出模型并返回可用性；厂商错误不会抛出。"""

        profile = await asyncio.to_thread(self._resolve_for_listing, profile_id)
        return await self._probe(profile)

    async def health_check_preview(
        self,
        kind: str,
        base_address: str,
        credential: str,
        model: str,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """使用未保存的 Profile 配置进行健康检查。"""

        vendor = get_vendor_config(kind)
        profile = VendorProfile(
            id=None,
            display_name=name or "临时健康检查",
            kind=VendorKind.parse(kind),
            base_address=base_address or vendor.default_base_url,
            credential=credential,
            model=model,
        )
        return await self._probe(profile)

    async def _probe(self, profile: VendorProfile) -> Dict[str, Any]:
        result: Dict[str, Any] = {"ok": True, **profile.describe()}
        try:
            models = await self._gateway.list_models(profile)
        except BusinessError as e:
            logger.warning(
                f"health check failed: {e}",
                extra={"extra": {"code": e.code, **profile.describe()}},
            )
            result["ok"] = False
            result["error"] = str(e)
            return result
        result["models"] = len(models)
        return result
