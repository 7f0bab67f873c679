"""流式会话引擎。

每个会话对应一个独立的后台 asyncio.Task，状态机：

    Created -> Streaming -> {Cancelled, Completed, Failed}

- begin() 立即返回，结果只通过事件（meta/log/chunk/error/end）告知调用方。
- 后台任务每一步都让“下一个增量”和“取消信号”赛跑；取消胜出时取消
  正在进行的网络读取，已累积的文本仍会被保存。
- 收尾（finalize）在所有退出路径上恰好执行一次：累积文本非空时写入一条
  assistant 轮次，移除注册表条目，发出 end 事件。
"""

import asyncio
from typing import Any, Awaitable, Dict, List, Optional, Sequence

from dreamquill_core.domain.conversation import ConversationStore
from dreamquill_core.domain.exceptions import BusinessError, EmptyReply, StoreError
from dreamquill_core.domain.models import ChatTurn, EventKind, SessionEvent, VendorProfile
from dreamquill_core.infrastructure.logging.logger import logger
from dreamquill_core.providers.base import DeltaStream
from dreamquill_core.providers.gateway import CompletionGateway
from dreamquill_core.sessions.events import EventSink
from dreamquill_core.sessions.registry import CancellationControl, SessionRegistry

CANCELLED_MESSAGE = "用户已取消当前回复"

_EOF = object()


async def _next_delta(stream: DeltaStream) -> Any:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _EOF


class StreamSessionEngine:
    def __init__(
        self,
        gateway: CompletionGateway,
        store: ConversationStore,
        sink: EventSink,
        registry: Optional[SessionRegistry] = None,
    ):
        self._gateway = gateway
        self._store = store
        self._sink = sink
        self._registry = registry if registry is not None else SessionRegistry()
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def begin(
        self,
        session_id: str,
        conversation_id: str,
        profile: VendorProfile,
        history: Sequence[ChatTurn],
        prefer_streaming: bool = True,
        debug_message: Optional[str] = None,
    ) -> "asyncio.Task[None]":
        """启动后台会话任务并立即返回。

        同一 session_id 仍有旧任务时，旧令牌被触发取消，新任务等待旧任务
        收尾后才开始发事件，保证同一 id 下不会有两个任务同时推送。
        debug_message 非空时紧跟 meta 事件以 log 事件发出。
        返回的 Task 仅供关闭/测试时等待，调用方不需要处理它。
        """

        control, _ = self._registry.register(session_id)
        predecessor = self._tasks.get(session_id)
        task = asyncio.create_task(
            self._run(
                session_id,
                conversation_id,
                profile,
                list(history),
                prefer_streaming,
                control,
                predecessor,
                debug_message,
            ),
            name=f"chat-session:{session_id}",
        )
        self._tasks[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._forget(sid, t))
        logger.info(
            "session.begin",
            extra={"extra": {
                "session_id": session_id,
                "conversation_id": conversation_id,
                "prefer_streaming": prefer_streaming,
                "history": len(history),
                **profile.describe(),
            }},
        )
        return task

    def cancel(self, session_id: str) -> None:
        """取消会话；会话不存在或已结束时静默返回。"""

        if self._registry.cancel(session_id):
            logger.info("session.cancel", extra={"extra": {"session_id": session_id}})

    def cancel_all(self) -> None:
        for session_id in self._registry.active_ids():
            self.cancel(session_id)

    async def join(self) -> None:
        """等待所有后台会话结束。"""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ---- 后台任务 ----

    async def _run(
        self,
        session_id: str,
        conversation_id: str,
        profile: VendorProfile,
        history: List[ChatTurn],
        prefer_streaming: bool,
        control: CancellationControl,
        predecessor: "Optional[asyncio.Task[None]]",
        debug_message: Optional[str] = None,
    ) -> None:
        buffer: List[str] = []
        waiter = asyncio.ensure_future(control.wait())
        try:
            if predecessor is not None and not predecessor.done():
                await asyncio.wait({predecessor})
            self._emit("meta", session_id, {"conversation_id": conversation_id})
            if debug_message:
                self._emit("log", session_id, debug_message)
            if prefer_streaming:
                await self._run_streaming(session_id, profile, history, control, waiter, buffer)
            else:
                await self._run_once(session_id, profile, history, control, waiter, buffer)
        finally:
            waiter.cancel()
            await self._finalize(session_id, conversation_id, control, buffer)

    async def _run_streaming(
        self,
        session_id: str,
        profile: VendorProfile,
        history: List[ChatTurn],
        control: CancellationControl,
        waiter: "asyncio.Future[None]",
        buffer: List[str],
    ) -> None:
        try:
            started = await self._race(self._gateway.stream_chat(profile, history), waiter)
            if started is None:
                self._log_cancelled(session_id)
                return
            stream: DeltaStream = started.result()
        except BusinessError as exc:
            logger.warning(
                f"stream failed: {exc}",
                extra={"extra": {"session_id": session_id, "code": exc.code}},
            )
            # 回退一次性
            await self._run_once(session_id, profile, history, control, waiter, buffer, fallback=True)
            return

        async with stream:
            while True:
                if control.cancelled:
                    self._log_cancelled(session_id)
                    return
                step = await self._race(_next_delta(stream), waiter)
                if step is None:
                    self._log_cancelled(session_id)
                    return
                try:
                    delta = step.result()
                except BusinessError as exc:
                    logger.error(
                        f"stream error: {exc}",
                        extra={"extra": {"session_id": session_id, "code": exc.code, "received": len(buffer)}},
                    )
                    self._emit("error", session_id, str(exc))
                    return
                if delta is _EOF:
                    return
                buffer.append(delta)
                self._emit("chunk", session_id, delta)

    async def _run_once(
        self,
        session_id: str,
        profile: VendorProfile,
        history: List[ChatTurn],
        control: CancellationControl,
        waiter: "asyncio.Future[None]",
        buffer: List[str],
        fallback: bool = False,
    ) -> None:
        try:
            step = await self._race(self._gateway.chat_once(profile, history), waiter)
            if step is None:
                self._log_cancelled(session_id)
                return
            full: str = step.result()
        except BusinessError as exc:
            logger.error(
                f"chat_once failed: {exc}",
                extra={"extra": {"session_id": session_id, "code": exc.code, "fallback": fallback}},
            )
            self._emit("error", session_id, f"chat_once failed: {exc}" if fallback else str(exc))
            return
        if control.cancelled:
            self._log_cancelled(session_id)
            return
        if full:
            buffer.append(full)
            self._emit("chunk", session_id, full)
        else:
            self._emit("error", session_id, EmptyReply().message)

    async def _finalize(
        self,
        session_id: str,
        conversation_id: str,
        control: CancellationControl,
        buffer: List[str],
    ) -> None:
        text = "".join(buffer)
        try:
            if text:
                turn_id = await asyncio.to_thread(self._store.append_turn, conversation_id, "assistant", text)
                logger.info(
                    "session.persisted",
                    extra={"extra": {"session_id": session_id, "conversation_id": conversation_id, "turn_id": turn_id}},
                )
        except StoreError as exc:
            logger.error(
                f"persist assistant reply failed: {exc}",
                extra={"extra": {"session_id": session_id, "conversation_id": conversation_id, "code": exc.code}},
            )
            self._emit("error", session_id, f"persist failed: {exc}")
        finally:
            self._registry.remove(session_id, control)
            self._emit("end", session_id, {"conversation_id": conversation_id})

    # ---- 辅助方法 ----

    @staticmethod
    async def _race(aw: Awaitable[Any], waiter: "asyncio.Future[None]") -> "Optional[asyncio.Future[Any]]":
        """让 aw 与取消信号赛跑。

        aw 先完成（或同时完成）时返回其 Future；取消先到时取消 aw 并等待其
        退出（从而放弃进行中的网络读取），返回 None。
        """

        task = asyncio.ensure_future(aw)
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task
        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                f"abandoned call ended with {task.exception()!r}",
            )
        return None

    def _log_cancelled(self, session_id: str) -> None:
        logger.info("session.cancelled", extra={"extra": {"session_id": session_id}})
        self._emit("log", session_id, CANCELLED_MESSAGE)

    def _emit(self, kind: EventKind, session_id: str, data: Any) -> None:
        self._sink.emit(SessionEvent(kind=kind, session_id=session_id, data=data))

    def _forget(self, session_id: str, task: "asyncio.Task[None]") -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"session task crashed: {task.exception()!r}",
                extra={"extra": {"session_id": session_id}},
            )
