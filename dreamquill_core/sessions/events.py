"""EventSink 协议与内置实现。

对核心而言事件投递是 fire-and-forget：emit 不得抛异常，投递失败由
sink 自己记录日志，不能阻塞或中断会话。
"""

import asyncio
from typing import AsyncIterator, Callable, Dict, Protocol

from dreamquill_core.domain.models import SessionEvent
from dreamquill_core.infrastructure.logging.logger import logger


class EventSink(Protocol):
    def emit(self, event: SessionEvent) -> None:
        ...


class CallbackEventSink:
    """把事件交给一个同步回调（例如桌面端的事件广播）。"""

    def __init__(self, callback: Callable[[SessionEvent], None]):
        self._callback = callback

    def emit(self, event: SessionEvent) -> None:
        try:
            self._callback(event)
        except Exception:
            logger.exception(
                f"emit {event.kind} failed",
                extra={"extra": {"session_id": event.session_id, "event": event.kind}},
            )


class QueueEventSink:
    """按 session_id 分发到 asyncio.Queue，供 SSE 路由等异步消费者读取。

    必须在事件循环线程内使用。
    """

    def __init__(self) -> None:
        self._queues: Dict[str, "asyncio.Queue[SessionEvent]"] = {}

    def _queue(self, session_id: str) -> "asyncio.Queue[SessionEvent]":
        queue = self._queues.get(session_id)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[session_id] = queue
        return queue

    def emit(self, event: SessionEvent) -> None:
        self._queue(event.session_id).put_nowait(event)

    async def subscribe(self, session_id: str) -> AsyncIterator[SessionEvent]:
        """逐个产出某个会话的事件，直到 end 事件（含）为止。"""

        queue = self._queue(session_id)
        try:
            while True:
                event = await queue.get()
                yield event
                if event.kind == "end":
                    return
        finally:
            if queue.empty():
                self._queues.pop(session_id, None)
