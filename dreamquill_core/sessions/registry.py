"""会话取消令牌注册表。

每个活跃的流式会话在这里登记一个 CancellationControl，cancel 请求据此路由。
注册表由引擎显式持有（不是进程级单例），内部用 threading.Lock 保护，
可以从任意线程调用 cancel。
"""

import asyncio
import threading
from typing import Dict, List, Optional, Tuple


class CancellationControl:
    """单个会话的取消信号。

    cancel() 可在任意线程调用：在所属事件循环内直接置位，
    否则通过 call_soon_threadsafe 投递。
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._event = asyncio.Event()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._event.set()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        await self._event.wait()


class SessionRegistry:
    """session_id -> CancellationControl。同一 id 同时最多一个活跃条目。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, CancellationControl] = {}

    def register(self, session_id: str) -> Tuple[CancellationControl, Optional[CancellationControl]]:
        """登记新令牌，返回 (新令牌, 被替换的旧令牌)。

        旧令牌会先被触发取消，使其任务让出该 id 的所有权。
        """

        control = CancellationControl()
        with self._lock:
            previous = self._entries.get(session_id)
            self._entries[session_id] = control
        if previous is not None:
            previous.cancel()
        return control, previous

    def cancel(self, session_id: str) -> bool:
        """触发并移除令牌；不存在时静默返回 False（幂等）。"""

        with self._lock:
            control = self._entries.pop(session_id, None)
        if control is None:
            return False
        control.cancel()
        return True

    def remove(self, session_id: str, control: Optional[CancellationControl] = None) -> None:
        """移除条目。指定 control 时只在仍为同一令牌时移除，避免误删新会话。"""

        with self._lock:
            current = self._entries.get(session_id)
            if current is None:
                return
            if control is None or current is control:
                del self._entries[session_id]

    def get(self, session_id: str) -> Optional[CancellationControl]:
        with self._lock:
            return self._entries.get(session_id)

    def active_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
