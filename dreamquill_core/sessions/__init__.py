"""可取消的流式会话：引擎、取消令牌注册表与事件投递。"""

from dreamquill_core.sessions.engine import StreamSessionEngine
from dreamquill_core.sessions.events import CallbackEventSink, EventSink, QueueEventSink
from dreamquill_core.sessions.registry import CancellationControl, SessionRegistry

__all__ = [
    "CallbackEventSink",
    "CancellationControl",
    "EventSink",
    "QueueEventSink",
    "SessionRegistry",
    "StreamSessionEngine",
]
