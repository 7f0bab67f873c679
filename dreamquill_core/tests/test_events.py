import asyncio

import pytest

from dreamquill_core.domain.models import SessionEvent
from dreamquill_core.sessions.events import CallbackEventSink, QueueEventSink


def test_callback_sink_never_raises():
    seen = []

    def callback(event):
        seen.append(event.kind)
        raise RuntimeError("window closed")

    sink = CallbackEventSink(callback)
    sink.emit(SessionEvent(kind="chunk", session_id="s1", data="x"))
    assert seen == ["chunk"]


@pytest.mark.asyncio
async def test_queue_sink_subscribe_until_end():
    sink = QueueEventSink()
    sink.emit(SessionEvent(kind="meta", session_id="s1", data={"conversation_id": "c"}))
    sink.emit(SessionEvent(kind="chunk", session_id="s2", data="other"))
    sink.emit(SessionEvent(kind="chunk", session_id="s1", data="a"))
    sink.emit(SessionEvent(kind="end", session_id="s1", data={"conversation_id": "c"}))

    received = []

    async def consume():
        async for event in sink.subscribe("s1"):
            received.append(event.kind)

    await asyncio.wait_for(consume(), 1.0)
    assert received == ["meta", "chunk", "end"]


def test_event_to_dict():
    event = SessionEvent(kind="log", session_id="s1", data="hello")
    assert event.to_dict() == {"event": "log", "session_id": "s1", "data": "hello"}
