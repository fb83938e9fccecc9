import asyncio
import json
from datetime import datetime, timezone

import pytest
from fastapi import WebSocketDisconnect

from collab_backend.websocket.manager import ClientSession, RoomRegistry, SessionState


class FakeWebSocket:
    def __init__(self, fail_on: int = None):
        self.sent = []
        self.fail_on = fail_on
        self.closed_with = None

    async def close(self, code: int = 1000):
        self.closed_with = code

    async def send_text(self, text: str):
        if self.fail_on is not None and len(self.sent) + 1 >= self.fail_on:
            raise WebSocketDisconnect(code=1001)
        self.sent.append(json.loads(text))


def _frames(session: ClientSession) -> list:
    frames = []
    while not session.outbox.empty():
        frames.append(session.outbox.get_nowait())
    return frames


def _connect(registry: RoomRegistry, session_id: str) -> ClientSession:
    return registry.connect(ClientSession(session_id=session_id))


@pytest.mark.asyncio
async def test_join_is_idempotent(registry: RoomRegistry) -> None:
    _connect(registry, "a")
    assert registry.join("a", "room-1") is True
    assert registry.join("a", "room-1") is False
    assert registry.room_members("room-1") == ["a"]
    assert registry.session("a").state is SessionState.JOINED


@pytest.mark.asyncio
async def test_join_unknown_session(registry: RoomRegistry) -> None:
    assert registry.join("ghost", "room-1") is False
    assert registry.room_members("room-1") == []


@pytest.mark.asyncio
async def test_joining_another_room_keeps_the_first(registry: RoomRegistry) -> None:
    session = _connect(registry, "a")
    registry.join("a", "room-1")
    registry.join("a", "room-2")

    assert session.room_id == "room-2"
    assert session.rooms == {"room-1", "room-2"}
    assert registry.room_members("room-1") == ["a"]


@pytest.mark.asyncio
async def test_broadcast_excludes_sender(registry: RoomRegistry) -> None:
    a = _connect(registry, "a")
    b = _connect(registry, "b")
    c = _connect(registry, "c")
    outsider = _connect(registry, "d")
    for session in (a, b, c):
        registry.join(session.id, "room-1")
    registry.join(outsider.id, "room-2")

    delivered = registry.broadcast("room-1", "doc-update", {"text": "hi"}, exclude="a")

    assert delivered == 2
    assert _frames(a) == []
    assert _frames(b) == [{"type": "doc-update", "data": {"text": "hi"}}]
    assert _frames(c) == [{"type": "doc-update", "data": {"text": "hi"}}]
    assert _frames(outsider) == []


@pytest.mark.asyncio
async def test_broadcast_to_empty_room(registry: RoomRegistry) -> None:
    assert registry.broadcast("nobody-here", "doc-update", {"text": ""}) == 0


@pytest.mark.asyncio
async def test_disconnect_leaves_every_room(registry: RoomRegistry) -> None:
    a = _connect(registry, "a")
    b = _connect(registry, "b")
    registry.join("a", "room-1")
    registry.join("a", "room-2")
    registry.join("b", "room-1")

    assert registry.disconnect("a") == ["room-1", "room-2"]
    assert a.state is SessionState.DISCONNECTED
    assert registry.room_members("room-1") == ["b"]
    assert "room-2" not in registry.rooms
    assert registry.session("a") is None

    assert registry.broadcast("room-1", "doc-update", {"text": "x"}) == 1
    assert _frames(b) == [{"type": "doc-update", "data": {"text": "x"}}]


@pytest.mark.asyncio
async def test_disconnect_twice(registry: RoomRegistry) -> None:
    _connect(registry, "a")
    registry.disconnect("a")
    assert registry.disconnect("a") == []


@pytest.mark.asyncio
async def test_send_after_disconnect_is_dropped(registry: RoomRegistry) -> None:
    session = _connect(registry, "a")
    registry.disconnect("a")
    assert session.send({"type": "doc-update"}) is False
    assert _frames(session) == []


@pytest.mark.asyncio
async def test_pump_writes_json_in_order() -> None:
    websocket = FakeWebSocket(fail_on=3)
    session = ClientSession(websocket, session_id="a")
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    session.send({"type": "doc-update", "data": {"text": "one"}})
    session.send({"type": "doc-update", "data": {"text": "two", "at": stamp}})
    session.send({"type": "doc-update", "data": {"text": "three"}})

    await asyncio.wait_for(session.pump(), timeout=1)

    assert websocket.sent == [
        {"type": "doc-update", "data": {"text": "one"}},
        {"type": "doc-update", "data": {"text": "two", "at": "2024-01-02T03:04:05+00:00"}},
    ]
    assert session.state is SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_full_outbox_drops_the_session() -> None:
    websocket = FakeWebSocket()
    session = ClientSession(websocket, session_id="slow", outbox_limit=2)

    assert session.send({"type": "doc-update", "data": 1}) is True
    assert session.send({"type": "doc-update", "data": 2}) is True
    assert session.send({"type": "doc-update", "data": 3}) is False
    assert session.state is SessionState.DISCONNECTED
    assert session.send({"type": "doc-update", "data": 4}) is False

    await asyncio.wait_for(session.pump(), timeout=1)

    assert websocket.sent == []
    assert websocket.closed_with == 1013


@pytest.mark.asyncio
async def test_broadcast_skips_a_full_outbox(registry: RoomRegistry) -> None:
    slow = registry.connect(ClientSession(session_id="slow", outbox_limit=1))
    fast = _connect(registry, "fast")
    registry.join("slow", "room-1")
    registry.join("fast", "room-1")

    assert registry.broadcast("room-1", "doc-update", {"text": "1"}) == 2
    assert registry.broadcast("room-1", "doc-update", {"text": "2"}) == 1
    assert slow.state is SessionState.DISCONNECTED
    assert len(_frames(fast)) == 2
