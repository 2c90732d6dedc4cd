import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed

from liveresearch.client.session import (
    ConnectionState,
    ResearchSession,
    SessionConnectionError,
    SessionNotReadyError,
)
from liveresearch.schemas.events import EventType

CLOSE = object()


class FakeSocket:
    def __init__(self, client_id: str) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.queue.put_nowait(json.dumps({"clientId": client_id}))
        self.sent: list[dict] = []
        self.closed = False

    async def recv(self):
        item = await self.queue.get()
        if item is CLOSE:
            raise ConnectionClosed(None, None)
        return item

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(CLOSE)

    def push(self, frame) -> None:
        self.queue.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        self.queue.put_nowait(CLOSE)


class FakeServer:
    """Connector handing out scripted sockets; None entries refuse the connection."""

    def __init__(self, *plan) -> None:
        self.plan = list(plan)
        self.calls = 0

    async def connect(self, url: str) -> FakeSocket:
        self.calls += 1
        socket = self.plan.pop(0) if self.plan else None
        if socket is None:
            raise OSError("connection refused")
        return socket


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def build_session(server: FakeServer, delays: list, **kwargs) -> ResearchSession:
    async def sleep(delay: float) -> None:
        delays.append(delay)

    return ResearchSession(
        "ws://test/ws", connector=server.connect, sleep=sleep, **kwargs
    )


@pytest.mark.anyio
async def test_open_returns_server_client_id():
    socket = FakeSocket("client-a")
    session = build_session(FakeServer(socket), [])

    client_id = await session.open()

    assert client_id == "client-a"
    assert session.state == ConnectionState.OPEN
    await session.send({"type": "ping"})
    assert socket.sent == [{"type": "ping", "clientId": "client-a"}]
    await session.close()


@pytest.mark.anyio
async def test_send_before_open_is_rejected():
    session = build_session(FakeServer(), [])

    with pytest.raises(SessionNotReadyError):
        await session.send({"type": "ping"})


@pytest.mark.anyio
async def test_open_fails_without_handshake():
    socket = FakeSocket("ignored")
    socket.queue = asyncio.Queue()
    socket.push({"type": "agent_start", "message": "too early"})
    session = build_session(FakeServer(socket), [])

    with pytest.raises(SessionConnectionError):
        await session.open()

    assert session.state == ConnectionState.FAILED
    assert socket.closed is True


@pytest.mark.anyio
async def test_events_reach_typed_and_wildcard_handlers():
    socket = FakeSocket("client-a")
    session = build_session(FakeServer(socket), [])
    typed, everything = [], []
    session.on("agentStart", typed.append)
    session.on("*", everything.append)
    await session.open()

    socket.push("not json")
    socket.push({"type": "agentStart", "message": "Generate search queries"})
    socket.push({"type": "stream", "message": "token"})
    await settle()

    assert [event.message for event in typed] == ["Generate search queries"]
    assert [event.type for event in everything] == [
        EventType.AGENT_START,
        EventType.STREAM_RESPONSE,
    ]
    assert everything[1].content == "token"

    session.off(EventType.AGENT_START, typed.append)
    socket.push({"type": "agent_start", "message": "again"})
    await settle()
    assert len(typed) == 1
    await session.close()


def test_unknown_handler_type_is_rejected():
    session = ResearchSession("ws://test/ws")

    with pytest.raises(ValueError):
        session.on("nonsense", lambda event: None)


@pytest.mark.anyio
async def test_activity_follows_event_types():
    socket = FakeSocket("client-a")
    session = build_session(FakeServer(socket), [])
    changes = []
    session.on_activity_change(changes.append)
    await session.open()

    socket.push({"type": "agent_start", "message": "working"})
    socket.push({"type": "agent_update", "message": "still working"})
    socket.push({"type": "stream_response", "content": "a"})
    socket.push({"type": "stream_end"})
    await settle()

    assert changes == [True, False]
    assert session.activity_active is False
    await session.close()


@pytest.mark.anyio
async def test_reconnect_gives_up_after_max_attempts():
    socket = FakeSocket("client-a")
    server = FakeServer(socket)
    delays: list = []
    session = build_session(server, delays, max_reconnect_attempts=5)
    errors, connection = [], []
    session.on_error(errors.append)
    session.on_connection_change(connection.append)
    await session.open()

    socket.drop()
    await settle(50)

    assert session.state == ConnectionState.FAILED
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert server.calls == 6
    assert len(errors) == 1
    assert isinstance(errors[0], SessionConnectionError)
    assert connection == [True, False]
    assert session.client_id is None

    await settle(20)
    assert server.calls == 6
    assert len(errors) == 1


@pytest.mark.anyio
async def test_reconnect_obtains_new_client_id():
    first, second = FakeSocket("client-a"), FakeSocket("client-b")
    server = FakeServer(first, None, second)
    delays: list = []
    session = build_session(server, delays)
    connection = []
    session.on_connection_change(connection.append)
    await session.open()

    first.drop()
    await settle(50)

    assert session.client_id == "client-b"
    assert session.state == ConnectionState.OPEN
    assert delays == [1.0, 2.0]
    assert connection == [True, False, True]
    assert session.reconnect_attempts == 0
    await session.close()


@pytest.mark.anyio
async def test_close_prevents_reconnect():
    socket = FakeSocket("client-a")
    server = FakeServer(socket)
    session = build_session(server, [])
    await session.open()

    await session.close()
    await settle()

    assert session.state == ConnectionState.CLOSED
    assert server.calls == 1
    assert socket.closed is True
    with pytest.raises(SessionNotReadyError):
        await session.send({"type": "ping"})
