import asyncio
import json

import pytest

from protocol import PROTO_VERSION
from room_data import ConnectionState
from transport import NETWORK, TransportError
from websocket_transport import WebsocketConnection, hello_frame, read_hello


class FakeWebsocket:
    """Replays `frames` to the reader and records what gets sent."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []
        self.closed = False

    async def recv(self):
        return self.frames.pop(0)

    async def send(self, frame):
        self.sent.append(frame)

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self

    async def __anext__(self):
        # let the writer task drain before the peer "hangs up"
        await asyncio.sleep(0)
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)


def test_hello_frame():
    assert json.loads(hello_frame("p1")) == {"type": "hello", "address": "p1", "proto": PROTO_VERSION}


def test_read_hello_accepts_extra_keys():
    websocket = FakeWebsocket([json.dumps({"type": "hello", "address": "p1", "proto": 1, "agent": "cli"})])
    hello = asyncio.run(read_hello(websocket))
    assert hello["address"] == "p1"


@pytest.mark.parametrize("frame", [
    "not json",
    json.dumps({"type": "join", "address": "p1", "proto": 1}),
    json.dumps({"type": "hello", "address": "", "proto": 1}),
    json.dumps({"type": "hello", "proto": 1}),
])
def test_read_hello_rejects_bad_frames(frame):
    with pytest.raises(TransportError) as excinfo:
        asyncio.run(read_hello(FakeWebsocket([frame])))
    assert excinfo.value.kind == NETWORK


def test_connection_emits_events_in_order():
    websocket = FakeWebsocket([
        json.dumps({"type": "chat", "text": "hi"}),
        "{broken",
        json.dumps({"type": "leave", "participantId": "p2"}),
    ])
    events = []

    async def scenario():
        connection = WebsocketConnection(None, "p1", "p2")
        connection.on("open", lambda: (events.append("open"), connection.send({"type": "chat", "text": "yo"})))
        connection.on("data", lambda packet: events.append(packet["type"]))
        connection.on("close", lambda: events.append("close"))
        await connection.run(websocket)
        return connection

    connection = asyncio.run(scenario())
    assert events == ["open", "chat", "leave", "close"]
    assert connection.state == ConnectionState.CLOSED
    assert [json.loads(frame) for frame in websocket.sent] == [{"type": "chat", "text": "yo"}]


def test_send_before_open_is_dropped():
    async def scenario():
        connection = WebsocketConnection(None, "p1", "p2")
        connection.send({"type": "chat", "text": "too early"})
        return connection._outgoing.qsize()

    assert asyncio.run(scenario()) == 0


def test_failed_connection_reports_once():
    errors = []

    async def scenario():
        connection = WebsocketConnection(None, "p1", "p2")
        connection.on("error", errors.append)
        connection.fail(TransportError(NETWORK, "boom"))
        connection.fail(TransportError(NETWORK, "again"))

    asyncio.run(scenario())
    assert [error.kind for error in errors] == [NETWORK]
