"""
TableMesh
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import json
import logging
from typing import Optional

import voluptuous.error
import websockets
from voluptuous import Schema, Required, All, Length, ALLOW_EXTRA

from peer_discovery import PeerDiscovery
from protocol import PROTO_VERSION
from room_data import ConnectionState
from transport import NETWORK, PEER_UNAVAILABLE, Connection, Listener, Transport, TransportError

HELLO_TIMEOUT = 5.0
DIAL_TIMEOUT = 5.0

HELLO_SCHEMA = Schema({
    Required("type"): "hello",
    Required("address"): All(str, Length(min=1)),
    Required("proto"): int,
}, extra=ALLOW_EXTRA)


def hello_frame(address: str) -> str:
    return json.dumps({"type": "hello", "address": address, "proto": PROTO_VERSION})


async def read_hello(websocket) -> dict:
    frame = await asyncio.wait_for(websocket.recv(), HELLO_TIMEOUT)
    try:
        return HELLO_SCHEMA(json.loads(frame))
    except (json.JSONDecodeError, voluptuous.error.Invalid) as e:
        raise TransportError(NETWORK, f"bad hello: {e}") from e


class WebsocketConnection(Connection):
    """
    Outgoing frames go through a queue drained by one writer task, so send() never suspends and
    frames leave in the order they were sent.
    """

    def __init__(self, transport: "WebsocketTransport", local_address: str, remote_address: str):
        super().__init__(local_address, remote_address)
        self._transport = transport
        self._websocket = None
        self._outgoing: asyncio.Queue = asyncio.Queue()
        self._opened = False
        self._close_emitted = False

    def send(self, message: dict) -> None:
        if not self.is_open:
            logging.debug(f"{self.local_address}->{self.remote_address} dropped send on {self.state.value} connection")
            return
        self._outgoing.put_nowait(json.dumps(message))

    def close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        if self._websocket is not None:
            self._transport.spawn(self._websocket.close())

    def fail(self, error: TransportError) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self.emit("error", error)

    async def _write(self):
        while True:
            frame = await self._outgoing.get()
            try:
                await self._websocket.send(frame)
            except websockets.exceptions.ConnectionClosed:
                return

    async def run(self, websocket):
        self._websocket = websocket
        if self.state == ConnectionState.CLOSED:
            await websocket.close()
            return
        writer = asyncio.create_task(self._write())
        self.state = ConnectionState.OPEN
        self._opened = True
        self.emit("open")
        try:
            async for frame in websocket:
                try:
                    packet = json.loads(frame)
                except json.JSONDecodeError as e:
                    logging.warning(f"{self.remote_address} sent non-JSON data: {e}")
                    continue
                self.emit("data", packet)
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Websocket connection to {self.remote_address} closed")
        finally:
            writer.cancel()
            self.state = ConnectionState.CLOSED
            if self._opened and not self._close_emitted:
                self._close_emitted = True
                self.emit("close")


class WebsocketListener(Listener):

    def __init__(self, transport: "WebsocketTransport", address: str):
        super().__init__(address)
        self._transport = transport
        self._server = None
        self.closed = False

    async def start(self):
        self._server = await websockets.serve(self.handler, self._transport.bind, 0)
        port = self._server.sockets[0].getsockname()[1]
        try:
            await self._transport.discovery.advertise(self.address, port)
        except TransportError as e:
            self._server.close()
            await self._server.wait_closed()
            self.closed = True
            self.emit("error", e)
            return
        logging.debug(f"Listening as {self.address} on port {port}")
        self.emit("ready")

    async def handler(self, websocket):
        try:
            hello = await read_hello(websocket)
            await websocket.send(hello_frame(self.address))
        except (TransportError, asyncio.TimeoutError, websockets.exceptions.ConnectionClosed) as e:
            logging.warning(f"Rejected incoming connection on {self.address}: {e}")
            await websocket.close()
            return
        if self.closed:
            await websocket.close()
            return
        connection = WebsocketConnection(self._transport, self.address, hello["address"])
        self.emit("connection", connection)
        await connection.run(websocket)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._transport.spawn(self._stop())

    async def _stop(self):
        await self._transport.discovery.withdraw(self.address)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
        logging.debug(f"Stopped listening as {self.address}")


class WebsocketTransport(Transport):
    """Transport over websockets, with addresses resolved through PeerDiscovery."""
    _tasks: set

    def __init__(self, discovery: PeerDiscovery, bind: str = "0.0.0.0"):
        self.discovery = discovery
        self.bind = bind
        self._tasks = set()

    def spawn(self, coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def listen(self, address: str) -> Listener:
        listener = WebsocketListener(self, address)
        self.spawn(listener.start())
        return listener

    def connect(self, local_address: str, remote_address: str) -> Connection:
        connection = WebsocketConnection(self, local_address, remote_address)
        self.spawn(self._dial(connection))
        return connection

    async def _dial(self, connection: WebsocketConnection):
        try:
            host, port = await self.discovery.resolve(connection.remote_address)
            websocket = await asyncio.wait_for(websockets.connect(f"ws://{host}:{port}"), DIAL_TIMEOUT)
        except TransportError as e:
            connection.fail(e)
            return
        except (OSError, asyncio.TimeoutError, websockets.exceptions.InvalidHandshake) as e:
            connection.fail(TransportError(PEER_UNAVAILABLE, f"could not connect to {connection.remote_address}: {e}"))
            return

        try:
            await websocket.send(hello_frame(connection.local_address))
            hello: Optional[dict] = await read_hello(websocket)
        except (TransportError, asyncio.TimeoutError, websockets.exceptions.ConnectionClosed) as e:
            await websocket.close()
            connection.fail(TransportError(NETWORK, f"no hello from {connection.remote_address}: {e}"))
            return
        if hello["address"] != connection.remote_address:
            await websocket.close()
            connection.fail(TransportError(PEER_UNAVAILABLE, f"{connection.remote_address} answered as {hello['address']}"))
            return
        await connection.run(websocket)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.discovery.close()
