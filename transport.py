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

import json
import logging
from typing import Callable, Optional

from clock import Clock
from room_data import ConnectionState

UNAVAILABLE_ID = "unavailable-id"
PEER_UNAVAILABLE = "peer-unavailable"
NETWORK = "network"


class TransportError(Exception):

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind


class EventEmitter:

    def __init__(self):
        self._handlers: dict[str, list[Callable]] = dict()

    def on(self, event: str, handler: Callable) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event: str, *args) -> None:
        for handler in list(self._handlers.get(event, ())):
            handler(*args)


class Connection(EventEmitter):
    """
    point-to-point channel between two addresses
    events: open(), data(dict), close(), error(TransportError)
    """

    def __init__(self, local_address: str, remote_address: str):
        super().__init__()
        self.local_address = local_address
        self.remote_address = remote_address
        self.state = ConnectionState.OPENING

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    def send(self, message: dict) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class Listener(EventEmitter):
    """
    events: ready(), connection(Connection), error(TransportError)
    """

    def __init__(self, address: str):
        super().__init__()
        self.address = address

    def close(self) -> None:
        raise NotImplementedError


class Transport:

    def listen(self, address: str) -> Listener:
        raise NotImplementedError

    def connect(self, local_address: str, remote_address: str) -> Connection:
        raise NotImplementedError


class LoopbackConnection(Connection):

    def __init__(self, network: "LoopbackNetwork", local_address: str, remote_address: str):
        super().__init__(local_address, remote_address)
        self._network = network
        self.peer: Optional[LoopbackConnection] = None
        self._close_emitted = False

    def send(self, message: dict) -> None:
        if not self.is_open or self.peer is None:
            logging.debug(f"{self.local_address}->{self.remote_address} dropped send on {self.state.value} connection")
            return
        # copy through json so no two participants share an object
        payload = json.loads(json.dumps(message))
        self._network.clock.call_later(0, self.peer._deliver, payload)

    def _deliver(self, payload: dict) -> None:
        if self.is_open:
            self.emit("data", payload)

    def _open(self) -> None:
        if self.state == ConnectionState.OPENING:
            self.state = ConnectionState.OPEN
            self.emit("open")

    def _closed(self) -> None:
        if self._close_emitted:
            return
        was_open = self.state == ConnectionState.OPEN
        self.state = ConnectionState.CLOSED
        self._close_emitted = True
        if was_open:
            self.emit("close")

    def close(self) -> None:
        if self.state == ConnectionState.CLOSED:
            return
        was_open = self.is_open
        self.state = ConnectionState.CLOSED
        self._network._forget(self)
        self._network.clock.call_later(0, self._finish_close, was_open)

    def _finish_close(self, was_open: bool) -> None:
        self._close_emitted = True
        if was_open:
            self.emit("close")
        if self.peer is not None:
            self.peer._closed()


class LoopbackListener(Listener):

    def __init__(self, network: "LoopbackNetwork", address: str):
        super().__init__(address)
        self._network = network
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._network._unlisten(self)


class LoopbackNetwork(Transport):
    """
    In-process transport shared by every participant of a simulated room.
    All events are delivered through the clock so handlers never re-enter each other.
    """

    def __init__(self, clock: Clock):
        self.clock = clock
        self._listeners: dict[str, LoopbackListener] = dict()
        self._connections: list[LoopbackConnection] = []

    def listen(self, address: str) -> Listener:
        listener = LoopbackListener(self, address)
        if address in self._listeners:
            self.clock.call_later(0, listener.emit, "error",
                                  TransportError(UNAVAILABLE_ID, f"{address} is already taken"))
            return listener
        self._listeners[address] = listener
        self.clock.call_later(0, listener.emit, "ready")
        return listener

    def connect(self, local_address: str, remote_address: str) -> Connection:
        outbound = LoopbackConnection(self, local_address, remote_address)
        self.clock.call_later(0, self._establish, outbound)
        return outbound

    def _establish(self, outbound: LoopbackConnection) -> None:
        if outbound.state != ConnectionState.OPENING:
            return
        listener = self._listeners.get(outbound.remote_address)
        if listener is None:
            outbound.state = ConnectionState.CLOSED
            outbound.emit("error", TransportError(PEER_UNAVAILABLE, f"could not connect to {outbound.remote_address}"))
            return
        inbound = LoopbackConnection(self, outbound.remote_address, outbound.local_address)
        outbound.peer = inbound
        inbound.peer = outbound
        self._connections.extend((outbound, inbound))
        listener.emit("connection", inbound)
        self.clock.call_later(0, inbound._open)
        self.clock.call_later(0, outbound._open)

    def _forget(self, connection: LoopbackConnection) -> None:
        for end in (connection, connection.peer):
            if end in self._connections:
                self._connections.remove(end)

    def _unlisten(self, listener: LoopbackListener) -> None:
        if self._listeners.get(listener.address) is listener:
            del self._listeners[listener.address]

    def is_listening(self, address: str) -> bool:
        return address in self._listeners

    def drop(self, address: str) -> None:
        """
        Simulate a participant vanishing without a goodbye: its listener goes away and the far end of
        every channel it held sees a close. The vanished side itself hears nothing.
        """
        logging.debug(f"loopback dropping {address}")
        listener = self._listeners.pop(address, None)
        if listener is not None:
            listener.closed = True
        for connection in list(self._connections):
            if connection.local_address != address:
                continue
            connection.state = ConnectionState.CLOSED
            connection._close_emitted = True
            self._forget(connection)
            if connection.peer is not None:
                self.clock.call_later(0, connection.peer._closed)
