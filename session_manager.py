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

import logging
import uuid
from typing import Any, Optional

from clock import Clock
from errors import (
    AddressClaimed, ConnectTimeout, MalformedMessage, NoSession, RemoteError, RoomFull, RoomNotFound,
    SessionError, SessionExpired,
)
from game_host import GameStateHost
from migration import MigrationCoordinator
from protocol import (
    ERROR_ROOM_FULL, Action, Chat, Error, FullStateBackup, GameState, Join, JoinAccepted, Leave, Message,
    MessageType, NewHostAnnouncement, PlayerDisconnected, PlayerJoined, PlayerLeft, PlayerList,
    PlayerReconnected, decode,
)
from replication import DEFAULT_PROJECTION, ReplicationChannel, ViewerProjection
from room_data import Participant, RoomSettings
from room_directory import RoomDirectory, generate_room_code
from session_identity import SessionIdentity, SessionStore
from transport import PEER_UNAVAILABLE, UNAVAILABLE_ID, Connection, Listener, Transport, TransportError

"""
One participant's side of a room: host or peer, whichever it currently is.
Every inbound message goes through exactly one of the two handler tables.
"""


class SessionManager:
    _host_connection: Optional[Connection]
    _listeners: list

    def __init__(self, transport: Transport, clock: Clock, game: GameStateHost,
                 settings: RoomSettings = RoomSettings(), store: Optional[SessionStore] = None,
                 projection: ViewerProjection = DEFAULT_PROJECTION):
        self._transport = transport
        self._clock = clock
        self._game = game
        self.settings = settings
        self.store = store if store is not None else SessionStore()
        self.identity = SessionIdentity(self.store, clock, settings.session_ttl, settings.storage_key)
        self.directory = RoomDirectory(clock, settings.max_participants, settings.grace_period)
        self.replication = ReplicationChannel(self.directory, projection)
        self.migration = MigrationCoordinator(self, clock, settings.reconnect_attempts,
                                              settings.reconnect_interval, settings.attempt_timeout)
        self.host_id: Optional[str] = None
        self._host_connection = None
        self._listeners = []
        self._join_timer = None
        self._closed = False
        # channels we dialed to announce ourselves as the new host
        self._announcement_channels = set()

        self._host_handlers = {
            MessageType.JOIN: self._handle_join,
            MessageType.JOIN_ACCEPTED: self._ignore,
            MessageType.PLAYER_LIST: self._ignore,
            MessageType.PLAYER_JOINED: self._ignore,
            MessageType.PLAYER_LEFT: self._ignore,
            MessageType.PLAYER_DISCONNECTED: self._ignore,
            MessageType.PLAYER_RECONNECTED: self._ignore,
            MessageType.GAME_STATE: self._ignore,
            MessageType.FULL_STATE_BACKUP: self._ignore,
            MessageType.NEW_HOST_ANNOUNCEMENT: self._handle_announcement,
            MessageType.ACTION: self._handle_action,
            MessageType.CHAT: self._handle_chat,
            MessageType.ERROR: self._handle_error,
            MessageType.LEAVE: self._handle_leave,
            MessageType.PASSTHROUGH: self._deliver_to_game,
        }
        self._peer_handlers = {
            MessageType.JOIN: self._ignore,
            MessageType.JOIN_ACCEPTED: self._handle_join_accepted,
            MessageType.PLAYER_LIST: self._handle_player_list,
            MessageType.PLAYER_JOINED: self._handle_player_joined,
            MessageType.PLAYER_LEFT: self._handle_player_left,
            MessageType.PLAYER_DISCONNECTED: self._handle_player_disconnected,
            MessageType.PLAYER_RECONNECTED: self._handle_player_reconnected,
            MessageType.GAME_STATE: self._handle_game_state,
            MessageType.FULL_STATE_BACKUP: self._handle_backup,
            MessageType.NEW_HOST_ANNOUNCEMENT: self._handle_announcement,
            MessageType.ACTION: self._ignore,
            MessageType.CHAT: self._deliver_from_host,
            MessageType.ERROR: self._handle_error,
            MessageType.LEAVE: self._ignore,
            MessageType.PASSTHROUGH: self._deliver_from_host,
        }

    # ---- identity ----

    @property
    def participant_id(self) -> Optional[str]:
        return self.identity.participant_id

    @property
    def room_code(self) -> Optional[str]:
        return self.identity.room_code

    @property
    def is_host(self) -> bool:
        return self.identity.is_host

    @property
    def game_in_progress(self) -> bool:
        return self.identity.game_in_progress

    def participants(self) -> list:
        return list(self.directory.participants.values())

    def get_participant(self, participant_id: str) -> Optional[Participant]:
        return self.directory.participants.get(participant_id)

    def queued_participants(self) -> list:
        return self.directory.queued_participants()

    # ---- room lifecycle ----

    def create_room(self, name: str, room_code: Optional[str] = None) -> str:
        room_code = (room_code or generate_room_code()).upper()
        address = self.settings.host_address(room_code)
        self._closed = False
        self.identity.participant_id = address
        self.identity.room_code = room_code
        self.identity.display_name = name
        self.identity.is_host = True
        self.identity.game_in_progress = False
        self.host_id = address
        logging.info(f"Creating room {room_code}")
        self._listen(address, lambda: self._room_created(name, room_code), self._room_claim_failed)
        return room_code

    def _room_created(self, name: str, room_code: str) -> None:
        self.directory.register_host(name, self.settings.host_address, room_code)
        self.identity.save()
        self._game.on_roster(self.participants())
        self._game.on_room_ready(room_code, self.participant_id, True)

    def _room_claim_failed(self, error: TransportError) -> None:
        logging.warning(f"Could not listen for room {self.room_code}: {error}")
        self._forget_room()
        if error.kind == UNAVAILABLE_ID:
            self.report_error(AddressClaimed())
        else:
            self.report_error(SessionError(str(error)))

    def join_room(self, room_code: str, name: str, participant_id: Optional[str] = None) -> str:
        room_code = room_code.strip().upper()
        self._closed = False
        self.identity.participant_id = participant_id or uuid.uuid4().hex
        self.identity.room_code = room_code
        self.identity.display_name = name
        self.identity.is_host = False
        self.identity.game_in_progress = False
        self.host_id = self.settings.host_address(room_code)
        logging.info(f"Joining room {room_code} as {self.participant_id}")
        self._listen(self.participant_id, lambda: self._connect_to_room(reconnecting=False),
                     self._own_address_failed)
        return self.participant_id

    def reconnect(self) -> None:
        """Resume the persisted session. Raises NoSession if there is nothing to resume."""
        record = self.identity.load()
        if record is None:
            raise NoSession()
        self._closed = False
        self.identity.adopt(record)
        logging.info(f"Resuming session in room {record.room_code} as {record.participant_id}")
        if record.is_host:
            address = self.settings.host_address(record.room_code)
            self.identity.participant_id = address
            self.host_id = address
            self._listen(address, lambda: self._room_resumed(record.display_name), self._resume_failed)
        else:
            self.host_id = self.settings.host_address(record.room_code)
            self._listen(record.participant_id, lambda: self._connect_to_room(reconnecting=True),
                         self._resume_failed)

    def _room_resumed(self, name: str) -> None:
        self.directory.register_host(name, self.settings.host_address, self.room_code)
        self.identity.save()
        self._game.on_roster(self.participants())
        self._game.on_room_ready(self.room_code, self.participant_id, True)

    def _resume_failed(self, error: TransportError) -> None:
        logging.warning(f"Could not resume session: {error}")
        self._forget_room()
        if error.kind == UNAVAILABLE_ID:
            self.identity.clear()
            self.report_error(SessionExpired())
        else:
            self.report_error(SessionError(str(error)))

    def _own_address_failed(self, error: TransportError) -> None:
        logging.warning(f"Could not listen on {self.participant_id}: {error}")
        self._forget_room()
        if error.kind == UNAVAILABLE_ID:
            self.report_error(AddressClaimed())
        else:
            self.report_error(SessionError(str(error)))

    def _listen(self, address: str, on_ready, on_error) -> Listener:
        listener = self._transport.listen(address)
        listener.on("ready", on_ready)
        listener.on("error", on_error)
        listener.on("connection", self._accept_connection)
        self._listeners.append(listener)
        return listener

    def _connect_to_room(self, reconnecting: bool) -> None:
        connection = self._transport.connect(self.participant_id, self.host_id)
        self._join_timer = self._clock.call_later(self.settings.join_timeout, self._join_timed_out, connection)
        connection.on("open", lambda: self._room_connection_opened(connection, reconnecting))
        connection.on("error", lambda error: self._room_connection_failed(connection, error))

    def _room_connection_opened(self, connection: Connection, reconnecting: bool) -> None:
        logging.debug(f"Connected to host {connection.remote_address}")
        self._bind_host_connection(connection)
        self._send_join(connection, reconnecting)
        self.identity.save()

    def _room_connection_failed(self, connection: Connection, error: TransportError) -> None:
        self._cancel_join_timer()
        logging.warning(f"Could not reach room {self.room_code}: {error}")
        self._forget_room()
        if error.kind == PEER_UNAVAILABLE:
            self.report_error(RoomNotFound())
        else:
            self.report_error(SessionError(str(error)))

    def _join_timed_out(self, connection: Connection) -> None:
        self._join_timer = None
        logging.warning(f"No answer from room {self.room_code}")
        if connection is self._host_connection:
            self._host_connection = None
        connection.close()
        self._forget_room()
        self.report_error(ConnectTimeout())

    def _cancel_join_timer(self) -> None:
        if self._join_timer is not None:
            self._join_timer.cancel()
            self._join_timer = None

    def _send_join(self, connection: Connection, reconnecting: bool) -> None:
        join = Join(
            name=self.identity.display_name,
            participant_id=self.participant_id,
            reconnecting=reconnecting,
        )
        if reconnecting:
            join.game_state_backup = self.replication.last_full_state
            join.join_order = list(self.directory.join_order) or None
        self.replication.send_on(connection, join)

    def _bind_host_connection(self, connection: Connection) -> None:
        self._host_connection = connection
        self.directory.attach_connection(connection.remote_address, connection)
        connection.on("data", lambda packet: self._receive(connection, packet))
        connection.on("close", lambda: self._connection_closed(connection))

    def _accept_connection(self, connection: Connection) -> None:
        logging.debug(f"Incoming connection from {connection.remote_address}")
        connection.on("data", lambda packet: self._receive(connection, packet))
        connection.on("close", lambda: self._connection_closed(connection))

    def leave(self) -> None:
        """Leave the room for good: tell the others, close everything and forget the session."""
        if self.participant_id is None:
            return
        logging.info(f"Leaving room {self.room_code}")
        self.migration.stop()
        self._cancel_join_timer()
        if self.is_host:
            self.replication.broadcast(PlayerLeft(self.participant_id))
        elif self._host_connection is not None and self._host_connection.is_open:
            self.replication.send_on(self._host_connection, Leave(self.participant_id))
        self.identity.clear()
        self._closed = True
        self._host_connection = None
        for record in list(self.directory.connections.values()):
            record.channel.close()
        self._forget_room()

    def _forget_room(self) -> None:
        for listener in self._listeners:
            listener.close()
        self._listeners = []
        self.directory.connections.clear()
        self.directory.participants.clear()
        self.directory.join_order.clear()
        self.replication.last_full_state = None
        self._announcement_channels.clear()
        self.identity.is_host = False
        self.host_id = None

    # ---- inbound ----

    def _receive(self, connection: Connection, packet: Any) -> None:
        if self._closed:
            return
        try:
            message = decode(packet)
        except MalformedMessage as e:
            logging.warning(f"Ignoring malformed message from {connection.remote_address}: {e}")
            return
        logging.debug(f"{message.kind.value} from {connection.remote_address}")
        handlers = self._host_handlers if self.is_host else self._peer_handlers
        handlers[message.kind](connection, message)

    def _connection_closed(self, connection: Connection) -> None:
        if self._closed:
            return
        remote = connection.remote_address
        self._announcement_channels.discard(connection)
        if connection is self._host_connection and not self.is_host:
            self._host_connection = None
            self.directory.detach_connection(remote, connection)
            self.migration.host_lost()
        elif self.is_host and self.directory.owns(remote, connection):
            self.handle_disconnect(remote)
        else:
            logging.debug(f"Ignoring close of a stale connection to {remote}")

    def _ignore(self, connection: Connection, message: Message) -> None:
        logging.debug(f"Ignoring {message.kind.value} from {connection.remote_address}")

    def _deliver_to_game(self, connection: Connection, message: Message) -> None:
        self._game.on_message(connection.remote_address, message)

    def _deliver_from_host(self, connection: Connection, message: Message) -> None:
        if self._from_host(connection, message):
            self._deliver_to_game(connection, message)

    def _handle_error(self, connection: Connection, error: Error) -> None:
        logging.warning(f"Error from {connection.remote_address}: {error.message}")
        if connection is self._host_connection:
            self._cancel_join_timer()
        if error.code == ERROR_ROOM_FULL:
            if connection is self._host_connection:
                self._host_connection = None
                connection.close()
                self._forget_room()
            self.report_error(RoomFull(error.message))
        else:
            self.report_error(RemoteError(error.message))

    def _handle_announcement(self, connection: Connection, announcement: NewHostAnnouncement) -> None:
        self.migration.handle_announcement(connection, announcement)

    # ---- host side ----

    def _handle_join(self, connection: Connection, join: Join) -> None:
        participant_id = connection.remote_address
        record = self.directory.connections.get(participant_id)
        if record is not None and record.channel is not connection and record.channel.is_open \
                and record.channel in self._announcement_channels:
            # its reconnect attempt found us at the room address while our announcement was on its way
            logging.debug(f"{participant_id=} is being announced to already, closing its second channel")
            connection.close()
            return

        if join.reconnecting and join.game_state_backup is not None and self.replication.last_full_state is None:
            self._restore_from_backup(join)

        if join.reconnecting or self.directory.is_known(participant_id):
            self._restore_participant(connection, participant_id, join)
            return

        try:
            participant = self.directory.admit(participant_id, join.name, queued=self.game_in_progress)
        except RoomFull as e:
            logging.info(f"Turning away {participant_id=}: {e}")
            self.replication.send_on(connection, Error(message=str(e), code=ERROR_ROOM_FULL))
            return

        logging.info(f"{participant.display_name} joined room {self.room_code} ({participant_id=})")
        self.directory.attach_connection(participant_id, connection)
        self.replication.send(participant_id, JoinAccepted(
            participant_id=participant_id,
            room_code=self.room_code,
            game_in_progress=self.game_in_progress,
        ))
        self.replication.send(participant_id, self._player_list())
        self.replication.broadcast(PlayerJoined(participant, list(self.directory.join_order)),
                                   exclude_id=participant_id)
        self._game.on_roster(self.participants())
        self._game.on_join(participant)

    def _restore_from_backup(self, join: Join) -> None:
        logging.info(f"Restoring game state from the backup of {join.participant_id}")
        self.replication.last_full_state = join.game_state_backup
        self.identity.game_in_progress = True
        if join.join_order:
            self.directory.merge_join_order(self.participant_id, join.join_order)
        self.identity.save()
        self._game.on_become_host(join.game_state_backup)

    def _restore_participant(self, connection: Connection, participant_id: str, join: Join) -> None:
        participant = self.directory.restore(participant_id, join.name)
        logging.info(f"{participant.display_name} reconnected ({participant_id=})")
        self.directory.attach_connection(participant_id, connection)
        self.replication.send(participant_id, JoinAccepted(
            participant_id=participant_id,
            room_code=self.room_code,
            game_in_progress=self.game_in_progress,
            reconnected=True,
        ))
        self.replication.send(participant_id, self._player_list())
        if self.replication.last_full_state is not None:
            self.replication.send(participant_id, GameState(self.replication.view_for(participant_id)))
            self.replication.send(participant_id, FullStateBackup(self.replication.last_full_state,
                                                                  list(self.directory.join_order)))
        self.replication.broadcast(PlayerReconnected(participant), exclude_id=participant_id)
        self._game.on_roster(self.participants())
        self._game.on_reconnect(participant_id)

    def _player_list(self) -> PlayerList:
        return PlayerList(participants=self.participants(), join_order=list(self.directory.join_order))

    def handle_disconnect(self, participant_id: str) -> None:
        participant = self.directory.mark_disconnected(participant_id)
        if participant is None:
            return
        logging.info(f"{participant.display_name} disconnected ({participant_id=})")
        self.replication.broadcast(PlayerDisconnected(participant_id, may_reconnect=True))
        self._game.on_roster(self.participants())
        self._game.on_leave(participant_id, True)

    def remove_participant(self, participant_id: str) -> None:
        """Explicit departure: gone from the roster, the disconnected cache and the join order."""
        self.replication.broadcast(PlayerLeft(participant_id))
        participant = self.directory.remove(participant_id)
        if participant is None:
            return
        logging.info(f"{participant.display_name} left room {self.room_code} ({participant_id=})")
        self._game.on_roster(self.participants())
        self._game.on_leave(participant_id, False)

    def _handle_leave(self, connection: Connection, leave: Leave) -> None:
        participant_id = connection.remote_address
        if not self.directory.owns(participant_id, connection):
            return
        self.remove_participant(participant_id)
        connection.close()

    def _handle_action(self, connection: Connection, action: Action) -> None:
        participant_id = connection.remote_address
        if participant_id not in self.directory.participants:
            logging.debug(f"Dropping action from unknown {participant_id=}")
            return
        action.participant_id = participant_id
        self._game.on_message(participant_id, action)

    def _handle_chat(self, connection: Connection, chat: Chat) -> None:
        participant_id = connection.remote_address
        chat.sender_id = participant_id
        self.replication.broadcast(chat, exclude_id=participant_id)
        self._game.on_message(participant_id, chat)

    # ---- peer side ----

    def _from_host(self, connection: Connection, message: Message) -> bool:
        if connection is self._host_connection:
            return True
        logging.debug(f"Ignoring {message.kind.value} from {connection.remote_address}, not the host")
        return False

    def _handle_join_accepted(self, connection: Connection, accepted: JoinAccepted) -> None:
        if not self._from_host(connection, accepted):
            return
        self._cancel_join_timer()
        logging.info(f"Joined room {accepted.room_code}" + (" (reconnected)" if accepted.reconnected else ""))
        self.identity.room_code = accepted.room_code
        self.identity.game_in_progress = accepted.game_in_progress
        self.identity.save()
        self.migration.host_confirmed()
        self._game.on_connected(accepted)
        self._game.on_room_ready(accepted.room_code, self.participant_id, False)

    def _handle_player_list(self, connection: Connection, player_list: PlayerList) -> None:
        if not self._from_host(connection, player_list):
            return
        self.directory.replace_roster(player_list.participants, player_list.join_order)
        # a host reached through the room address may not be the one we followed before
        host_id = next((participant.id for participant in player_list.participants if participant.is_host), None)
        if host_id is not None:
            self.host_id = host_id
        self._game.on_roster(self.participants())

    def _handle_player_joined(self, connection: Connection, joined: PlayerJoined) -> None:
        if not self._from_host(connection, joined):
            return
        self.directory.upsert(joined.participant)
        if joined.join_order:
            self.directory.set_join_order(joined.join_order)
        self._game.on_roster(self.participants())
        self._game.on_join(joined.participant)

    def _handle_player_left(self, connection: Connection, left: PlayerLeft) -> None:
        if not self._from_host(connection, left) or left.participant_id == self.participant_id:
            return
        self.directory.remove(left.participant_id)
        self._game.on_roster(self.participants())
        self._game.on_leave(left.participant_id, False)

    def _handle_player_disconnected(self, connection: Connection, disconnected: PlayerDisconnected) -> None:
        if not self._from_host(connection, disconnected):
            return
        self.directory.mark_disconnected(disconnected.participant_id)
        self._game.on_roster(self.participants())
        self._game.on_leave(disconnected.participant_id, disconnected.may_reconnect)

    def _handle_player_reconnected(self, connection: Connection, reconnected: PlayerReconnected) -> None:
        if not self._from_host(connection, reconnected):
            return
        self.directory.upsert(reconnected.participant)
        self._game.on_roster(self.participants())
        self._game.on_reconnect(reconnected.participant.id)

    def _handle_game_state(self, connection: Connection, game_state: GameState) -> None:
        if not self._from_host(connection, game_state):
            return
        self._game.on_state(game_state.state)

    def _handle_backup(self, connection: Connection, backup: FullStateBackup) -> None:
        if not self._from_host(connection, backup):
            return
        self.replication.store_backup(backup.state, backup.join_order)

    # ---- host migration ----

    def open_host_connection(self) -> Connection:
        # whoever hosts the room, it is reachable at the room address
        return self._transport.connect(self.participant_id, self.settings.host_address(self.room_code))

    def resume_with_host(self, connection: Connection) -> None:
        self._bind_host_connection(connection)
        self._send_join(connection, reconnecting=True)

    def take_over(self, old_host_id: Optional[str]) -> None:
        logging.info(f"Taking over as host of room {self.room_code}")
        if self._host_connection is not None:
            stale, self._host_connection = self._host_connection, None
            self.directory.detach_connection(stale.remote_address, stale)
            stale.close()
        if old_host_id is not None:
            self.directory.mark_disconnected(old_host_id)
        self.identity.is_host = True
        self.host_id = self.participant_id
        self.directory.room_code = self.room_code
        self.directory.promote(self.participant_id)
        self.identity.save()
        self._claim_room_address()

        for participant_id in list(self.directory.participants):
            if participant_id != self.participant_id:
                self._announce_to(participant_id)

        self._game.on_roster(self.participants())
        self._game.on_become_host(self.replication.last_full_state)

    def _claim_room_address(self) -> None:
        address = self.settings.host_address(self.room_code)
        if address == self.participant_id:
            return

        def claimed():
            logging.info(f"Room {self.room_code} reachable at {address} again")

        def not_claimed(error: TransportError):
            logging.warning(f"Could not reclaim room address {address}: {error}")

        self._listen(address, claimed, not_claimed)

    def _announce_to(self, participant_id: str) -> None:
        connection = self._transport.connect(self.participant_id, participant_id)
        connection.on("open", lambda: self._announcement_opened(connection))
        connection.on("error", lambda error: self._announcement_failed(connection, error))
        connection.on("data", lambda packet: self._receive(connection, packet))
        connection.on("close", lambda: self._connection_closed(connection))

    def _announcement_opened(self, connection: Connection) -> None:
        participant_id = connection.remote_address
        if not self.is_host or participant_id not in self.directory.participants:
            connection.close()
            return
        record = self.directory.connections.get(participant_id)
        if record is not None and record.channel.is_open:
            # it already reconnected through the room address, announce on that channel instead
            connection.close()
        else:
            self.directory.attach_connection(participant_id, connection)
            self._announcement_channels.add(connection)
        self.replication.send(participant_id, NewHostAnnouncement(
            new_host_id=self.participant_id,
            room_code=self.room_code,
            game_state=self.replication.last_full_state,
            join_order=list(self.directory.join_order),
        ))
        logging.debug(f"Announced new host to {participant_id}")

    def _announcement_failed(self, connection: Connection, error: TransportError) -> None:
        participant_id = connection.remote_address
        logging.warning(f"Could not reach {participant_id} after taking over: {error}")
        if self.is_host and participant_id in self.directory.participants \
                and participant_id not in self.directory.connections:
            self.handle_disconnect(participant_id)

    def follow_host(self, connection: Connection, announcement: NewHostAnnouncement) -> None:
        previous_host_id = self.host_id
        if self.is_host:
            logging.warning(f"Stepping down, {announcement.new_host_id} announced itself as host")
            for record in list(self.directory.connections.values()):
                if record.channel is not connection:
                    record.channel.close()
            self.directory.connections.clear()
            self._announcement_channels.clear()
            own_address = self.participant_id
            for listener in [listener for listener in self._listeners if listener.address != own_address]:
                listener.close()
                self._listeners.remove(listener)
        elif self._host_connection is not None and self._host_connection is not connection:
            stale = self._host_connection
            self._host_connection = None
            self.directory.detach_connection(stale.remote_address, stale)
            stale.close()

        self.identity.is_host = False
        self.identity.room_code = announcement.room_code
        self.host_id = announcement.new_host_id
        self._host_connection = connection
        self.directory.attach_connection(self.host_id, connection)
        if previous_host_id not in (None, self.participant_id, self.host_id):
            self.directory.mark_disconnected(previous_host_id)
        if self.host_id not in self.directory.participants:
            self.directory.restore(self.host_id)
        if announcement.join_order:
            self.directory.set_join_order(announcement.join_order)
        self.directory.promote(self.host_id)
        if announcement.game_state is not None:
            self.replication.store_backup(announcement.game_state)
        self.identity.save()

        logging.info(f"Following new host {self.host_id}")
        self._game.on_roster(self.participants())
        view = self.replication.view_for(self.participant_id)
        if view is not None:
            self._game.on_state(view)

    def report_error(self, error: SessionError) -> None:
        logging.error(f"{type(error).__name__}: {error}")
        self._game.on_error(error)

    # ---- game routing ----

    def broadcast(self, message: Message, exclude_id: Optional[str] = None) -> int:
        return self.replication.broadcast(message, exclude_id)

    def send_to(self, participant_id: str, message: Message) -> bool:
        return self.replication.send(participant_id, message)

    def send_to_host(self, message: Message) -> bool:
        if self._host_connection is None or not self._host_connection.is_open:
            logging.debug(f"Not sending {message.kind.value}: no connection to the host")
            return False
        self.replication.send_on(self._host_connection, message)
        return True

    def broadcast_state(self, snapshot: dict) -> dict:
        """Host only. Replicate `snapshot` to everyone and hand the host its own filtered view."""
        if not self.is_host:
            raise SessionError("Only the host broadcasts game state")
        view = self.replication.broadcast_state(snapshot, self.participant_id)
        self._game.on_state(view)
        return view

    def send_action(self, action) -> None:
        message = Action(action=action, participant_id=self.participant_id)
        if self.is_host:
            self._game.on_message(self.participant_id, message)
        else:
            self.send_to_host(message)

    def send_chat(self, text: str) -> None:
        chat = Chat(
            text=text,
            sender_id=self.participant_id,
            sender_name=self.identity.display_name,
            timestamp=int(self._clock.time() * 1000),
        )
        if self.is_host:
            self.replication.broadcast(chat)
        else:
            self.send_to_host(chat)

    def set_game_in_progress(self, in_progress: bool) -> None:
        self.identity.game_in_progress = in_progress
        if self.participant_id is not None:
            self.identity.save()

    def clear_queued_status(self) -> None:
        self.directory.clear_queued()
        if self.is_host:
            self.replication.broadcast(self._player_list())
        self._game.on_roster(self.participants())
