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

# Messages exchanged between participants.
# On the wire every message is a JSON object with a 'type' field and camelCase keys:
# - join: { type, name, participantId, reconnecting, gameStateBackup?, joinOrder? }
# - join_accepted: { type, participantId, roomCode, gameInProgress, reconnected }
# - player_list: { type, participants: [participant, ...], joinOrder: [id, ...] }
# - player_joined: { type, participant, joinOrder }
# - player_left: { type, participantId }
# - player_disconnected: { type, participantId, mayReconnect }
# - player_reconnected: { type, participant }
# - game_state: { type, state }                       viewer-filtered
# - full_game_state_backup: { type, state, joinOrder }  unfiltered
# - new_host_announcement: { type, newHostId, roomCode, gameState, joinOrder }
# - action / chat / error / leave
# Any other 'type' is a game-specific passthrough and is handed to the game untouched.
# participant: { id, name, isHost, queued }

import dataclasses
import enum
import typing

import voluptuous.error
from voluptuous import Schema, Required, Optional, Any, All, Length, ALLOW_EXTRA

from errors import MalformedMessage
from room_data import Participant

PROTO_VERSION = 1

ERROR_ROOM_FULL = "room_full"


class MessageType(enum.Enum):
    JOIN = "join"
    JOIN_ACCEPTED = "join_accepted"
    PLAYER_LIST = "player_list"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    PLAYER_DISCONNECTED = "player_disconnected"
    PLAYER_RECONNECTED = "player_reconnected"
    GAME_STATE = "game_state"
    FULL_STATE_BACKUP = "full_game_state_backup"
    NEW_HOST_ANNOUNCEMENT = "new_host_announcement"
    ACTION = "action"
    CHAT = "chat"
    ERROR = "error"
    LEAVE = "leave"
    PASSTHROUGH = "passthrough"


@dataclasses.dataclass
class Join:
    kind: typing.ClassVar[MessageType] = MessageType.JOIN
    name: typing.Optional[str] = None
    participant_id: typing.Optional[str] = None
    reconnecting: bool = False
    game_state_backup: typing.Optional[dict] = None
    join_order: typing.Optional[list] = None


@dataclasses.dataclass
class JoinAccepted:
    kind: typing.ClassVar[MessageType] = MessageType.JOIN_ACCEPTED
    participant_id: str
    room_code: str
    game_in_progress: bool = False
    reconnected: bool = False


@dataclasses.dataclass
class PlayerList:
    kind: typing.ClassVar[MessageType] = MessageType.PLAYER_LIST
    participants: list
    join_order: list


@dataclasses.dataclass
class PlayerJoined:
    kind: typing.ClassVar[MessageType] = MessageType.PLAYER_JOINED
    participant: Participant
    join_order: typing.Optional[list] = None


@dataclasses.dataclass
class PlayerLeft:
    kind: typing.ClassVar[MessageType] = MessageType.PLAYER_LEFT
    participant_id: str


@dataclasses.dataclass
class PlayerDisconnected:
    kind: typing.ClassVar[MessageType] = MessageType.PLAYER_DISCONNECTED
    participant_id: str
    may_reconnect: bool = True


@dataclasses.dataclass
class PlayerReconnected:
    kind: typing.ClassVar[MessageType] = MessageType.PLAYER_RECONNECTED
    participant: Participant


@dataclasses.dataclass
class GameState:
    kind: typing.ClassVar[MessageType] = MessageType.GAME_STATE
    state: dict


@dataclasses.dataclass
class FullStateBackup:
    kind: typing.ClassVar[MessageType] = MessageType.FULL_STATE_BACKUP
    state: dict
    join_order: list = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class NewHostAnnouncement:
    kind: typing.ClassVar[MessageType] = MessageType.NEW_HOST_ANNOUNCEMENT
    new_host_id: str
    room_code: str
    game_state: typing.Optional[dict] = None
    join_order: list = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class Action:
    kind: typing.ClassVar[MessageType] = MessageType.ACTION
    action: typing.Any = None
    participant_id: typing.Optional[str] = None


@dataclasses.dataclass
class Chat:
    kind: typing.ClassVar[MessageType] = MessageType.CHAT
    text: str
    sender_id: typing.Optional[str] = None
    sender_name: typing.Optional[str] = None
    timestamp: typing.Optional[int] = None


@dataclasses.dataclass
class Error:
    kind: typing.ClassVar[MessageType] = MessageType.ERROR
    message: str
    code: typing.Optional[str] = None


@dataclasses.dataclass
class Leave:
    kind: typing.ClassVar[MessageType] = MessageType.LEAVE
    participant_id: typing.Optional[str] = None


@dataclasses.dataclass
class Passthrough:
    """game-specific message this core does not interpret"""
    kind: typing.ClassVar[MessageType] = MessageType.PASSTHROUGH
    type_name: str
    payload: dict = dataclasses.field(default_factory=dict)


Message = typing.Union[
    Join, JoinAccepted, PlayerList, PlayerJoined, PlayerLeft, PlayerDisconnected, PlayerReconnected,
    GameState, FullStateBackup, NewHostAnnouncement, Action, Chat, Error, Leave, Passthrough,
]

MESSAGE_CLASSES: dict = {
    cls.kind: cls for cls in typing.get_args(Message)
}

_participant_schema = Schema({
    Required("id"): All(str, Length(min=1)),
    Optional("name"): Any(None, str),
    Optional("isHost"): bool,
    Optional("queued"): bool,
}, extra=ALLOW_EXTRA)

_order_schema = [All(str, Length(min=1))]

WIRE_SCHEMAS = {
    MessageType.JOIN: Schema({
        Required("type"): str,
        Optional("name"): Any(None, str),
        Optional("participantId"): Any(None, str),
        Optional("reconnecting"): bool,
        Optional("gameStateBackup"): Any(None, dict),
        Optional("joinOrder"): Any(None, _order_schema),
    }, extra=ALLOW_EXTRA),
    MessageType.JOIN_ACCEPTED: Schema({
        Required("type"): str,
        Required("participantId"): All(str, Length(min=1)),
        Required("roomCode"): All(str, Length(min=1)),
        Optional("gameInProgress"): bool,
        Optional("reconnected"): bool,
    }, extra=ALLOW_EXTRA),
    MessageType.PLAYER_LIST: Schema({
        Required("type"): str,
        Required("participants"): [_participant_schema],
        Required("joinOrder"): _order_schema,
    }, extra=ALLOW_EXTRA),
    MessageType.PLAYER_JOINED: Schema({
        Required("type"): str,
        Required("participant"): _participant_schema,
        Optional("joinOrder"): Any(None, _order_schema),
    }, extra=ALLOW_EXTRA),
    MessageType.PLAYER_LEFT: Schema({
        Required("type"): str,
        Required("participantId"): All(str, Length(min=1)),
    }, extra=ALLOW_EXTRA),
    MessageType.PLAYER_DISCONNECTED: Schema({
        Required("type"): str,
        Required("participantId"): All(str, Length(min=1)),
        Optional("mayReconnect"): bool,
    }, extra=ALLOW_EXTRA),
    MessageType.PLAYER_RECONNECTED: Schema({
        Required("type"): str,
        Required("participant"): _participant_schema,
    }, extra=ALLOW_EXTRA),
    MessageType.GAME_STATE: Schema({
        Required("type"): str,
        Required("state"): dict,
    }, extra=ALLOW_EXTRA),
    MessageType.FULL_STATE_BACKUP: Schema({
        Required("type"): str,
        Required("state"): dict,
        Optional("joinOrder"): _order_schema,
    }, extra=ALLOW_EXTRA),
    MessageType.NEW_HOST_ANNOUNCEMENT: Schema({
        Required("type"): str,
        Required("newHostId"): All(str, Length(min=1)),
        Required("roomCode"): All(str, Length(min=1)),
        Optional("gameState"): Any(None, dict),
        Optional("joinOrder"): _order_schema,
    }, extra=ALLOW_EXTRA),
    MessageType.ACTION: Schema({
        Required("type"): str,
        Optional("action"): object,
        Optional("participantId"): Any(None, str),
    }, extra=ALLOW_EXTRA),
    MessageType.CHAT: Schema({
        Required("type"): str,
        Required("text"): str,
        Optional("senderId"): Any(None, str),
        Optional("senderName"): Any(None, str),
        Optional("timestamp"): Any(None, int),
    }, extra=ALLOW_EXTRA),
    MessageType.ERROR: Schema({
        Required("type"): str,
        Required("message"): str,
        Optional("code"): Any(None, str),
    }, extra=ALLOW_EXTRA),
    MessageType.LEAVE: Schema({
        Required("type"): str,
        Optional("participantId"): Any(None, str),
    }, extra=ALLOW_EXTRA),
}


def wire_name(field_name: str) -> str:
    head, *rest = field_name.split("_")
    return head + "".join(part.title() for part in rest)


def _to_wire(value):
    if isinstance(value, Participant):
        return value.to_wire()
    if isinstance(value, list):
        return [_to_wire(item) for item in value]
    return value


def encode(message: Message) -> dict:
    if isinstance(message, Passthrough):
        packet = dict(message.payload)
        packet["type"] = message.type_name
        return packet

    packet = {"type": message.kind.value}
    for field in dataclasses.fields(message):
        value = getattr(message, field.name)
        if value is None:
            continue
        packet[wire_name(field.name)] = _to_wire(value)
    return packet


def decode(packet) -> Message:
    if not isinstance(packet, dict):
        raise MalformedMessage(f"packet is not an object: {type(packet).__name__}")
    type_name = packet.get("type")
    if not isinstance(type_name, str) or not type_name:
        raise MalformedMessage("packet has no type")

    try:
        message_type = MessageType(type_name)
    except ValueError:
        message_type = MessageType.PASSTHROUGH
    if message_type == MessageType.PASSTHROUGH:
        return Passthrough(type_name, {k: v for k, v in packet.items() if k != "type"})

    try:
        WIRE_SCHEMAS[message_type](packet)
    except voluptuous.error.Invalid as e:
        raise MalformedMessage(f"{type_name}: {e}") from e

    cls = MESSAGE_CLASSES[message_type]
    kwargs = {}
    for field in dataclasses.fields(cls):
        key = wire_name(field.name)
        if key not in packet or packet[key] is None:
            continue
        value = packet[key]
        if field.name == "participant":
            value = Participant.from_wire(value)
        elif field.name == "participants":
            value = [Participant.from_wire(item) for item in value]
        kwargs[field.name] = value
    return cls(**kwargs)
