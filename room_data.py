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

import dataclasses
import enum
from typing import Any, Optional


class ConnectionState(enum.Enum):
    OPENING = "opening"
    OPEN = "open"
    CLOSED = "closed"


@dataclasses.dataclass
class Participant:
    id: str
    display_name: str
    is_host: bool = False
    queued: bool = False

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "name": self.display_name,
            "isHost": self.is_host,
            "queued": self.queued,
        }

    @staticmethod
    def from_wire(data: dict) -> "Participant":
        return Participant(
            id=data["id"],
            display_name=data.get("name") or "Player",
            is_host=bool(data.get("isHost", False)),
            queued=bool(data.get("queued", False)),
        )


@dataclasses.dataclass
class ConnectionRecord:
    participant_id: str
    channel: Any  # transport.Connection
    state: ConnectionState = ConnectionState.OPENING

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN


@dataclasses.dataclass
class DisconnectedEntry:
    participant: Participant
    disconnected_at: float


@dataclasses.dataclass
class SessionRecord:
    """
    persisted locally so a reloaded participant can resume
    """
    participant_id: str
    room_code: str
    display_name: str
    is_host: bool
    game_in_progress: bool
    saved_at: float  # epoch seconds

    def to_storage(self) -> dict:
        return {
            "peerId": self.participant_id,
            "roomCode": self.room_code,
            "playerName": self.display_name,
            "isHost": self.is_host,
            "gameInProgress": self.game_in_progress,
            "timestamp": int(self.saved_at * 1000),
        }

    @staticmethod
    def from_storage(data: dict) -> "SessionRecord":
        return SessionRecord(
            participant_id=data["peerId"],
            room_code=data["roomCode"],
            display_name=data["playerName"],
            is_host=bool(data["isHost"]),
            game_in_progress=bool(data.get("gameInProgress", False)),
            saved_at=data["timestamp"] / 1000,
        )


@dataclasses.dataclass(frozen=True)
class RoomSettings:
    address_prefix: str = "tablemesh"
    max_participants: int = 10
    grace_period: float = 5 * 60
    session_ttl: float = 60 * 60
    storage_key: str = "tablemesh_session"
    reconnect_attempts: int = 5
    reconnect_interval: float = 1.0
    attempt_timeout: float = 0.8
    join_timeout: float = 10.0

    def host_address(self, room_code: str) -> str:
        return f"{self.address_prefix}-{room_code.upper()}"


def new_participant(participant_id: str, name: Optional[str], queued: bool = False) -> Participant:
    return Participant(id=participant_id, display_name=name or "Player", is_host=False, queued=queued)
