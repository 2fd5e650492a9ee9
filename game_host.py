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

from typing import Optional

from errors import SessionError
from protocol import JoinAccepted, Message
from room_data import Participant


class GameStateHost:
    """
    The game logic the session drives. It owns the rules and the snapshot; the session only
    tells it who is in the room and what arrived. Every hook is optional.
    """

    def on_room_ready(self, room_code: str, participant_id: str, is_host: bool) -> None:
        pass

    def on_connected(self, accepted: JoinAccepted) -> None:
        pass

    def on_join(self, participant: Participant) -> None:
        """`participant.queued` means it should sit out until the next round."""

    def on_leave(self, participant_id: str, may_reconnect: bool) -> None:
        pass

    def on_reconnect(self, participant_id: str) -> None:
        pass

    def on_roster(self, participants: list) -> None:
        pass

    def on_message(self, from_id: str, message: Message) -> None:
        """Actions, chat and game-specific passthrough messages."""

    def on_state(self, view: dict) -> None:
        """A viewer-filtered snapshot for this participant."""

    def on_become_host(self, snapshot: Optional[dict]) -> None:
        """Resume authority from `snapshot`, the most recent full backup (None if there never was one)."""

    def on_error(self, error: SessionError) -> None:
        pass
