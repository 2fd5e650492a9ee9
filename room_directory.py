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
import secrets
from typing import Callable, Iterable, Optional

from clock import Clock
from errors import RoomFull
from room_data import ConnectionRecord, ConnectionState, DisconnectedEntry, Participant, new_participant

# 32 symbols: no I, O, 0 or 1
ROOM_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
ROOM_CODE_LENGTH = 5


def generate_room_code() -> str:
    return "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))


def unique_order(ids: Iterable[str]) -> list:
    order = []
    for participant_id in ids:
        if participant_id not in order:
            order.append(participant_id)
    return order


class RoomDirectory:
    """
    Who is in the room.

    On the host this is the authority: participants are admitted, restored, moved into the
    disconnected cache and removed here. On every other participant the same structure is kept
    as a mirror of what the host announced, which is what host election runs against.

    A participant id lives in at most one of `participants` and the disconnected cache.
    """

    def __init__(self, clock: Clock, max_participants: int = 10, grace_period: float = 5 * 60):
        self._clock = clock
        self.max_participants = max_participants
        self.grace_period = grace_period
        self.room_code: Optional[str] = None
        self.host_id: Optional[str] = None
        self.participants: dict[str, Participant] = dict()
        self.connections: dict[str, ConnectionRecord] = dict()
        self.join_order: list[str] = []
        self._disconnected: dict[str, DisconnectedEntry] = dict()

    # ---- host side ----

    def register_host(self, name: str, address_for: Callable[[str], str],
                      room_code: Optional[str] = None) -> Participant:
        self.room_code = (room_code or generate_room_code()).upper()
        self.host_id = address_for(self.room_code)
        host = Participant(id=self.host_id, display_name=name or "Host", is_host=True)
        self.participants = {host.id: host}
        self._disconnected.clear()
        self.join_order = [host.id]
        logging.info(f"Room {self.room_code} registered with host {host.id}")
        return host

    def is_known(self, participant_id: str) -> bool:
        self.purge_expired()
        return participant_id in self.participants or participant_id in self._disconnected

    def restore(self, participant_id: str, name: Optional[str] = None) -> Participant:
        self.purge_expired()
        entry = self._disconnected.pop(participant_id, None)
        previous = self.participants.get(participant_id) or (entry.participant if entry else None)
        display_name = name or (previous.display_name if previous else None)
        participant = new_participant(participant_id, display_name, queued=False)
        self.participants[participant_id] = participant
        if participant_id not in self.join_order:
            self.join_order.append(participant_id)
        logging.debug(f"Restored participant {participant_id=}")
        return participant

    def admit(self, participant_id: str, name: Optional[str], queued: bool) -> Participant:
        if len(self.participants) >= self.max_participants:
            raise RoomFull(f"Room is full (max {self.max_participants} players)")
        participant = new_participant(participant_id, name, queued=queued)
        self.participants[participant_id] = participant
        self._disconnected.pop(participant_id, None)
        if participant_id not in self.join_order:
            self.join_order.append(participant_id)
        logging.debug(f"Admitted participant {participant_id=} {queued=}")
        return participant

    def mark_disconnected(self, participant_id: str) -> Optional[Participant]:
        participant = self.participants.pop(participant_id, None)
        self.connections.pop(participant_id, None)
        if participant is None:
            return None
        self._disconnected[participant_id] = DisconnectedEntry(participant, self._clock.time())
        self.purge_expired()
        return participant

    def remove(self, participant_id: str) -> Optional[Participant]:
        participant = self.participants.pop(participant_id, None)
        entry = self._disconnected.pop(participant_id, None)
        self.connections.pop(participant_id, None)
        if participant_id in self.join_order:
            self.join_order.remove(participant_id)
        return participant or (entry.participant if entry else None)

    def purge_expired(self) -> None:
        now = self._clock.time()
        for participant_id, entry in list(self._disconnected.items()):
            if now - entry.disconnected_at > self.grace_period:
                logging.debug(f"Grace period over for {participant_id=}")
                del self._disconnected[participant_id]
                if participant_id in self.join_order:
                    self.join_order.remove(participant_id)

    def is_disconnected(self, participant_id: str) -> bool:
        self.purge_expired()
        return participant_id in self._disconnected

    def disconnected_ids(self) -> list:
        self.purge_expired()
        return list(self._disconnected)

    def merge_join_order(self, first_id: str, order: Iterable[str]) -> None:
        self.join_order = unique_order([first_id, *order])

    # ---- mirror side ----

    def replace_roster(self, participants: Iterable[Participant], join_order: Iterable[str]) -> None:
        self.participants = {participant.id: participant for participant in participants}
        for participant_id in self.participants:
            self._disconnected.pop(participant_id, None)
        self.set_join_order(join_order)
        for participant in self.participants.values():
            if participant.is_host:
                self.host_id = participant.id

    def upsert(self, participant: Participant) -> None:
        self._disconnected.pop(participant.id, None)
        self.participants[participant.id] = participant
        if participant.id not in self.join_order:
            self.join_order.append(participant.id)

    def set_join_order(self, join_order: Iterable[str]) -> None:
        self.join_order = unique_order(join_order)

    def promote(self, new_host_id: str) -> None:
        self.host_id = new_host_id
        for participant in self.participants.values():
            participant.is_host = participant.id == new_host_id
        self.join_order = unique_order([new_host_id, *self.join_order])

    # ---- queue ----

    def queued_participants(self) -> list:
        return [participant for participant in self.participants.values() if participant.queued]

    def clear_queued(self) -> None:
        for participant in self.participants.values():
            participant.queued = False

    # ---- connections ----

    def attach_connection(self, participant_id: str, channel) -> ConnectionRecord:
        record = ConnectionRecord(participant_id, channel, ConnectionState.OPEN)
        previous = self.connections.get(participant_id)
        if previous is not None and previous.channel is not channel:
            previous.state = ConnectionState.CLOSED
            previous.channel.close()
        self.connections[participant_id] = record
        return record

    def detach_connection(self, participant_id: str, channel=None) -> bool:
        """False when `channel` is no longer the participant's current connection."""
        record = self.connections.get(participant_id)
        if record is None or (channel is not None and record.channel is not channel):
            return False
        record.state = ConnectionState.CLOSED
        del self.connections[participant_id]
        return True

    def owns(self, participant_id: str, channel) -> bool:
        record = self.connections.get(participant_id)
        return record is not None and record.channel is channel
