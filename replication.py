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

import copy
import dataclasses
import logging
from typing import Iterable, Optional

from protocol import FullStateBackup, GameState, Message, encode
from room_directory import RoomDirectory


@dataclasses.dataclass(frozen=True)
class ViewerProjection:
    """
    Where private per-participant data sits in a snapshot.

    A snapshot is a dict holding a list of participant entries under `participants_key`; each
    entry is identified by `id_key`. The `private_fields` of every entry except the viewer's
    own are concealed, unless the snapshot's `phase_key` names one of the `revealed_phases`.
    """
    participants_key: str = "players"
    id_key: str = "id"
    private_fields: tuple = ("holeCards",)
    phase_key: str = "phase"
    revealed_phases: frozenset = frozenset({"results"})

    def is_revealed(self, snapshot: dict) -> bool:
        return snapshot.get(self.phase_key) in self.revealed_phases

    @staticmethod
    def conceal(value):
        if isinstance(value, list):
            return [{"faceDown": True} for _ in value]
        return None


DEFAULT_PROJECTION = ViewerProjection()


def filter_for_viewer(snapshot: dict, viewer_id: str, projection: ViewerProjection = DEFAULT_PROJECTION) -> dict:
    """Independent copy of `snapshot` as `viewer_id` may see it. The input is never modified."""
    view = copy.deepcopy(snapshot)
    if projection.is_revealed(view):
        return view
    for entry in view.get(projection.participants_key) or []:
        if not isinstance(entry, dict) or entry.get(projection.id_key) == viewer_id:
            continue
        for field in projection.private_fields:
            if field in entry:
                entry[field] = projection.conceal(entry[field])
    return view


class ReplicationChannel:

    def __init__(self, directory: RoomDirectory, projection: ViewerProjection = DEFAULT_PROJECTION):
        self._directory = directory
        self.projection = projection
        # host: the last snapshot it broadcast. everyone else: the last backup it received.
        self.last_full_state: Optional[dict] = None

    def send(self, participant_id: str, message: Message) -> bool:
        record = self._directory.connections.get(participant_id)
        if record is None or not record.is_open or not record.channel.is_open:
            logging.debug(f"Not sending {message.kind.value} to {participant_id=}: no open connection")
            return False
        record.channel.send(encode(message))
        return True

    @staticmethod
    def send_on(channel, message: Message) -> None:
        channel.send(encode(message))

    def broadcast(self, message: Message, exclude_id: Optional[str] = None) -> int:
        packet = encode(message)
        sent = 0
        for participant_id, record in list(self._directory.connections.items()):
            if participant_id == exclude_id:
                continue
            if not record.is_open or not record.channel.is_open:
                continue
            record.channel.send(packet)
            sent += 1
        logging.debug(f"Broadcast {message.kind.value} to {sent} participant(s)")
        return sent

    def broadcast_state(self, snapshot: dict, local_viewer_id: str) -> dict:
        """
        Send every open connection its own filtered view plus the unfiltered backup.
        Returns the local participant's filtered view, built the same way.
        """
        self.last_full_state = copy.deepcopy(snapshot)
        backup = encode(FullStateBackup(state=snapshot, join_order=list(self._directory.join_order)))
        for participant_id, record in list(self._directory.connections.items()):
            if not record.is_open or not record.channel.is_open:
                continue
            view = filter_for_viewer(snapshot, participant_id, self.projection)
            record.channel.send(encode(GameState(state=view)))
            record.channel.send(backup)
        return filter_for_viewer(snapshot, local_viewer_id, self.projection)

    def store_backup(self, state: dict, join_order: Optional[Iterable[str]] = None) -> None:
        # only the newest backup is kept
        self.last_full_state = state
        if join_order:
            self._directory.set_join_order(join_order)

    def view_for(self, viewer_id: str) -> Optional[dict]:
        if self.last_full_state is None:
            return None
        return filter_for_viewer(self.last_full_state, viewer_id, self.projection)
