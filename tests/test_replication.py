import copy

import pytest

from protocol import Chat, MessageType, decode
from replication import ReplicationChannel, ViewerProjection, filter_for_viewer
from room_data import RoomSettings
from room_directory import RoomDirectory

SNAPSHOT = {
    "phase": "draw",
    "pot": 120,
    "players": [
        {"id": "h", "name": "Hana", "holeCards": ["As", "Kd", "7c", "7h"], "chips": 400},
        {"id": "p1", "name": "Pia", "holeCards": ["2s", "3d", "9c", "Jh"], "chips": 380},
        {"id": "p2", "name": "Quinn", "folded": True},
    ],
}


class RecordingChannel:

    def __init__(self, is_open=True):
        self.is_open = is_open
        self.sent = []

    def send(self, packet):
        self.sent.append(packet)

    def close(self):
        self.is_open = False


@pytest.fixture()
def directory(clock):
    directory = RoomDirectory(clock)
    directory.register_host("Hana", RoomSettings().host_address, "ABCDE")
    directory.admit("p1", "Pia", queued=False)
    directory.admit("p2", "Quinn", queued=False)
    return directory


def test_other_hole_cards_are_face_down():
    view = filter_for_viewer(SNAPSHOT, "p1")
    players = {entry["id"]: entry for entry in view["players"]}
    assert players["p1"]["holeCards"] == ["2s", "3d", "9c", "Jh"]
    assert players["h"]["holeCards"] == [{"faceDown": True}] * 4
    assert players["h"]["chips"] == 400
    assert "holeCards" not in players["p2"]


def test_results_phase_reveals_everything():
    revealed = dict(SNAPSHOT, phase="results")
    assert filter_for_viewer(revealed, "p1") == revealed


def test_filter_never_mutates_and_never_shares():
    original = copy.deepcopy(SNAPSHOT)
    first = filter_for_viewer(SNAPSHOT, "p1")
    second = filter_for_viewer(SNAPSHOT, "p2")
    first["players"][1]["holeCards"].append("Qs")
    first["pot"] = 0
    assert SNAPSHOT == original
    assert second["pot"] == 120
    assert filter_for_viewer(SNAPSHOT, "p1")["players"][1]["holeCards"] == ["2s", "3d", "9c", "Jh"]


def test_custom_projection():
    projection = ViewerProjection(participants_key="seats", id_key="seat", private_fields=("hand", "secret"),
                                  phase_key="stage", revealed_phases=frozenset({"showdown"}))
    snapshot = {"stage": "play", "seats": [{"seat": "a", "hand": [1, 2], "secret": "x"}, {"seat": "b", "hand": [3]}]}
    view = filter_for_viewer(snapshot, "b", projection)
    assert view["seats"][0] == {"seat": "a", "hand": [{"faceDown": True}] * 2, "secret": None}
    assert view["seats"][1]["hand"] == [3]
    assert filter_for_viewer(dict(snapshot, stage="showdown"), "b", projection)["seats"][0]["secret"] == "x"


def test_broadcast_skips_closed_and_excluded(directory):
    replication = ReplicationChannel(directory)
    p1, p2 = RecordingChannel(), RecordingChannel(is_open=False)
    directory.attach_connection("p1", p1)
    directory.attach_connection("p2", p2)

    assert replication.broadcast(Chat(text="hi", sender_id="h")) == 1
    assert p1.sent == [{"type": "chat", "text": "hi", "senderId": "h"}]
    assert p2.sent == []
    assert replication.broadcast(Chat(text="again"), exclude_id="p1") == 0


def test_broadcast_state_sends_view_and_backup(directory):
    replication = ReplicationChannel(directory)
    p1, p2 = RecordingChannel(), RecordingChannel()
    directory.attach_connection("p1", p1)
    directory.attach_connection("p2", p2)

    host_view = replication.broadcast_state(SNAPSHOT, "h")

    assert host_view["players"][0]["holeCards"] == ["As", "Kd", "7c", "7h"]
    assert host_view["players"][1]["holeCards"] == [{"faceDown": True}] * 4
    for channel, viewer in ((p1, "p1"), (p2, "p2")):
        state, backup = (decode(packet) for packet in channel.sent)
        assert state.kind == MessageType.GAME_STATE
        assert state.state == filter_for_viewer(SNAPSHOT, viewer)
        assert backup.kind == MessageType.FULL_STATE_BACKUP
        assert backup.state == SNAPSHOT
        assert backup.join_order == ["tablemesh-ABCDE", "p1", "p2"]
    assert replication.last_full_state == SNAPSHOT
    assert replication.last_full_state is not SNAPSHOT


def test_store_backup_keeps_only_the_latest(directory):
    replication = ReplicationChannel(directory)
    replication.store_backup({"phase": "draw", "round": 1}, ["p1", "tablemesh-ABCDE"])
    replication.store_backup({"phase": "draw", "round": 2})
    assert replication.last_full_state == {"phase": "draw", "round": 2}
    assert directory.join_order == ["p1", "tablemesh-ABCDE"]
    assert replication.view_for("p1") == {"phase": "draw", "round": 2}


def test_send_needs_an_open_connection(directory):
    replication = ReplicationChannel(directory)
    assert replication.send("p1", Chat(text="nobody home")) is False
    channel = RecordingChannel()
    directory.attach_connection("p1", channel)
    assert replication.send("p1", Chat(text="hello")) is True
    assert len(channel.sent) == 1
