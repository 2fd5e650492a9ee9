import json

import pytest

from clock import ManualClock
from errors import MalformedMessage
from game_host import GameStateHost
from protocol import (
    Chat, Join, JoinAccepted, MessageType, NewHostAnnouncement, Passthrough, PlayerJoined, PlayerList, decode,
    encode, wire_name,
)
from room_data import Participant
from session_manager import SessionManager
from transport import LoopbackNetwork


def test_wire_names_are_camel_case():
    assert wire_name("participant_id") == "participantId"
    assert wire_name("game_state_backup") == "gameStateBackup"
    assert wire_name("state") == "state"


def test_encode_omits_missing_fields():
    packet = encode(Join(name="Pia", participant_id="p1"))
    assert packet == {"type": "join", "name": "Pia", "participantId": "p1", "reconnecting": False}
    assert json.loads(json.dumps(packet)) == packet


def test_reconnecting_join_carries_backup():
    join = Join(name="Pia", participant_id="p1", reconnecting=True,
                game_state_backup={"phase": "draw"}, join_order=["tablemesh-ABCDE", "p1"])
    packet = encode(join)
    assert packet["gameStateBackup"] == {"phase": "draw"}
    assert packet["joinOrder"] == ["tablemesh-ABCDE", "p1"]
    assert decode(packet) == join


def test_participants_decode_to_records():
    player_list = PlayerList(
        participants=[Participant("tablemesh-ABCDE", "Hana", is_host=True), Participant("p1", "Pia", queued=True)],
        join_order=["tablemesh-ABCDE", "p1"],
    )
    packet = encode(player_list)
    assert packet["participants"][1] == {"id": "p1", "name": "Pia", "isHost": False, "queued": True}
    assert decode(packet) == player_list

    joined = decode({"type": "player_joined", "participant": {"id": "p2"}})
    assert joined == PlayerJoined(participant=Participant("p2", "Player"))


def test_announcement_decodes():
    announcement = decode({
        "type": "new_host_announcement", "newHostId": "p1", "roomCode": "ABCDE",
        "gameState": {"phase": "draw"}, "joinOrder": ["p1", "p2"],
    })
    assert announcement == NewHostAnnouncement(new_host_id="p1", room_code="ABCDE",
                                               game_state={"phase": "draw"}, join_order=["p1", "p2"])


def test_unknown_types_pass_through():
    message = decode({"type": "start_game", "dealer": "p1", "round": 3})
    assert message == Passthrough("start_game", {"dealer": "p1", "round": 3})
    assert encode(message) == {"type": "start_game", "dealer": "p1", "round": 3}


def test_extra_keys_are_tolerated():
    message = decode({"type": "chat", "text": "hi", "emoji": "wave"})
    assert message == Chat(text="hi")


@pytest.mark.parametrize("packet", [
    "not an object",
    ["join"],
    {"name": "no type"},
    {"type": ""},
    {"type": "join_accepted", "participantId": "p1"},
    {"type": "player_list", "participants": [{"name": "no id"}], "joinOrder": []},
    {"type": "game_state", "state": "flat"},
    {"type": "new_host_announcement", "newHostId": 7, "roomCode": "ABCDE"},
])
def test_malformed_packets_are_rejected(packet):
    with pytest.raises(MalformedMessage):
        decode(packet)


def test_join_accepted_defaults():
    accepted = decode({"type": "join_accepted", "participantId": "p1", "roomCode": "ABCDE"})
    assert accepted == JoinAccepted(participant_id="p1", room_code="ABCDE", game_in_progress=False, reconnected=False)


def test_every_message_type_has_a_handler_for_both_roles():
    clock = ManualClock()
    session = SessionManager(LoopbackNetwork(clock), clock, GameStateHost())
    assert set(session._host_handlers) == set(MessageType)
    assert set(session._peer_handlers) == set(MessageType)
