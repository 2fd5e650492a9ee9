import pytest

from clock import ManualClock
from game_host import GameStateHost
from room_data import RoomSettings
from session_identity import SessionStore
from session_manager import SessionManager
from transport import LoopbackNetwork

ROOM_CODE = "ABCDE"
HOST = "tablemesh-ABCDE"


class RecordingGame(GameStateHost):
    """Remembers every hook call so tests can assert on what the session reported."""

    def __init__(self, clock=None):
        self.clock = clock
        self.session = None
        self.events = []
        self.accepted = []
        self.rosters = []
        self.messages = []
        self.states = []
        self.became_host = []
        self.became_host_at = []
        self.errors = []

    def on_room_ready(self, room_code, participant_id, is_host):
        self.events.append(("ready", room_code, participant_id, is_host))

    def on_connected(self, accepted):
        self.accepted.append(accepted)

    def on_join(self, participant):
        self.events.append(("join", participant.id, participant.queued))

    def on_leave(self, participant_id, may_reconnect):
        self.events.append(("leave", participant_id, may_reconnect))

    def on_reconnect(self, participant_id):
        self.events.append(("reconnect", participant_id))

    def on_roster(self, participants):
        self.rosters.append(sorted(participant.id for participant in participants))

    def on_message(self, from_id, message):
        self.messages.append((from_id, message))

    def on_state(self, view):
        self.states.append(view)

    def on_become_host(self, snapshot):
        self.became_host.append(snapshot)
        if self.clock is not None:
            self.became_host_at.append(self.clock.time())

    def on_error(self, error):
        self.errors.append(error)


class Room:
    """A simulated room: every participant shares one loopback network and one manual clock."""

    def __init__(self, clock: ManualClock, network: LoopbackNetwork, settings: RoomSettings = RoomSettings()):
        self.clock = clock
        self.network = network
        self.settings = settings

    def new_session(self, game=None, store=None):
        game = game if game is not None else RecordingGame(self.clock)
        session = SessionManager(self.network, self.clock, game, self.settings,
                                 store if store is not None else SessionStore())
        game.session = session
        return session, game

    def host(self, name="Hana", code=ROOM_CODE, game=None, store=None):
        session, game = self.new_session(game, store)
        session.create_room(name, code)
        self.settle()
        return session, game

    def join(self, participant_id, name=None, code=ROOM_CODE, game=None, store=None):
        session, game = self.new_session(game, store)
        session.join_room(code, name or participant_id.title(), participant_id)
        self.settle()
        return session, game

    def settle(self):
        self.clock.run_until_idle()


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def network(clock):
    return LoopbackNetwork(clock)


@pytest.fixture()
def room(clock, network):
    return Room(clock, network)
