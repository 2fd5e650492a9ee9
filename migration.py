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

"""
Host supervision on every participant that is not the host.

When the host connection drops the coordinator retries the host a fixed number of times. If
the host stays away, the first surviving participant in join order takes over and announces
itself to everybody else; the others wait for that announcement. The most recent announcement
processed always decides who the host is.

Connected -> Reconnecting -> Recovered -> Connected
                          -> MigrationPending -> Migrating -> NewHostSelf
                                                           -> FollowingNewHost (on announcement)
                          -> MigrationPending -> Failed (nobody left to take over)
"""

import dataclasses
import enum
import logging
from typing import Iterable, Optional

from clock import Clock
from errors import NoSuccessor
from protocol import NewHostAnnouncement


class MigrationState(enum.Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    RECOVERED = "recovered"
    MIGRATION_PENDING = "migration_pending"
    MIGRATING = "migrating"
    NEW_HOST_SELF = "new_host_self"
    FOLLOWING_NEW_HOST = "following_new_host"
    FAILED = "failed"


class MigrationEvent(enum.Enum):
    HOST_CONFIRMED = "host_confirmed"
    HOST_LOST = "host_lost"
    HOST_REACHED = "host_reached"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    ELECTED_SELF = "elected_self"
    ELECTED_OTHER = "elected_other"
    NO_CANDIDATE = "no_candidate"
    TAKEOVER_COMPLETE = "takeover_complete"
    ANNOUNCEMENT = "announcement"
    STOPPED = "stopped"


S = MigrationState
E = MigrationEvent

TRANSITIONS = {
    (S.IDLE, E.HOST_CONFIRMED): S.CONNECTED,
    (S.CONNECTED, E.HOST_CONFIRMED): S.CONNECTED,
    (S.RECOVERED, E.HOST_CONFIRMED): S.CONNECTED,
    (S.FOLLOWING_NEW_HOST, E.HOST_CONFIRMED): S.FOLLOWING_NEW_HOST,

    (S.CONNECTED, E.HOST_LOST): S.RECONNECTING,
    (S.RECOVERED, E.HOST_LOST): S.RECONNECTING,
    (S.FOLLOWING_NEW_HOST, E.HOST_LOST): S.RECONNECTING,

    (S.RECONNECTING, E.HOST_REACHED): S.RECOVERED,
    (S.RECONNECTING, E.ATTEMPTS_EXHAUSTED): S.MIGRATION_PENDING,

    (S.MIGRATION_PENDING, E.ELECTED_SELF): S.MIGRATING,
    (S.MIGRATION_PENDING, E.ELECTED_OTHER): S.MIGRATING,
    (S.MIGRATION_PENDING, E.NO_CANDIDATE): S.FAILED,
    (S.MIGRATING, E.TAKEOVER_COMPLETE): S.NEW_HOST_SELF,
}

# an announcement supersedes whatever is going on
for _state in MigrationState:
    TRANSITIONS[(_state, E.ANNOUNCEMENT)] = S.FOLLOWING_NEW_HOST
    TRANSITIONS[(_state, E.STOPPED)] = S.IDLE


def eligible_successors(join_order: Iterable[str], old_host_id: Optional[str], known_ids) -> list:
    return [participant_id for participant_id in join_order
            if participant_id != old_host_id and participant_id in known_ids]


def elect_leader(join_order: Iterable[str], old_host_id: Optional[str], known_ids) -> Optional[str]:
    candidates = eligible_successors(join_order, old_host_id, known_ids)
    return candidates[0] if candidates else None


@dataclasses.dataclass
class ReconnectRound:
    old_host_id: Optional[str]
    started: int = 0
    failed: int = 0
    pending: dict = dataclasses.field(default_factory=dict)  # attempt -> (connection, timeout timer)
    tick_timer: object = None


class MigrationCoordinator:

    def __init__(self, session, clock: Clock, attempts: int = 5, interval: float = 1.0,
                 attempt_timeout: float = 0.8):
        self._session = session
        self._clock = clock
        self.attempts = attempts
        self.interval = interval
        self.attempt_timeout = attempt_timeout
        self.state = MigrationState.IDLE
        self.expected_host_id: Optional[str] = None
        self._round: Optional[ReconnectRound] = None

    def _fire(self, event: MigrationEvent) -> bool:
        target = TRANSITIONS.get((self.state, event))
        if target is None:
            logging.debug(f"Migration ignoring {event.value} in state {self.state.value}")
            return False
        if target != self.state:
            logging.debug(f"Migration {self.state.value} -> {target.value} on {event.value}")
        self.state = target
        return True

    # ---- inputs ----

    def host_confirmed(self) -> None:
        self._fire(MigrationEvent.HOST_CONFIRMED)

    def host_lost(self) -> None:
        old_host_id = self._session.host_id
        if not self._fire(MigrationEvent.HOST_LOST):
            return
        self._end_round()
        logging.info(f"Lost connection to host {old_host_id}, attempting to reconnect")
        self._round = ReconnectRound(old_host_id=old_host_id)
        self._round.tick_timer = self._clock.call_later(self.interval, self._attempt_tick, self._round)

    def handle_announcement(self, connection, announcement: NewHostAnnouncement) -> None:
        logging.info(f"New host announced: {announcement.new_host_id}")
        self._end_round()
        self.expected_host_id = None
        self._fire(MigrationEvent.ANNOUNCEMENT)
        self._session.follow_host(connection, announcement)

    def stop(self) -> None:
        self._end_round()
        self.expected_host_id = None
        self._fire(MigrationEvent.STOPPED)

    # ---- reconnect attempts ----

    def _attempt_tick(self, round_: ReconnectRound) -> None:
        if round_ is not self._round or self.state != MigrationState.RECONNECTING:
            return
        round_.started += 1
        attempt = round_.started
        logging.info(f"Attempting to reconnect to host (attempt {attempt}/{self.attempts})")

        connection = self._session.open_host_connection()
        timer = self._clock.call_later(self.attempt_timeout, self._attempt_failed, round_, attempt, "timed out")
        round_.pending[attempt] = (connection, timer)
        connection.on("open", lambda: self._attempt_opened(round_, attempt))
        connection.on("error", lambda error: self._attempt_failed(round_, attempt, str(error)))

        if attempt < self.attempts:
            round_.tick_timer = self._clock.call_later(self.interval, self._attempt_tick, round_)
        else:
            round_.tick_timer = None

    def _attempt_opened(self, round_: ReconnectRound, attempt: int) -> None:
        entry = round_.pending.pop(attempt, None)
        if entry is None:
            return
        connection, timer = entry
        timer.cancel()
        if round_ is not self._round or not self._fire(MigrationEvent.HOST_REACHED):
            connection.close()
            return
        logging.info("Reconnected to host")
        self._end_round()
        self._session.resume_with_host(connection)

    def _attempt_failed(self, round_: ReconnectRound, attempt: int, reason: str) -> None:
        entry = round_.pending.pop(attempt, None)
        if entry is None:
            return
        connection, timer = entry
        timer.cancel()
        connection.close()
        if round_ is not self._round:
            return
        round_.failed += 1
        logging.debug(f"Reconnect attempt {attempt} failed: {reason}")
        if round_.failed >= self.attempts and self.state == MigrationState.RECONNECTING:
            self._end_round()
            self._attempts_exhausted(round_.old_host_id)

    def _end_round(self) -> None:
        round_ = self._round
        self._round = None
        if round_ is None:
            return
        if round_.tick_timer is not None:
            round_.tick_timer.cancel()
        for connection, timer in round_.pending.values():
            timer.cancel()
            connection.close()
        round_.pending.clear()

    # ---- election ----

    def _attempts_exhausted(self, old_host_id: Optional[str]) -> None:
        self._fire(MigrationEvent.ATTEMPTS_EXHAUSTED)
        logging.info("Host did not come back, electing a new host")
        directory = self._session.directory
        self_id = self._session.participant_id
        candidates = eligible_successors(directory.join_order, old_host_id, directory.participants)

        if not candidates:
            self._fire(MigrationEvent.NO_CANDIDATE)
            self._session.report_error(NoSuccessor())
            return

        leader = candidates[0]
        if leader == self_id:
            self._fire(MigrationEvent.ELECTED_SELF)
            self._session.take_over(old_host_id)
            self._fire(MigrationEvent.TAKEOVER_COMPLETE)
        else:
            self._fire(MigrationEvent.ELECTED_OTHER)
            self.expected_host_id = leader
            logging.info(f"Waiting for new host {leader}")
