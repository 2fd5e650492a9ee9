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
import argparse
import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from clock import LoopClock
from config import Config, ConfigurationLoadError
from errors import NoSession
from game_host import GameStateHost
from logger import participant_filter, setup_logging
from peer_discovery import PeerDiscovery
from session_identity import SessionStore
from session_manager import SessionManager
from websocket_transport import WebsocketTransport


class LobbyGame(GameStateHost):
    """Keeps a lobby snapshot of who is seated and logs everything the room does."""
    session: SessionManager

    def __init__(self):
        self.snapshot: Optional[dict] = None

    def on_room_ready(self, room_code, participant_id, is_host):
        participant_filter.participant_id = participant_id
        logging.info(f"Room {room_code} ready, we are {participant_id} ({'host' if is_host else 'peer'})")

    def on_roster(self, participants):
        logging.info("Roster: " + ", ".join(
            f"{p.display_name}{' (host)' if p.is_host else ''}{' (queued)' if p.queued else ''}" for p in participants))
        if self.session.is_host:
            self.snapshot = {
                "phase": "lobby",
                "players": [{"id": p.id, "name": p.display_name, "queued": p.queued} for p in participants],
            }
            self.session.broadcast_state(self.snapshot)

    def on_message(self, from_id, message):
        logging.info(f"{message.kind.value} from {from_id}: {message}")

    def on_state(self, view):
        logging.debug(f"State: {view}")

    def on_become_host(self, snapshot):
        logging.info("We are the host now")
        self.snapshot = snapshot

    def on_error(self, error):
        logging.error(f"Room error: {error}")


class TableMesh:

    def __init__(self, config: Config, args: argparse.Namespace):
        self._config = config
        self._args = args
        transport_config = self._config["transport"]
        self._discovery = PeerDiscovery(
            transport_config["service_type"],
            transport_config.get("advertise_host"),
            transport_config["resolve_timeout_ms"],
        )
        self._transport = WebsocketTransport(self._discovery, transport_config["bind"])
        self._store = SessionStore(Path(self._config["session"]["store_path"]))
        self._game = LobbyGame()
        self._session = SessionManager(self._transport, LoopClock(), self._game, self._config.settings(), self._store)
        self._game.session = self._session

    async def begin(self):
        logging.info("Starting TableMesh")
        await self._store.initialize()
        try:
            if self._args.mode == "host":
                code = self._session.create_room(self._args.name, self._args.code)
                logging.info(f"Share room code {code}")
            elif self._args.mode == "join":
                self._session.join_room(self._args.code, self._args.name)
            else:
                self._session.reconnect()
        except NoSession:
            logging.error("No saved session to resume")
            return

        try:
            logging.info("Ctrl^C to quit")
            while True:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            logging.info("Cancelled ...")
        finally:
            logging.info("Stopping ...")
            if self._args.leave:
                self._session.leave()
            await self._store.close()
            await self._transport.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="TableMesh - peer-to-peer game rooms")
    parser.add_argument("--leave", action="store_true", help="Leave the room on exit instead of keeping the session")
    parser.add_argument("--log-level", type=str, default=None, help="Log level, overrides LOGLEVEL")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    host_p = subparsers.add_parser("host", help="Create a room")
    host_p.add_argument("name", type=str, help="Display name")
    host_p.add_argument("--code", type=str, default=None, help="Room code to claim instead of a random one")

    join_p = subparsers.add_parser("join", help="Join a room by code")
    join_p.add_argument("code", type=str, help="Room code")
    join_p.add_argument("name", type=str, help="Display name")

    subparsers.add_parser("resume", help="Resume the saved session")
    return parser.parse_args()


async def main(args: argparse.Namespace):
    logging.info("Starting tablemesh ...")

    config_location = os.environ.get("TABLEMESH_CONFIG")
    config = Config(config_location or "./tablemesh.toml", required=config_location is not None)

    try:
        await config.initialize()
        tablemesh = TableMesh(config, args)
        await tablemesh.begin()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return


def cli():
    args = parse_args()
    setup_logging(args.log_level)
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        logging.info("Cancelled ...")


if __name__ == "__main__":
    cli()
