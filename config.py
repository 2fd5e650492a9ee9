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
from pathlib import Path

from voluptuous import Schema, Optional, Any, All, Range, Length, Match
import voluptuous.error
import aiofiles
import tomlkit
import tomlkit.exceptions

from room_data import RoomSettings


class ConfigurationLoadError(Exception): pass


_seconds = All(Any(int, float), Range(min=0))


class Config:
    config: dict
    config_opened: bool = False

    def __init__(self, config_location: Path, required: bool = True):
        self.config_location = Path(config_location)
        self.required = required
        self.config = dict()

        self.config_schema = Schema({
            Optional('room', default={}): {
                Optional('address_prefix', default="tablemesh"): All(str, Match(r"^[A-Za-z0-9_-]+$")),
                Optional('max_participants', default=10): All(int, Range(min=2, max=64)),
                Optional('grace_period_sec', default=300): _seconds,
            },
            Optional('session', default={}): {
                Optional('store_path', default="./tablemesh-session.toml"): All(str, Length(min=1)),
                Optional('ttl_sec', default=3600): _seconds,
                Optional('storage_key', default="tablemesh_session"): All(str, Length(min=1)),
            },
            Optional('migration', default={}): {
                Optional('reconnect_attempts', default=5): All(int, Range(min=1)),
                Optional('reconnect_interval_sec', default=1.0): _seconds,
                Optional('attempt_timeout_sec', default=0.8): _seconds,
                Optional('join_timeout_sec', default=10.0): _seconds,
            },
            Optional('transport', default={}): {
                Optional('bind', default="0.0.0.0"): str,
                Optional('advertise_host'): Any(None, str),
                Optional('service_type', default="_tablemesh._tcp.local."): All(str, Match(r"^_.+\.local\.$")),
                Optional('resolve_timeout_ms', default=3000): All(int, Range(min=1)),
            },
        })

    async def initialize(self):
        try:
            async with aiofiles.open(self.config_location, 'r') as config_file:
                file_data = await config_file.read()
                document = tomlkit.parse(file_data)
                logging.debug("Loaded Configuration without toml format error")
                logging.debug("Validating against Schema.")
                self.config = self.config_schema(document.unwrap())
                self.config_opened = True
                logging.debug("Validated against Schema.")
        except FileNotFoundError as e:
            if not self.required:
                logging.debug(f"No configuration at {self.config_location}, using defaults")
                self.config = self.config_schema({})
                return
            logging.exception(e)
            logging.warning(
                f"Could not find {self.config_location}. Copy from .example/tablemesh.toml to {self.config_location}")
            raise ConfigurationLoadError() from e
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.config_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.info(f"Configuration loaded.")

    def __getitem__(self, section: str) -> dict:
        return self.config[section]

    def settings(self) -> RoomSettings:
        room, session, migration = self.config['room'], self.config['session'], self.config['migration']
        return RoomSettings(
            address_prefix=room['address_prefix'],
            max_participants=room['max_participants'],
            grace_period=float(room['grace_period_sec']),
            session_ttl=float(session['ttl_sec']),
            storage_key=session['storage_key'],
            reconnect_attempts=migration['reconnect_attempts'],
            reconnect_interval=float(migration['reconnect_interval_sec']),
            attempt_timeout=float(migration['attempt_timeout_sec']),
            join_timeout=float(migration['join_timeout_sec']),
        )
