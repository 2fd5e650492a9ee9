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

import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import tomlkit
import tomlkit.exceptions
import voluptuous.error
from voluptuous import Schema, Required, Optional as Maybe, Any, All, Length, ALLOW_EXTRA

from clock import Clock
from room_data import SessionRecord


class SessionStore:
    """
    Small TOML document holding local state that must survive a restart.

    Reads and writes happen on the in-memory document. With a location and a running event
    loop every change is written back in the background; close() waits for that and writes
    the document one last time.
    """
    document: tomlkit.TOMLDocument

    def __init__(self, location: Optional[Path] = None):
        self.location = Path(location) if location is not None else None
        self.document = tomlkit.document()
        self._flushes: set[asyncio.Task] = set()
        # created on first flush, inside the loop that runs it
        self._write_lock: Optional[asyncio.Lock] = None

    async def initialize(self):
        if self.location is None:
            return
        try:
            async with aiofiles.open(self.location, 'r') as store_file:
                file_data = await store_file.read()
                self.document = tomlkit.parse(file_data)
                logging.debug(f"Loaded session store {self.location}")
        except FileNotFoundError:
            logging.debug(f"No session store at {self.location}, starting empty")
            self.document = tomlkit.document()
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Session store in {self.location} is invalid, starting empty")
            self.document = tomlkit.document()

    def get(self, key: str) -> Optional[dict]:
        item = self.document.get(key)
        if item is None:
            return None
        if hasattr(item, "unwrap"):
            item = item.unwrap()
        return item if isinstance(item, dict) else None

    def set(self, key: str, value: dict) -> None:
        self.document[key] = value
        self._schedule_flush()

    def remove(self, key: str) -> None:
        if key in self.document:
            del self.document[key]
            self._schedule_flush()

    def _schedule_flush(self):
        if self.location is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logging.debug("No running event loop, session store will be written on close")
            return
        task = loop.create_task(self.flush())
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def flush(self):
        if self.location is None:
            return
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            async with aiofiles.open(self.location, 'w') as store_file:
                await store_file.write(tomlkit.dumps(self.document))
        logging.debug(f"Session store written to {self.location}")

    async def close(self):
        if self._flushes:
            await asyncio.gather(*self._flushes)
        await self.flush()


RECORD_SCHEMA = Schema({
    Required('peerId'): All(str, Length(min=1)),
    Required('roomCode'): All(str, Length(min=1)),
    Required('playerName'): str,
    Required('isHost'): bool,
    Maybe('gameInProgress'): bool,
    Required('timestamp'): Any(int, float),
}, extra=ALLOW_EXTRA)


class SessionIdentity:
    """
    This participant's identity in the room, and the persisted record that lets it resume after
    a restart. Records older than `ttl` seconds are discarded on load.
    """

    def __init__(self, store: SessionStore, clock: Clock, ttl: float = 60 * 60,
                 storage_key: str = "tablemesh_session"):
        self._store = store
        self._clock = clock
        self.ttl = ttl
        self.storage_key = storage_key
        self.participant_id: Optional[str] = None
        self.room_code: Optional[str] = None
        self.display_name: str = ""
        self.is_host: bool = False
        self.game_in_progress: bool = False

    def save(self) -> SessionRecord:
        record = SessionRecord(
            participant_id=self.participant_id,
            room_code=self.room_code,
            display_name=self.display_name,
            is_host=self.is_host,
            game_in_progress=self.game_in_progress,
            saved_at=self._clock.time(),
        )
        self._store.set(self.storage_key, record.to_storage())
        logging.debug(f"Session saved: {record}")
        return record

    def load(self) -> Optional[SessionRecord]:
        data = self._store.get(self.storage_key)
        if data is None:
            return None
        try:
            record = SessionRecord.from_storage(RECORD_SCHEMA(data))
        except voluptuous.error.Invalid as e:
            logging.warning(f"Discarding unreadable session record: {e}")
            self.clear()
            return None
        if self._clock.time() - record.saved_at > self.ttl:
            logging.info("Stored session expired")
            self.clear()
            return None
        return record

    def clear(self) -> None:
        self._store.remove(self.storage_key)

    def adopt(self, record: SessionRecord) -> None:
        self.participant_id = record.participant_id
        self.room_code = record.room_code
        self.display_name = record.display_name
        self.is_host = record.is_host
        self.game_in_progress = record.game_in_progress
