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

import os
import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install

# ignore errors from these libs
import tomlkit, websockets, zeroconf

console = Console()

NOISY_LOGGERS = ("websockets", "zeroconf", "asyncio")


class ParticipantFilter(logging.Filter):
    """Prefixes every record with the local participant, so logs from several terminals can be merged."""

    def __init__(self):
        super().__init__()
        self.participant_id: Optional[str] = None

    def filter(self, record: logging.LogRecord) -> bool:
        record.participant = self.participant_id or "-"
        return True


participant_filter = ParticipantFilter()


def setup_logging(level: Optional[str] = None):
    level = (level or os.environ.get("LOGLEVEL", "INFO")).upper()
    logging_handler = RichHandler(
        level=level,
        console=console,
        rich_tracebacks=True,
        tracebacks_suppress=[tomlkit, websockets, zeroconf],
    )
    logging_handler.addFilter(participant_filter)

    logging.basicConfig(
        level="NOTSET", format="[%(participant)s] %(message)s", datefmt="[%X]", handlers=[logging_handler]
    )
    # library debug output drowns the room's own
    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.INFO if level == "DEBUG" else logging.WARNING)

    install(console=console)
