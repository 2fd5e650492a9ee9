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
Timers for the protocol core.

Retry, timeout and delivery timers all go through a Clock so the same code runs on the
asyncio loop in production and on a ManualClock in tests.
"""

import asyncio
import heapq
import itertools
import time
from typing import Callable, Optional


class Clock:

    def time(self) -> float:
        """Wall clock seconds, used for persisted timestamps and grace periods."""
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable, *args):
        """Schedule callback; the returned handle has cancel()."""
        raise NotImplementedError


class LoopClock(Clock):

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable, *args) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback, *args)


class ManualTimer:

    def __init__(self, when: float, callback: Callable, args: tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualClock(Clock):
    """Deterministic clock: nothing fires until advance() or run_until_idle() is called."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._timers: list = []
        self._sequence = itertools.count()

    def time(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable, *args) -> ManualTimer:
        timer = ManualTimer(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._timers, (timer.when, next(self._sequence), timer))
        return timer

    def advance(self, seconds: float = 0.0) -> None:
        deadline = self._now + seconds
        while self._timers and self._timers[0][0] <= deadline:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, when)
            timer.callback(*timer.args)
        self._now = deadline

    def run_until_idle(self, limit: int = 10_000) -> None:
        """Run every timer due now, including ones scheduled by callbacks at zero delay."""
        for _ in range(limit):
            if not any(when <= self._now and not timer.cancelled for when, _, timer in self._timers):
                return
            self.advance(0.0)
        raise RuntimeError("clock did not settle")
