"""Injectable millisecond clocks."""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of wall-clock time in milliseconds."""

    def now(self) -> int: ...


class SystemClock:
    """Clock backed by ``time.time()``."""

    def now(self) -> int:
        return int(time.time() * 1000)


class VirtualClock:
    """Manually driven clock for deterministic tests and simulations."""

    def __init__(self, start: int = 0) -> None:
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, ms: int) -> int:
        """Move time forward by ``ms`` milliseconds and return the new time."""
        if ms < 0:
            raise ValueError("VirtualClock cannot move backwards")
        self._now += ms
        return self._now

    def set(self, ms: int) -> None:
        self._now = ms


SYSTEM_CLOCK = SystemClock()
