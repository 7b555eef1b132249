"""
Clock abstraction so expiry logic can be driven by tests.
"""

import time
from typing import Protocol


class Clock(Protocol):
    """Wall-clock time source in epoch seconds."""

    def now(self) -> float:
        ...


class SystemClock:
    """Clock backed by ``time.time``."""

    def now(self) -> float:
        return time.time()


class MonotonicClock:
    """Clock backed by ``time.monotonic``; used for cool-down windows."""

    def now(self) -> float:
        return time.monotonic()
