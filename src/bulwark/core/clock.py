"""Time sources for limiters and breakers.

`SystemClock` is the default: fixed and sliding windows are aligned to epoch
boundaries, and a wall clock is the only time base that nodes sharing a
Redis store agree on. `MonotonicClock` is immune to wall-clock jumps but is
only meaningful inside one process. `ManualClock` is driven explicitly.
"""

import threading
import time

from bulwark.domain.interfaces import IClock


class SystemClock(IClock):
    """Wall-clock time in seconds since the epoch."""

    def now(self) -> float:
        return time.time()


class MonotonicClock(IClock):
    """Monotonic time in seconds. Not comparable across processes."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock(IClock):
    """A clock that only moves when told to.

    Used for deterministic simulations and tests of window and cooldown
    behaviour.
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        """Moves the clock forward (or backward, to simulate skew) and returns the new time."""
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, timestamp: float) -> None:
        with self._lock:
            self._now = float(timestamp)
