"""
Time sources used by every temporal rule in the pipeline.
"""

import threading
import time


class Clock:
    """Wall-clock time in milliseconds."""

    def now_ms(self) -> float:
        return time.time() * 1000.0


class ManualClock(Clock):
    """Clock advanced explicitly, for deterministic scheduling and tests."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)
        self._lock = threading.Lock()

    def now_ms(self) -> float:
        with self._lock:
            return self._now

    def advance(self, ms: float) -> float:
        with self._lock:
            self._now += ms
            return self._now

    def set(self, ms: float) -> None:
        with self._lock:
            self._now = float(ms)


system_clock = Clock()
