"""
Smoothing and rolling-window helpers shared by the risk scorers.
"""

from collections import deque
from typing import Optional

import numpy as np


def clamp01(x: float) -> float:
    """Clamp value to [0, 1] with NaN safety."""
    if x != x:  # NaN check
        return 0.0
    return max(0.0, min(1.0, x))


class ExponentialSmoother:
    """Single-value low-pass filter: value = alpha * raw + (1 - alpha) * value."""

    def __init__(self, alpha: float = 0.3):
        self.alpha = alpha
        self.value: Optional[float] = None

    def update(self, raw: float) -> float:
        if self.value is None:
            self.value = raw
        else:
            self.value = self.alpha * raw + (1 - self.alpha) * self.value
        return self.value

    def get(self) -> float:
        return self.value if self.value is not None else 0.0

    def reset(self) -> None:
        self.value = None

    @property
    def is_initialized(self) -> bool:
        return self.value is not None


class RollingEventWindow:
    """
    Event timestamps retained by wall-clock age.

    An event recorded at ``t`` contributes while ``now - t < window_ms``.
    """

    def __init__(self, window_ms: float):
        self.window_ms = window_ms
        self._events = deque()

    def record(self, timestamp_ms: float) -> None:
        self._events.append(timestamp_ms)

    def prune(self, now_ms: float) -> None:
        cutoff = now_ms - self.window_ms
        while self._events and self._events[0] <= cutoff:
            self._events.popleft()

    def count(self, now_ms: float) -> int:
        self.prune(now_ms)
        return len(self._events)

    @property
    def last(self) -> Optional[float]:
        return self._events[-1] if self._events else None

    def clear(self) -> None:
        self._events.clear()

    def __len__(self) -> int:
        return len(self._events)


class RollingValueWindow:
    """Fixed-length history of recent values with variance."""

    def __init__(self, size: int):
        self._values = deque(maxlen=size)

    def append(self, value: float) -> None:
        self._values.append(value)

    def variance(self, min_samples: int = 3) -> float:
        """Population variance; 0 until ``min_samples`` values are held."""
        if len(self._values) < min_samples:
            return 0.0
        return float(np.var(np.asarray(self._values, dtype=float)))

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)
