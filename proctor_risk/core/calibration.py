"""
Ambient calibration over a fixed warm-up window.
"""

from typing import Dict, List, Optional, Iterable

import numpy as np

from .clock import Clock, system_clock
from .models import CalibrationBaseline
from ..utils.logger import get_logger

logger = get_logger(__name__)


class AmbientCalibrator:
    """
    Collects per-signal samples for ``duration_ms`` after ``start()`` and
    finalizes a per-signal arithmetic mean as the baseline.

    Calibration cannot fail: finalizing with no samples yields a zero baseline.
    """

    def __init__(self, duration_ms: float, signals: Iterable[str],
                 clock: Optional[Clock] = None, name: str = "ambient"):
        self.duration_ms = duration_ms
        self.signals = tuple(signals)
        self.clock = clock or system_clock
        self.name = name
        self.start_time_ms: Optional[float] = None
        self.samples: List[Dict[str, float]] = []
        self.is_calibrating = False
        self.baseline = CalibrationBaseline(values={s: 0.0 for s in self.signals})

    @property
    def is_complete(self) -> bool:
        return self.baseline.complete

    def start(self) -> None:
        self.start_time_ms = self.clock.now_ms()
        self.samples = []
        self.is_calibrating = True
        self.baseline = CalibrationBaseline(values={s: 0.0 for s in self.signals})

    def add_sample(self, features: Dict[str, float]) -> None:
        if not self.is_calibrating:
            return

        self.samples.append({s: float(features.get(s, 0.0)) for s in self.signals})

        if self.clock.now_ms() - self.start_time_ms >= self.duration_ms:
            self.finalize()

    def finalize(self) -> CalibrationBaseline:
        n = len(self.samples)
        if n == 0:
            values = {s: 0.0 for s in self.signals}
        else:
            matrix = np.array([[sample[s] for s in self.signals] for sample in self.samples], dtype=float)
            means = matrix.mean(axis=0)
            values = {s: float(m) for s, m in zip(self.signals, means)}

        self.baseline = CalibrationBaseline(values=values, complete=True, sample_count=n)
        self.is_calibrating = False
        logger.log_calibration(self.name, values, n)
        return self.baseline

    def progress(self) -> float:
        """Calibration progress in [0, 1]."""
        if self.is_complete:
            return 1.0
        if self.start_time_ms is None:
            return 0.0
        elapsed = self.clock.now_ms() - self.start_time_ms
        return max(0.0, min(1.0, elapsed / self.duration_ms))
