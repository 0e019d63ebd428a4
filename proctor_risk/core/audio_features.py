"""
Audio feature extraction from 16 kHz mono PCM frames.

The metrics are computed on a byte-scaled magnitude spectrum (0-255 over a
-100..-30 dB range), so RMS values and the near-field volume saturation are
on the same 0-255 scale.
"""

import math
from typing import Optional

import numpy as np

from .clock import Clock, system_clock
from .models import AudioFeatureSample
from ..utils.logger import log_performance_metrics

MIN_DECIBELS = -100.0
MAX_DECIBELS = -30.0


def spectrum_rms(spectrum: np.ndarray) -> float:
    values = np.asarray(spectrum, dtype=float)
    if values.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(values ** 2)))


def voice_band_ratio(spectrum: np.ndarray, start_bin: int, end_bin: int) -> float:
    """Share of spectral energy inside [start_bin, end_bin]."""
    values = np.asarray(spectrum, dtype=float)
    total = values.sum()
    if total <= 0:
        return 0.0
    return float(values[start_bin:end_bin + 1].sum() / total)


def spectral_flatness(spectrum: np.ndarray) -> float:
    """
    Geometric over arithmetic mean, skipping the DC bin.

    0 is a pure tone (speech-like), 1 is white noise. Bins are floored at 1
    so silent bins do not collapse the geometric mean.
    """
    values = np.maximum(np.asarray(spectrum, dtype=float)[1:], 1.0)
    if values.size == 0:
        return 1.0
    geometric = math.exp(float(np.mean(np.log(values))))
    arithmetic = float(np.mean(values))
    return min(1.0, geometric / arithmetic)


class AudioFeatureExtractor:
    """Per-frame spectrum analysis producing ``AudioFeatureSample`` objects."""

    def __init__(self, sample_rate: int = 16000, fft_size: int = 512,
                 voice_band_hz=(300.0, 3400.0), smoothing: float = 0.4,
                 clock: Optional[Clock] = None):
        self.sample_rate = sample_rate
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.clock = clock or system_clock

        bin_size = sample_rate / fft_size
        self.voice_start_bin = int(math.floor(voice_band_hz[0] / bin_size))
        self.voice_end_bin = int(math.ceil(voice_band_hz[1] / bin_size))

        self._window = np.blackman(fft_size)
        self._previous: Optional[np.ndarray] = None

    def byte_spectrum(self, frame: np.ndarray) -> np.ndarray:
        """Magnitude spectrum of the latest ``fft_size`` samples as uint8 (fft_size // 2 bins)."""
        samples = np.asarray(frame)
        if samples.dtype == np.int16:
            samples = samples.astype(float) / 32768.0
        samples = samples.astype(float).ravel()

        if samples.size < self.fft_size:
            samples = np.pad(samples, (self.fft_size - samples.size, 0))
        samples = samples[-self.fft_size:]

        magnitude = np.abs(np.fft.rfft(samples * self._window))[:self.fft_size // 2] / self.fft_size
        if self._previous is not None and self.smoothing > 0:
            magnitude = self.smoothing * self._previous + (1 - self.smoothing) * magnitude
        self._previous = magnitude

        with np.errstate(divide='ignore'):
            decibels = 20.0 * np.log10(magnitude)
        scaled = 255.0 * (decibels - MIN_DECIBELS) / (MAX_DECIBELS - MIN_DECIBELS)
        return np.clip(np.nan_to_num(scaled, neginf=0.0), 0, 255).astype(np.uint8)

    @log_performance_metrics
    def extract(self, frame: np.ndarray, vad_probability: float) -> AudioFeatureSample:
        spectrum = self.byte_spectrum(frame)
        return AudioFeatureSample(
            timestamp_ms=self.clock.now_ms(),
            vad_probability=float(vad_probability),
            rms=spectrum_rms(spectrum),
            voice_band_ratio=voice_band_ratio(spectrum, self.voice_start_bin, self.voice_end_bin),
            spectral_flatness=spectral_flatness(spectrum),
        )

    def reset(self) -> None:
        self._previous = None
