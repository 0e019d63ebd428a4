"""
Audio Risk Scorer

Scores per-VAD-frame audio features once an ambient baseline is known:
- Speech (40%): smoothed VAD probability
- Near-field (25%): calibrated volume, voice-band energy and tonality
- Duration (15%): length of the current speech segment
- Repetition (10%): completed speech segments in a rolling 10-minute window
- Lip sync (10%): agreement between audio and the latest mouth motion

The first five seconds after ``start()`` are spent calibrating; scoring and
flagging are suppressed until the baseline is final.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from .calibration import AmbientCalibrator
from .clock import Clock, system_clock
from .flags import FlagDebouncer, FlagEmitter, FlagSink
from .models import AudioFeatureSample, RiskSnapshot, FlagType, SEVERITY_MEDIUM, empty_breakdown
from .multimodal_fusion import MouthDataSink
from .smoothing import ExponentialSmoother, RollingEventWindow, clamp01
from ..utils.config import AudioConfig, config
from ..utils.logger import get_logger

logger = get_logger(__name__)

SUB_SCORES = ('speech_score', 'near_field_score', 'duration_score', 'repetition_score', 'lip_sync_score')
CALIBRATION_SIGNALS = ('rms', 'voice_band_ratio', 'spectral_flatness')


@dataclass
class AudioRiskState:
    """Temporal state for audio scoring."""
    score: float = 0.0
    speech_start_ms: Optional[float] = None
    speech_duration_ms: float = 0.0
    last_sample: Optional[AudioFeatureSample] = None
    last_breakdown: Dict[str, Any] = field(default_factory=dict)
    device_ok: bool = True
    frames_processed: int = 0


class AudioRiskScorer:
    """Calibrated, smoothed audio risk with debounced flagging."""

    def __init__(self, settings: Optional[AudioConfig] = None,
                 mouth_sink: Optional[MouthDataSink] = None,
                 on_flag: Optional[FlagSink] = None,
                 clock: Optional[Clock] = None,
                 device_debouncer: Optional[FlagDebouncer] = None):
        self.settings = settings or config.audio
        self.clock = clock or system_clock
        self.mouth_sink = mouth_sink if mouth_sink is not None else MouthDataSink()
        self.flags = FlagEmitter("audio", on_flag, self.clock, device_debouncer)
        self.calibrator = AmbientCalibrator(self.settings.calibration_duration_ms,
                                            CALIBRATION_SIGNALS, self.clock, name="audio")

        alpha = self.settings.smoothing_alpha
        self.smoothers = {
            'speech': ExponentialSmoother(alpha),
            'near_field': ExponentialSmoother(alpha),
            'duration': ExponentialSmoother(alpha),
            'repetition': ExponentialSmoother(alpha),
            'lip_sync': ExponentialSmoother(alpha),
            'final': ExponentialSmoother(alpha),
        }
        self.speech_events = RollingEventWindow(self.settings.repetition_window_ms)
        self.state = AudioRiskState()

        self._lock = threading.Lock()
        self._running = False

        logger.info("Audio risk scorer initialized")

    @property
    def is_calibrating(self) -> bool:
        return not self.calibrator.is_complete

    @property
    def score(self) -> float:
        return self.state.score

    def start(self) -> None:
        """Begin the calibration window."""
        with self._lock:
            self._start_locked()

    def _start_locked(self) -> None:
        self._running = True
        self.calibrator.start()
        logger.info(f"Audio calibration started ({self.settings.calibration_duration_ms:.0f}ms)")

    def stop(self) -> None:
        """Halt scoring synchronously; later frames are discarded."""
        with self._lock:
            self._running = False
            self.state = AudioRiskState()
            self.speech_events.clear()
            self.flags.reset()
            for smoother in self.smoothers.values():
                smoother.reset()
        logger.info("Audio risk scorer stopped")

    def adaptive_threshold(self) -> float:
        s = self.settings
        if not self.calibrator.is_complete:
            return s.vad_positive_threshold
        baseline_rms = self.calibrator.baseline.get('rms')
        return max(s.min_adaptive_threshold,
                   s.vad_positive_threshold - s.calibration_margin +
                   baseline_rms / s.volume_saturation * 0.2)

    def speech_started(self) -> None:
        """VAD segment start signal."""
        with self._lock:
            if self._running:
                self.state.speech_start_ms = self.clock.now_ms()

    def speech_ended(self) -> None:
        """VAD segment end signal; long enough segments count toward repetition."""
        with self._lock:
            if self.state.speech_start_ms is not None:
                now = self.clock.now_ms()
                duration = now - self.state.speech_start_ms
                if duration > self.settings.min_speech_event_ms:
                    self.speech_events.record(now)
                    logger.debug(f"Speech event recorded ({len(self.speech_events)} in window)")
            self.state.speech_start_ms = None
            self.state.speech_duration_ms = 0.0

    def process_frame(self, sample: AudioFeatureSample) -> Optional[RiskSnapshot]:
        """
        Score one VAD frame.

        A frame arriving before ``start()`` starts calibration. Returns None
        once the scorer has been stopped.
        """
        with self._lock:
            if not self._running:
                if self.calibrator.start_time_ms is not None:
                    return None
                self._start_locked()

            now = self.clock.now_ms()
            self.state.frames_processed += 1
            self.state.device_ok = True
            self.state.last_sample = sample

            if not self.calibrator.is_complete:
                self.calibrator.add_sample(sample.calibration_values())
                return RiskSnapshot(
                    modality='audio',
                    composite_score=0.0,
                    breakdown=empty_breakdown(SUB_SCORES),
                    timestamp_ms=now,
                    is_calibrating=not self.calibrator.is_complete,
                    calibration_progress=self.calibrator.progress(),
                )

            if self.state.speech_start_ms is not None:
                self.state.speech_duration_ms = now - self.state.speech_start_ms

            gate = self.adaptive_threshold() * self.settings.gate_factor
            if sample.vad_probability > gate:
                return self._calculate_score(sample, now)

            # Below the gate the composite decays toward 0 without flagging.
            self.state.score = clamp01(self.smoothers['final'].update(0.0))
            breakdown = self._breakdown(sample, empty_breakdown(SUB_SCORES))
            self.state.last_breakdown = breakdown
            return RiskSnapshot(modality='audio', composite_score=self.state.score,
                                breakdown=breakdown, timestamp_ms=now)

    def report_device_failure(self, reason: str) -> RiskSnapshot:
        """Microphone failure: emit a device-error flag and report zero confidence."""
        with self._lock:
            now = self.clock.now_ms()
            self.state.device_ok = False
            stopped = not self._running and self.calibrator.start_time_ms is not None
            if not stopped:
                self.flags.emit_device_error("microphone", reason, SEVERITY_MEDIUM)
            return RiskSnapshot(
                modality='audio',
                composite_score=0.0,
                breakdown=empty_breakdown(SUB_SCORES),
                timestamp_ms=now,
                is_calibrating=self.is_calibrating,
                calibration_progress=self.calibrator.progress(),
                device_ok=False,
            )

    def _near_field_raw(self, sample: AudioFeatureSample) -> float:
        s = self.settings
        baseline = self.calibrator.baseline

        calibrated_rms = max(0.0, sample.rms - baseline.get('rms') * s.rms_baseline_fraction)
        vol_norm = min(1.0, calibrated_rms / s.volume_saturation)

        calibrated_band = max(0.0, sample.voice_band_ratio -
                              baseline.get('voice_band_ratio') * s.voice_band_baseline_fraction)
        band_norm = min(1.0, calibrated_band * s.voice_band_multiplier)

        # Low flatness means a tonal, speech-like spectrum.
        flatness_score = min(1.0, max(0.0, 1.0 - sample.spectral_flatness))

        return vol_norm * 0.4 + band_norm * 0.35 + flatness_score * 0.25

    def _lip_sync_raw(self, vad: float) -> float:
        s = self.settings
        mouth = self.mouth_sink.read()
        velocity = mouth.velocity if mouth is not None else 0.0
        openness = mouth.openness if mouth is not None else 0.0

        if velocity > s.lip_velocity_active or openness > s.lip_openness_active:
            return 1.0
        if vad > s.lip_vad_threshold and velocity < s.lip_velocity_still:
            return 0.0
        return 0.5

    def _calculate_score(self, sample: AudioFeatureSample, now: float) -> RiskSnapshot:
        s = self.settings

        speech_score = self.smoothers['speech'].update(sample.vad_probability)
        near_field_score = self.smoothers['near_field'].update(self._near_field_raw(sample))

        raw_duration = clamp01((self.state.speech_duration_ms - s.duration_min_ms) /
                               (s.duration_max_ms - s.duration_min_ms))
        duration_score = self.smoothers['duration'].update(raw_duration)

        raw_repetition = min(1.0, self.speech_events.count(now) / s.repetition_max_events)
        repetition_score = self.smoothers['repetition'].update(raw_repetition)

        lip_sync_score = self.smoothers['lip_sync'].update(self._lip_sync_raw(sample.vad_probability))

        raw_final = (
            s.weight_speech * speech_score +
            s.weight_near_field * near_field_score +
            s.weight_duration * duration_score +
            s.weight_repetition * repetition_score +
            s.weight_lip_sync * lip_sync_score
        )
        self.state.score = clamp01(self.smoothers['final'].update(clamp01(raw_final)))

        breakdown = self._breakdown(sample, {
            'speech_score': speech_score,
            'near_field_score': near_field_score,
            'duration_score': duration_score,
            'repetition_score': repetition_score,
            'lip_sync_score': lip_sync_score,
        })
        self.state.last_breakdown = breakdown
        logger.log_risk_snapshot('audio', self.state.score, breakdown)

        if self.state.score > s.flag_threshold:
            self.flags.emit(
                FlagType.AUDIO_SPEECH,
                f"Speech detected (Confidence: {self.state.score * 100:.0f}%)",
                SEVERITY_MEDIUM,
                s.flag_debounce_ms,
                score=self.state.score,
                details={
                    'speech_events': len(self.speech_events),
                    'duration_ms': self.state.speech_duration_ms,
                    'calibrated': self.calibrator.is_complete,
                },
            )

        return RiskSnapshot(modality='audio', composite_score=self.state.score,
                            breakdown=breakdown, timestamp_ms=now)

    def _breakdown(self, sample: AudioFeatureSample, scores: Dict[str, float]) -> Dict[str, Any]:
        mouth = self.mouth_sink.read()
        breakdown = dict(scores)
        breakdown.update({
            'raw_vad': sample.vad_probability,
            'volume_rms': sample.rms,
            'voice_band_ratio': sample.voice_band_ratio,
            'spectral_flatness': sample.spectral_flatness,
            'speech_duration_ms': self.state.speech_duration_ms,
            'speech_event_count': len(self.speech_events),
            'mouth_openness': mouth.openness if mouth is not None else 0.0,
            'mouth_velocity': mouth.velocity if mouth is not None else 0.0,
            'is_calibrated': self.calibrator.is_complete,
        })
        return breakdown

    def get_state_summary(self) -> Dict[str, Any]:
        return {
            'score': self.state.score,
            'is_calibrating': self.is_calibrating,
            'calibration_progress': self.calibrator.progress(),
            'baseline': dict(self.calibrator.baseline.values),
            'speech_active': self.state.speech_start_ms is not None,
            'speech_events_in_window': len(self.speech_events),
            'frames_processed': self.state.frames_processed,
            'device_ok': self.state.device_ok,
        }
