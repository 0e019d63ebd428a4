"""
Vision Risk Scorer

Turns per-frame vision features into a smoothed suspicion score:
- Gaze (35%): off-screen horizontal gaze or looking down
- Pose (25%): head turned or tilted down
- Duration (15%): time spent in the current suspicious interval
- Repetition (15%): suspicious intervals in a rolling 5-minute window
- Lip activity (10%): MAR variance, open mouth or fast MAR change

Also handles face loss (graded penalty after a grace period) and multiple
faces (immediate high-severity flag). Every frame publishes mouth motion to
the cross-modal sink read by the audio scorer.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from .clock import Clock, system_clock
from .flags import FlagDebouncer, FlagEmitter, FlagSink
from .models import (
    VisionFeatureSample, RiskSnapshot, SuspiciousEvent, FlagType, empty_breakdown,
    SEVERITY_MEDIUM, SEVERITY_HIGH,
)
from .multimodal_fusion import MouthDataSink
from .smoothing import ExponentialSmoother, RollingEventWindow, RollingValueWindow, clamp01
from ..utils.config import VisionConfig, config
from ..utils.logger import get_logger

logger = get_logger(__name__)

SUB_SCORES = ('gaze_score', 'pose_score', 'duration_score', 'repetition_score', 'lip_score')


@dataclass
class VisionRiskState:
    """Temporal state for vision scoring."""
    score: float = 0.0
    last_mar: Optional[float] = None
    face_count: int = 0
    face_detected: bool = False
    face_lost_since_ms: Optional[float] = None
    suspicious_start_ms: Optional[float] = None
    last_event_record_ms: Optional[float] = None
    last_event: Optional[SuspiciousEvent] = None
    last_breakdown: Dict[str, Any] = field(default_factory=dict)
    device_ok: bool = True
    frames_processed: int = 0


class VisionRiskScorer:
    """Weighted, smoothed vision risk with debounced flagging."""

    def __init__(self, settings: Optional[VisionConfig] = None,
                 mouth_sink: Optional[MouthDataSink] = None,
                 on_flag: Optional[FlagSink] = None,
                 clock: Optional[Clock] = None,
                 device_debouncer: Optional[FlagDebouncer] = None):
        """
        Initialize vision risk scorer.

        Args:
            settings: Vision thresholds and weights (defaults to global config)
            mouth_sink: Cross-modal sink receiving (MAR, |dMAR|) every frame
            on_flag: Callback receiving emitted flags
            clock: Time source for all windows and debounce clocks
            device_debouncer: Session-wide DEVICE_ERROR debounce clocks
        """
        self.settings = settings or config.vision
        self.clock = clock or system_clock
        self.mouth_sink = mouth_sink if mouth_sink is not None else MouthDataSink()
        self.flags = FlagEmitter("vision", on_flag, self.clock, device_debouncer)

        alpha = self.settings.smoothing_alpha
        self.smoothers = {
            'gaze': ExponentialSmoother(alpha),
            'pose': ExponentialSmoother(alpha),
            'duration': ExponentialSmoother(alpha),
            'repetition': ExponentialSmoother(alpha),
            'lip': ExponentialSmoother(alpha),
            'final': ExponentialSmoother(alpha),
        }
        self.mar_history = RollingValueWindow(self.settings.mar_history_size)
        self.events = RollingEventWindow(self.settings.repetition_window_ms)
        self.state = VisionRiskState()

        self._lock = threading.Lock()
        self._running = True

        logger.info("Vision risk scorer initialized")

    # Vision relies on static thresholds, so it is never calibrating.
    @property
    def is_calibrating(self) -> bool:
        return False

    @property
    def score(self) -> float:
        return self.state.score

    def process_frame(self, sample: VisionFeatureSample) -> Optional[RiskSnapshot]:
        """
        Score one frame of vision features.

        Returns None when the scorer has been stopped; a tick racing with
        ``stop()`` is discarded here.
        """
        with self._lock:
            if not self._running:
                return None
            now = self.clock.now_ms()
            self.state.frames_processed += 1
            self.state.device_ok = True

            if sample.face_count <= 0:
                return self._handle_face_lost(now)

            self.state.face_detected = True
            self.state.face_lost_since_ms = None
            self.state.face_count = sample.face_count

            if sample.face_count > 1:
                self._handle_multiple_faces(sample.face_count)

            velocity = self._update_mouth(sample.mouth_aspect_ratio)
            self.mouth_sink.publish(sample.mouth_aspect_ratio, velocity, now)

            return self._calculate_score(sample, velocity, now)

    def report_device_failure(self, reason: str) -> RiskSnapshot:
        """Camera failure: emit a device-error flag and report zero confidence."""
        with self._lock:
            now = self.clock.now_ms()
            self.state.device_ok = False
            if self._running:
                self.flags.emit_device_error("camera", reason, SEVERITY_HIGH)
            return RiskSnapshot(
                modality='vision',
                composite_score=0.0,
                breakdown=empty_breakdown(SUB_SCORES),
                timestamp_ms=now,
                device_ok=False,
            )

    def stop(self) -> None:
        """Halt scoring synchronously; later frames are discarded."""
        with self._lock:
            self._running = False
            self._reset_state()
        logger.info("Vision risk scorer stopped")

    def start(self) -> None:
        with self._lock:
            self._running = True

    def _reset_state(self) -> None:
        self.state = VisionRiskState()
        self.mar_history.clear()
        self.events.clear()
        self.flags.reset()
        for smoother in self.smoothers.values():
            smoother.reset()

    def _update_mouth(self, mar: float) -> float:
        """Record MAR and return its instantaneous change (0 on the first frame)."""
        velocity = abs(mar - self.state.last_mar) if self.state.last_mar is not None else 0.0
        self.state.last_mar = mar
        self.mar_history.append(mar)
        return velocity

    def _gaze_raw(self, h: float, v: float) -> float:
        s = self.settings
        raw = 0.0
        if h < s.gaze_h_safe[0] or h > s.gaze_h_safe[1]:
            raw = 1.0
        elif s.gaze_h_grace[0] <= h <= s.gaze_h_grace[1]:
            raw = 0.0
        if v > s.gaze_v_threshold:
            raw = max(raw, 0.8)
        return raw

    def _pose_raw(self, yaw: float, pitch: float) -> float:
        if abs(yaw) > self.settings.yaw_threshold or pitch > self.settings.pitch_threshold:
            return 1.0
        return 0.0

    def _lip_raw(self, mar: float, velocity: float) -> float:
        s = self.settings
        variance = self.mar_history.variance()
        if (variance > s.mar_variance_threshold or
                mar > s.mar_talking_threshold or
                velocity > s.mar_velocity_threshold):
            return 1.0
        return 0.0

    def _update_suspicious_interval(self, suspicious: bool, now: float) -> None:
        s = self.settings
        if suspicious:
            if self.state.suspicious_start_ms is None:
                self.state.suspicious_start_ms = now
            return

        if self.state.suspicious_start_ms is not None:
            event = SuspiciousEvent(start_ms=self.state.suspicious_start_ms, end_ms=now)
            last = self.state.last_event_record_ms
            spaced = last is None or now - last > s.event_spacing_ms
            if event.duration_ms > s.min_suspicious_ms and spaced:
                self.events.record(now)
                self.state.last_event_record_ms = now
                self.state.last_event = event
                logger.debug(f"Suspicious interval recorded: {event.duration_ms:.0f}ms "
                             f"({len(self.events)} in window)")
        self.state.suspicious_start_ms = None

    def _duration_raw(self, now: float) -> float:
        if self.state.suspicious_start_ms is None:
            return 0.0
        s = self.settings
        elapsed = now - self.state.suspicious_start_ms
        return clamp01((elapsed - s.duration_min_ms) / (s.duration_max_ms - s.duration_min_ms))

    def _calculate_score(self, sample: VisionFeatureSample, velocity: float, now: float) -> RiskSnapshot:
        s = self.settings

        raw_gaze = self._gaze_raw(sample.gaze_h, sample.gaze_v)
        gaze_score = self.smoothers['gaze'].update(raw_gaze)

        raw_pose = self._pose_raw(sample.yaw, sample.pitch)
        pose_score = self.smoothers['pose'].update(raw_pose)

        raw_lip = self._lip_raw(sample.mouth_aspect_ratio, velocity)
        lip_score = self.smoothers['lip'].update(raw_lip)

        suspicious = raw_gaze > 0.5 or raw_pose > 0.5
        self._update_suspicious_interval(suspicious, now)

        # Fed every frame, so the sub-score decays instead of resetting on exit.
        raw_duration = self._duration_raw(now)
        duration_score = self.smoothers['duration'].update(raw_duration)

        event_count = self.events.count(now)
        raw_repetition = min(1.0, event_count / s.repetition_max_events)
        repetition_score = self.smoothers['repetition'].update(raw_repetition)

        raw_final = (
            s.weight_gaze * gaze_score +
            s.weight_pose * pose_score +
            s.weight_duration * duration_score +
            s.weight_repetition * repetition_score +
            s.weight_lip * lip_score
        )
        self.state.score = clamp01(self.smoothers['final'].update(clamp01(raw_final)))

        breakdown = {
            'gaze_score': gaze_score,
            'pose_score': pose_score,
            'duration_score': duration_score,
            'repetition_score': repetition_score,
            'lip_score': lip_score,
            # Debug info
            'raw_gaze': raw_gaze,
            'raw_pose': raw_pose,
            'raw_gaze_h': sample.gaze_h,
            'raw_gaze_v': sample.gaze_v,
            'raw_yaw': sample.yaw,
            'raw_pitch': sample.pitch,
            'raw_mar': sample.mouth_aspect_ratio,
            'mar_velocity': velocity,
            'mar_variance': self.mar_history.variance(),
            'suspicious_duration_ms': (now - self.state.suspicious_start_ms
                                       if self.state.suspicious_start_ms is not None else 0.0),
            'event_count': event_count,
            'face_count': sample.face_count,
            'face_lost': False,
        }
        self.state.last_breakdown = breakdown
        logger.log_risk_snapshot('vision', self.state.score, breakdown)

        if self.state.score > s.flag_threshold:
            self.flags.emit(
                FlagType.VISION_BEHAVIOR,
                self._flag_message(breakdown),
                SEVERITY_MEDIUM,
                s.flag_debounce_ms,
                score=self.state.score,
                details={'breakdown': dict(breakdown), 'face_count': sample.face_count},
            )

        return RiskSnapshot(modality='vision', composite_score=self.state.score,
                            breakdown=breakdown, timestamp_ms=now)

    def _flag_message(self, breakdown: Dict[str, Any]) -> str:
        gaze = breakdown['gaze_score']
        pose = breakdown['pose_score']
        lip = breakdown['lip_score']

        if gaze > 0.5 and pose > 0.5:
            return 'Head turned away with eyes looking off-screen'
        if gaze > 0.5:
            return 'Suspicious eye movement detected (looking away)'
        if pose > 0.5:
            return 'Head turned away from screen'
        if lip > 0.5:
            return 'Talking detected (sustained lip movement)'
        return f'Suspicious behavior (Confidence: {self.state.score * 100:.0f}%)'

    def _handle_face_lost(self, now: float) -> RiskSnapshot:
        s = self.settings
        if self.state.face_detected or self.state.face_lost_since_ms is None:
            self.state.face_lost_since_ms = now
            self.state.face_detected = False
        self.state.face_count = 0

        lost_ms = now - self.state.face_lost_since_ms
        penalty = 0.0
        if lost_ms > s.face_lost_grace_ms:
            penalty = min(s.face_lost_max_penalty,
                          (lost_ms - s.face_lost_grace_ms) / s.face_lost_ramp_ms)
            self.state.score = clamp01(self.smoothers['final'].update(penalty))

            if penalty > s.flag_threshold and lost_ms > s.face_lost_flag_ms:
                self.flags.emit(
                    FlagType.FACE_NOT_DETECTED,
                    'Face not detected - student may have left frame',
                    SEVERITY_MEDIUM,
                    s.flag_debounce_ms,
                    score=self.state.score,
                    details={'face_lost_ms': lost_ms},
                )

        breakdown = empty_breakdown(SUB_SCORES)
        breakdown.update({
            'face_lost': True,
            'face_lost_ms': lost_ms,
            'face_lost_penalty': penalty,
            'face_count': 0,
        })
        self.state.last_breakdown = breakdown
        return RiskSnapshot(modality='vision', composite_score=self.state.score,
                            breakdown=breakdown, timestamp_ms=now)

    def _handle_multiple_faces(self, count: int) -> None:
        self.flags.emit(
            FlagType.MULTIPLE_FACES,
            f'{count} faces detected - possible unauthorized person',
            SEVERITY_HIGH,
            self.settings.multi_face_debounce_ms,
            score=0.8,
            details={'face_count': count},
        )

    def get_state_summary(self) -> Dict[str, Any]:
        """Get current state summary for debugging."""
        return {
            'score': self.state.score,
            'face_detected': self.state.face_detected,
            'face_count': self.state.face_count,
            'suspicious': self.state.suspicious_start_ms is not None,
            'events_in_window': len(self.events),
            'frames_processed': self.state.frames_processed,
            'device_ok': self.state.device_ok,
        }
