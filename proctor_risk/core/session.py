"""
Per-exam session context.

One ``ProctoringSession`` wires the scorers, the fusion sink and evidence
capture for a single exam and hands flags and snapshots to the session
controller's callbacks. Nothing here is shared between sessions.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from .audio_risk import AudioRiskScorer
from .clock import Clock, system_clock
from .evidence import EvidenceBuffer, UploadQueue
from .flags import FlagDebouncer
from .identity import IdentityVerifier
from .models import AudioFeatureSample, Flag, RiskSnapshot, VisionFeatureSample
from .multimodal_fusion import MouthDataSink
from .scheduler import ModalityMonitor
from .vision_risk import VisionRiskScorer
from ..utils.config import Config, config as global_config
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ProctoringSession:
    """Context object owning every per-session component."""

    def __init__(self, session_id: str, storage=None, analyzer=None,
                 on_flag: Optional[Callable[[Flag], None]] = None,
                 on_snapshot: Optional[Callable[[RiskSnapshot], None]] = None,
                 on_resolved: Optional[Callable[[str], None]] = None,
                 settings: Optional[Config] = None,
                 clock: Optional[Clock] = None,
                 upload_autostart: bool = True,
                 timer_factory: Optional[Callable[..., Any]] = None):
        self.session_id = session_id
        self.settings = settings or global_config
        self.clock = clock or system_clock
        self.on_flag = on_flag
        self.on_snapshot = on_snapshot
        self.on_resolved = on_resolved

        self.flags: List[Flag] = []
        self.resolved: List[str] = []
        self.snapshots: Dict[str, RiskSnapshot] = {}
        self._lock = threading.Lock()
        self.monitors: Dict[str, ModalityMonitor] = {}
        self.is_active = True

        self.mouth_sink = MouthDataSink()
        # Camera outages seen by vision and identity share one DEVICE_ERROR clock
        self.device_debouncer = FlagDebouncer(self.clock)
        self.vision = VisionRiskScorer(self.settings.vision, self.mouth_sink, self._handle_flag, self.clock,
                                       self.device_debouncer)
        self.audio = AudioRiskScorer(self.settings.audio, self.mouth_sink, self._handle_flag, self.clock,
                                     self.device_debouncer)
        self.identity = IdentityVerifier(analyzer, self.settings.identity, self._handle_flag,
                                         self._handle_resolved, self.clock, self.device_debouncer)

        self.upload_queue = None
        if storage is not None:
            self.upload_queue = UploadQueue(storage, self.settings.evidence.retry_delay_s,
                                            autostart=upload_autostart)
        buffer_kwargs = {'timer_factory': timer_factory} if timer_factory is not None else {}
        self.evidence = EvidenceBuffer(self.upload_queue, self.settings.evidence, self.clock,
                                       **buffer_kwargs)

        logger.info(f"Session {session_id} created")

    def start(self) -> None:
        """Start calibration and recording; monitors attached so far begin ticking."""
        self.audio.start()
        self.evidence.start()
        for monitor in self.monitors.values():
            monitor.start()

    def process_vision(self, sample: VisionFeatureSample) -> Optional[RiskSnapshot]:
        return self._record_snapshot(self.vision.process_frame(sample))

    def process_audio(self, sample: AudioFeatureSample) -> Optional[RiskSnapshot]:
        return self._record_snapshot(self.audio.process_frame(sample))

    def speech_started(self) -> None:
        self.audio.speech_started()

    def speech_ended(self) -> None:
        self.audio.speech_ended()

    def verify_identity(self, frame: Any):
        return self.identity.verify(frame)

    def add_evidence_chunk(self, chunk: bytes) -> bool:
        return self.evidence.append(chunk)

    def attach_source(self, modality: str, source: Callable[[], Any],
                      release: Optional[Callable[[], None]] = None) -> ModalityMonitor:
        """Drive ``modality`` ('vision', 'audio' or 'identity') from a polling source."""
        if modality == 'vision':
            monitor = ModalityMonitor('vision', source, self.process_vision,
                                      self.report_device_failure_vision,
                                      1.0 / self.settings.vision.target_fps, release=release)
        elif modality == 'audio':
            monitor = ModalityMonitor('audio', source, self.process_audio,
                                      self.report_device_failure_audio,
                                      self.settings.audio.tick_interval_ms / 1000.0, release=release)
        elif modality == 'identity':
            monitor = ModalityMonitor('identity', source, self._verify_tick,
                                      self._identity_device_failure,
                                      self.settings.identity.verify_interval_ms / 1000.0, release=release)
        else:
            raise ValueError(f"Unknown modality: {modality}")

        self.monitors[modality] = monitor
        return monitor

    def _verify_tick(self, frame: Any) -> None:
        self.identity.verify(frame)

    def _identity_device_failure(self, reason: str) -> None:
        self.identity.report_device_failure(reason)

    def report_device_failure_vision(self, reason: str) -> RiskSnapshot:
        return self._record_snapshot(self.vision.report_device_failure(reason))

    def report_device_failure_audio(self, reason: str) -> RiskSnapshot:
        return self._record_snapshot(self.audio.report_device_failure(reason))

    def _record_snapshot(self, snapshot: Optional[RiskSnapshot]) -> Optional[RiskSnapshot]:
        if snapshot is None:
            return None
        with self._lock:
            self.snapshots[snapshot.modality] = snapshot
        self._notify(self.on_snapshot, snapshot, f"{snapshot.modality} snapshot callback")
        return snapshot

    def _handle_flag(self, flag: Flag) -> None:
        with self._lock:
            self.flags.append(flag)

        if flag.severity in self.settings.evidence.capture_severities:
            flag.evidence_ref = self.evidence.capture_for_flag(self.session_id, flag.flag_id)

        self._notify(self.on_flag, flag, f"flag callback ({flag.type})")

    def _handle_resolved(self, flag_id: str) -> None:
        with self._lock:
            self.resolved.append(flag_id)
        self._notify(self.on_resolved, flag_id, "resolution callback")

    def _notify(self, callback: Optional[Callable[[Any], None]], value: Any, context: str) -> None:
        """Controller errors are logged; they never reach the scorer that produced ``value``."""
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.log_error_with_context(e, f"session {self.session_id} {context}")

    def get_flags(self) -> List[Flag]:
        with self._lock:
            return list(self.flags)

    def get_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            snapshots = {name: snap.to_dict() for name, snap in self.snapshots.items()}
        return {
            'session_id': self.session_id,
            'active': self.is_active,
            'snapshots': snapshots,
            'identity': self.identity.get_status(),
            'evidence': self.evidence.get_queue_status(),
            'flag_count': len(self.flags),
        }

    def stop(self) -> None:
        """Halt every loop and scorer; the upload queue keeps draining."""
        for monitor in self.monitors.values():
            monitor.stop()
        self.vision.stop()
        self.audio.stop()
        self.identity.stop()
        self.evidence.stop()
        self.is_active = False
        logger.info(f"Session {self.session_id} stopped ({len(self.flags)} flags)")
