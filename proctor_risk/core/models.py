"""
Data containers shared across the scoring, identity and evidence modules.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Iterable, Optional

import numpy as np


SEVERITY_LOW = 'low'
SEVERITY_MEDIUM = 'medium'
SEVERITY_HIGH = 'high'
SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH)


class FlagType:
    """Flag type identifiers; each one owns an independent debounce clock."""
    VISION_BEHAVIOR = 'VISION_INTELLIGENCE'
    FACE_NOT_DETECTED = 'FACE_NOT_DETECTED'
    MULTIPLE_FACES = 'MULTIPLE_FACES'
    AUDIO_SPEECH = 'AUDIO_INTELLIGENCE'
    IDENTITY_MISSING = 'MISSING'
    IDENTITY_MULTIPLE_FACES = 'IDENTITY_MULTIPLE_FACES'
    SPOOF_DETECTED = 'SPOOF_DETECTED'
    IMPERSONATION = 'IMPERSONATION'
    IDENTITY_MISMATCH = 'IDENTITY_MISMATCH'
    DEVICE_ERROR = 'DEVICE_ERROR'
    RESOLVED = 'RESOLVED'


class IdentityState(str, Enum):
    INITIALIZING = 'initializing'
    ACTIVE = 'active'
    WARNING = 'warning'
    LEGACY = 'legacy'
    ERROR = 'error'


class UploadState(str, Enum):
    QUEUED = 'queued'
    UPLOADING = 'uploading'
    LINKED = 'linked'
    FAILED = 'failed'


@dataclass
class VisionFeatureSample:
    """Per-frame vision features produced by a feature adapter."""
    timestamp_ms: float
    face_count: int = 1
    gaze_h: float = 0.5
    gaze_v: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0
    mouth_aspect_ratio: float = 0.0


@dataclass
class AudioFeatureSample:
    """Per-VAD-frame audio features produced by a feature adapter."""
    timestamp_ms: float
    vad_probability: float = 0.0
    rms: float = 0.0
    voice_band_ratio: float = 0.0
    spectral_flatness: float = 1.0

    def calibration_values(self) -> Dict[str, float]:
        return {
            'rms': self.rms,
            'voice_band_ratio': self.voice_band_ratio,
            'spectral_flatness': self.spectral_flatness,
        }


@dataclass
class CalibrationBaseline:
    """Per-signal ambient mean captured over the warm-up window."""
    values: Dict[str, float] = field(default_factory=dict)
    complete: bool = False
    sample_count: int = 0

    def get(self, name: str) -> float:
        return self.values.get(name, 0.0)


@dataclass
class SuspiciousEvent:
    """A closed suspicious interval."""
    start_ms: float
    end_ms: float

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


@dataclass
class RiskSnapshot:
    """Composite score plus named sub-scores for one modality at one instant."""
    modality: str
    composite_score: float
    breakdown: Dict[str, Any]
    timestamp_ms: float
    is_calibrating: bool = False
    calibration_progress: float = 1.0
    device_ok: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'modality': self.modality,
            'score': self.composite_score,
            'breakdown': dict(self.breakdown),
            'timestamp_ms': self.timestamp_ms,
            'is_calibrating': self.is_calibrating,
            'calibration_progress': self.calibration_progress,
            'device_ok': self.device_ok,
        }


@dataclass
class DetectedFace:
    """A face returned by a face analyzer: bounding box, landmarks and detector score."""
    bbox: tuple
    landmarks: Any = None
    score: float = 1.0


@dataclass
class IdentitySample:
    """Result of one identity verification tick."""
    face_count: int
    embedding: Optional[np.ndarray] = None
    similarity: Optional[float] = None
    spoof_probability: Optional[float] = None
    face_score: float = 1.0


@dataclass
class Flag:
    """A debounced flag consumed by the session controller."""
    type: str
    severity: str
    message: str
    timestamp_ms: float
    source: str = ''
    score: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)
    evidence_ref: Optional[str] = None
    flag_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'flag_id': self.flag_id,
            'type': self.type,
            'severity': self.severity,
            'message': self.message,
            'timestamp_ms': self.timestamp_ms,
            'source': self.source,
            'score': self.score,
            'details': dict(self.details),
            'evidence_ref': self.evidence_ref,
        }


@dataclass
class EvidenceClip:
    """A clip extracted for a flag and tracked through upload."""
    session_id: str
    flag_id: str
    media_ref: str
    data: bytes = b''
    content_type: str = 'video/webm'
    upload_state: UploadState = UploadState.QUEUED
    attempts: int = 0
    stored_ref: Optional[str] = None


@dataclass
class MouthData:
    """Latest mouth motion published by the vision scorer."""
    openness: float
    velocity: float
    timestamp_ms: float


def empty_breakdown(names: Iterable[str]) -> Dict[str, float]:
    return {name: 0.0 for name in names}
