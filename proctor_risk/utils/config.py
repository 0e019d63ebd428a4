"""
Configuration management for the proctoring risk engine.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
import json


@dataclass
class VisionConfig:
    """Vision risk scoring settings."""
    weight_gaze: float = 0.35
    weight_pose: float = 0.25
    weight_duration: float = 0.15
    weight_repetition: float = 0.15
    weight_lip: float = 0.10

    gaze_h_safe: tuple = (0.30, 0.70)
    gaze_h_grace: tuple = (0.22, 0.78)
    gaze_v_threshold: float = 0.4
    yaw_threshold: float = 0.25
    pitch_threshold: float = 0.20

    mar_talking_threshold: float = 0.5
    mar_velocity_threshold: float = 0.08
    mar_history_size: int = 15
    mar_variance_threshold: float = 0.003

    duration_min_ms: float = 1000.0
    duration_max_ms: float = 5000.0
    repetition_window_ms: float = 5 * 60 * 1000.0
    repetition_max_events: int = 5
    min_suspicious_ms: float = 1500.0
    event_spacing_ms: float = 3000.0

    face_lost_grace_ms: float = 2000.0
    face_lost_ramp_ms: float = 5000.0
    face_lost_max_penalty: float = 0.7
    face_lost_flag_ms: float = 5000.0

    flag_threshold: float = 0.60
    flag_debounce_ms: float = 5000.0
    multi_face_debounce_ms: float = 10000.0
    smoothing_alpha: float = 0.3
    target_fps: float = 8.0


@dataclass
class AudioConfig:
    """Audio risk scoring settings."""
    weight_speech: float = 0.40
    weight_near_field: float = 0.25
    weight_duration: float = 0.15
    weight_repetition: float = 0.10
    weight_lip_sync: float = 0.10

    sample_rate: int = 16000
    fft_size: int = 512
    voice_band_low_hz: float = 300.0
    voice_band_high_hz: float = 3400.0

    calibration_duration_ms: float = 5000.0
    calibration_margin: float = 0.15
    vad_positive_threshold: float = 0.5
    min_adaptive_threshold: float = 0.3
    gate_factor: float = 0.8

    volume_saturation: float = 50.0
    voice_band_multiplier: float = 1.5
    rms_baseline_fraction: float = 0.5
    voice_band_baseline_fraction: float = 0.3

    duration_min_ms: float = 500.0
    duration_max_ms: float = 4000.0
    repetition_window_ms: float = 10 * 60 * 1000.0
    repetition_max_events: int = 5
    min_speech_event_ms: float = 1500.0

    lip_velocity_active: float = 0.05
    lip_openness_active: float = 0.3
    lip_velocity_still: float = 0.02
    lip_vad_threshold: float = 0.5

    flag_threshold: float = 0.65
    flag_debounce_ms: float = 5000.0
    smoothing_alpha: float = 0.3
    tick_interval_ms: float = 32.0


@dataclass
class IdentityConfig:
    """Identity verification settings."""
    verify_interval_ms: float = 7000.0
    similarity_threshold: float = 0.60
    spoof_threshold: float = 0.75
    impersonation_spoof_threshold: float = 0.5
    impersonation_similarity_threshold: float = 0.35
    mismatch_for_flag: int = 3
    missing_for_flag: int = 3
    multiple_for_flag: int = 2
    min_face_score: float = 0.5
    embedding_version_prefix: str = "arcface"
    analyzer_backend: str = "mediapipe"


@dataclass
class EvidenceConfig:
    """Evidence buffer and upload queue settings."""
    retention_ms: float = 30000.0
    chunk_interval_ms: float = 1000.0
    stop_grace_ms: float = 15000.0
    clip_duration_s: float = 10.0
    retry_delay_s: float = 5.0
    content_type: str = "video/webm"
    capture_severities: List[str] = field(default_factory=lambda: ["medium", "high"])
    storage_dir: str = "data/evidence"


@dataclass
class FlagConfig:
    """Flag emission settings."""
    device_error_debounce_ms: float = 30000.0
    default_debounce_ms: float = 5000.0
    severity_tiers: Dict[str, str] = field(default_factory=lambda: {
        'low': 'ORANGE',
        'medium': 'ORANGE',
        'high': 'RED',
    })


@dataclass
class CameraConfig:
    """Camera configuration settings."""
    device_id: int = 0
    width: int = 640
    height: int = 480
    fps: int = 15


@dataclass
class LoggingConfig:
    """Logging settings."""
    console_level: str = "ERROR"
    log_to_file: bool = False
    log_dir: str = "logs"


class Config:
    """Main configuration class for the proctoring risk engine."""

    SECTIONS = ['vision', 'audio', 'identity', 'evidence', 'flags', 'camera', 'logging']

    def __init__(self, config_file: Optional[str] = None):
        """Initialize configuration with optional config file."""
        self.vision = VisionConfig()
        self.audio = AudioConfig()
        self.identity = IdentityConfig()
        self.evidence = EvidenceConfig()
        self.flags = FlagConfig()
        self.camera = CameraConfig()
        self.logging = LoggingConfig()
        self.errors: List[str] = []

        if config_file and os.path.exists(config_file):
            self.load_from_file(config_file)

    def load_from_file(self, config_file: str) -> None:
        """Load configuration from JSON file."""
        try:
            with open(config_file, 'r') as f:
                config_data = json.load(f)
        except (OSError, ValueError) as e:
            print(f"Warning: Could not load config file {config_file}: {e}")
            return

        # Update each config section
        for section_name, section_data in config_data.items():
            if section_name not in self.SECTIONS or not isinstance(section_data, dict):
                continue
            section = getattr(self, section_name)
            for key, value in section_data.items():
                if hasattr(section, key):
                    current = getattr(section, key)
                    if isinstance(current, tuple) and isinstance(value, list):
                        value = tuple(value)
                    setattr(section, key, value)

    def save_to_file(self, config_file: str) -> None:
        """Save current configuration to JSON file."""
        config_data = {}

        for section_name in self.SECTIONS:
            section = getattr(self, section_name)
            config_data[section_name] = {
                key: getattr(section, key)
                for key in section.__dataclass_fields__.keys()
            }

        directory = os.path.dirname(config_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(config_file, 'w') as f:
            json.dump(config_data, f, indent=2)

    def to_dict(self) -> Dict[str, Any]:
        """Return all sections as plain dictionaries."""
        return {
            name: {key: getattr(getattr(self, name), key)
                   for key in getattr(self, name).__dataclass_fields__.keys()}
            for name in self.SECTIONS
        }

    def validate_config(self) -> bool:
        """Validate configuration settings."""
        errors = []

        vision_weight = (self.vision.weight_gaze + self.vision.weight_pose +
                         self.vision.weight_duration + self.vision.weight_repetition +
                         self.vision.weight_lip)
        if abs(vision_weight - 1.0) > 1e-6:
            errors.append("Vision weights must sum to 1.0")

        audio_weight = (self.audio.weight_speech + self.audio.weight_near_field +
                        self.audio.weight_duration + self.audio.weight_repetition +
                        self.audio.weight_lip_sync)
        if abs(audio_weight - 1.0) > 1e-6:
            errors.append("Audio weights must sum to 1.0")

        thresholds = {
            'vision.flag_threshold': self.vision.flag_threshold,
            'vision.smoothing_alpha': self.vision.smoothing_alpha,
            'audio.flag_threshold': self.audio.flag_threshold,
            'audio.smoothing_alpha': self.audio.smoothing_alpha,
            'identity.similarity_threshold': self.identity.similarity_threshold,
            'identity.spoof_threshold': self.identity.spoof_threshold,
        }
        for name, value in thresholds.items():
            if value < 0 or value > 1:
                errors.append(f"{name} must be between 0 and 1")

        intervals = {
            'vision.flag_debounce_ms': self.vision.flag_debounce_ms,
            'vision.repetition_window_ms': self.vision.repetition_window_ms,
            'audio.calibration_duration_ms': self.audio.calibration_duration_ms,
            'audio.flag_debounce_ms': self.audio.flag_debounce_ms,
            'audio.repetition_window_ms': self.audio.repetition_window_ms,
            'identity.verify_interval_ms': self.identity.verify_interval_ms,
            'evidence.retention_ms': self.evidence.retention_ms,
            'evidence.retry_delay_s': self.evidence.retry_delay_s,
        }
        for name, value in intervals.items():
            if value <= 0:
                errors.append(f"{name} must be positive")

        if self.vision.duration_max_ms <= self.vision.duration_min_ms:
            errors.append("vision.duration_max_ms must exceed duration_min_ms")
        if self.audio.duration_max_ms <= self.audio.duration_min_ms:
            errors.append("audio.duration_max_ms must exceed duration_min_ms")

        self.errors = errors
        if errors:
            print("Configuration validation errors:")
            for error in errors:
                print(f"  - {error}")
            return False

        return True


# Global configuration instance
config = Config()

# Default configuration file path
DEFAULT_CONFIG_FILE = "data/configs/proctor_config.json"

# Load default configuration if available
if os.path.exists(DEFAULT_CONFIG_FILE):
    config.load_from_file(DEFAULT_CONFIG_FILE)
