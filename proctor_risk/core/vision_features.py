"""
Vision feature extraction from a 478-point face mesh.

Landmarks are normalized image coordinates (x right, y down). Head pose is
a geometric estimate from the nose tip against the eye-corner midpoint; gaze
comes from iris position relative to the eye corners.
"""

from typing import Optional, Sequence

import numpy as np

from .clock import Clock, system_clock
from .models import VisionFeatureSample
from .smoothing import ExponentialSmoother
from ..utils.logger import log_performance_metrics

# MediaPipe face mesh indices (refined landmarks)
NOSE_TIP = 1
LEFT_EYE_OUTER = 33
RIGHT_EYE_OUTER = 263
MOUTH_LEFT = 61
MOUTH_RIGHT = 291
RIGHT_EYE_INNER = 362
RIGHT_IRIS_CENTER = 473
LEFT_EYE_INNER = 133
LEFT_IRIS_CENTER = 468
UPPER_LIP = 13
LOWER_LIP = 14

MESH_SIZE = 478
MIN_EYE_DISTANCE = 0.01


def _dist(a: np.ndarray, b: np.ndarray) -> float:
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def mouth_aspect_ratio(landmarks: np.ndarray) -> float:
    """Inner-lip height over mouth-corner width."""
    width = _dist(landmarks[MOUTH_LEFT], landmarks[MOUTH_RIGHT])
    if width <= 0:
        return 0.0
    return _dist(landmarks[UPPER_LIP], landmarks[LOWER_LIP]) / width


class LandmarkFeatureExtractor:
    """
    Turns per-frame face meshes into ``VisionFeatureSample`` objects.

    Gaze and pose are smoothed before export. A degenerate mesh (eyes
    closer than 0.01) keeps the previous pose.
    """

    def __init__(self, smoothing_alpha: float = 0.3, clock: Optional[Clock] = None):
        self.clock = clock or system_clock
        self.smoothers = {
            'gaze_h': ExponentialSmoother(smoothing_alpha),
            'gaze_v': ExponentialSmoother(smoothing_alpha),
            'yaw': ExponentialSmoother(smoothing_alpha),
            'pitch': ExponentialSmoother(smoothing_alpha),
        }

    @log_performance_metrics
    def extract(self, faces: Sequence[np.ndarray]) -> VisionFeatureSample:
        """
        Build a sample from every mesh detected in a frame.

        Args:
            faces: One (478, 2+) landmark array per detected face; the first
                entry is the primary face.
        """
        now = self.clock.now_ms()
        if not faces:
            return VisionFeatureSample(timestamp_ms=now, face_count=0)

        landmarks = np.asarray(faces[0], dtype=float)
        if landmarks.ndim != 2 or landmarks.shape[0] < MESH_SIZE or landmarks.shape[1] < 2:
            raise ValueError(f"Expected a ({MESH_SIZE}, 2+) landmark array, got {landmarks.shape}")

        self._update_head_pose(landmarks)
        self._update_gaze(landmarks)

        return VisionFeatureSample(
            timestamp_ms=now,
            face_count=len(faces),
            gaze_h=self.smoothers['gaze_h'].get() if self.smoothers['gaze_h'].is_initialized else 0.5,
            gaze_v=self.smoothers['gaze_v'].get(),
            yaw=self.smoothers['yaw'].get(),
            pitch=self.smoothers['pitch'].get(),
            mouth_aspect_ratio=mouth_aspect_ratio(landmarks),
        )

    def _update_head_pose(self, landmarks: np.ndarray) -> None:
        nose = landmarks[NOSE_TIP]
        left_eye = landmarks[LEFT_EYE_OUTER]
        right_eye = landmarks[RIGHT_EYE_OUTER]

        eye_dist_x = abs(right_eye[0] - left_eye[0])
        if eye_dist_x < MIN_EYE_DISTANCE:
            return

        eye_center_x = (left_eye[0] + right_eye[0]) / 2
        eye_center_y = (left_eye[1] + right_eye[1]) / 2
        scale = eye_dist_x * 1.5

        # Positive pitch means looking down
        self.smoothers['yaw'].update((nose[0] - eye_center_x) / scale)
        self.smoothers['pitch'].update((nose[1] - eye_center_y) / scale)

    def _update_gaze(self, landmarks: np.ndarray) -> None:
        r_iris = landmarks[RIGHT_IRIS_CENTER]
        r_inner = landmarks[RIGHT_EYE_INNER]
        r_outer = landmarks[RIGHT_EYE_OUTER]
        r_width = _dist(r_outer, r_inner)
        r_gaze_h = _dist(r_iris, r_inner) / r_width if r_width > 0 else 0.5

        l_iris = landmarks[LEFT_IRIS_CENTER]
        l_inner = landmarks[LEFT_EYE_INNER]
        l_outer = landmarks[LEFT_EYE_OUTER]
        l_width = _dist(l_outer, l_inner)
        l_gaze_h = _dist(l_iris, l_inner) / l_width if l_width > 0 else 0.5

        r_center_y = (r_inner[1] + r_outer[1]) / 2
        gaze_v = (r_iris[1] - r_center_y) / (r_width * 0.5) if r_width > 0 else 0.0

        self.smoothers['gaze_h'].update((r_gaze_h + l_gaze_h) / 2)
        self.smoothers['gaze_v'].update(gaze_v)

    def reset(self) -> None:
        for smoother in self.smoothers.values():
            smoother.reset()
