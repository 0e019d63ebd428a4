"""
MediaPipe Face Mesh adapter.

Wraps the MediaPipe face mesh solution for the webcam pipeline: detects up
to two faces with refined iris landmarks and hands normalized landmark
arrays to ``LandmarkFeatureExtractor``. Also provides the presence-only
identity analyzer registered as ``"mediapipe"``.
"""

from typing import Any, List

import cv2
import mediapipe as mp
import numpy as np

from .adapters import FaceAnalyzer, EmbeddingFormatError, register_face_analyzer
from .models import DetectedFace
from ..utils.logger import get_logger

logger = get_logger(__name__)


class FaceMeshDetector:
    """Face mesh landmarks for every face in a BGR frame."""

    def __init__(self, max_num_faces: int = 2, min_detection_confidence: float = 0.5,
                 min_tracking_confidence: float = 0.5):
        self.mp_face_mesh = mp.solutions.face_mesh
        self.face_mesh = self.mp_face_mesh.FaceMesh(
            static_image_mode=False,
            max_num_faces=max_num_faces,
            refine_landmarks=True,
            min_detection_confidence=min_detection_confidence,
            min_tracking_confidence=min_tracking_confidence
        )
        logger.info(f"Face mesh initialized (max {max_num_faces} faces)")

    def process(self, frame: np.ndarray) -> List[np.ndarray]:
        """
        Run the mesh on a BGR frame.

        Returns:
            One (478, 3) array of normalized landmarks per detected face
        """
        rgb_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        results = self.face_mesh.process(rgb_frame)

        if not results.multi_face_landmarks:
            return []

        return [
            np.array([[lm.x, lm.y, lm.z] for lm in face.landmark], dtype=float)
            for face in results.multi_face_landmarks
        ]

    def close(self) -> None:
        self.face_mesh.close()


def landmarks_to_bbox(landmarks: np.ndarray, width: int, height: int) -> tuple:
    """Pixel (x, y, w, h) box around a normalized landmark array."""
    xs = np.clip(landmarks[:, 0], 0, 1) * width
    ys = np.clip(landmarks[:, 1], 0, 1) * height
    x, y = int(xs.min()), int(ys.min())
    return (x, y, int(xs.max()) - x, int(ys.max()) - y)


@register_face_analyzer("mediapipe")
class FaceMeshPresenceAnalyzer(FaceAnalyzer):
    """
    Presence-only analyzer: counts faces but has no embedding model, so a
    registered reference centroid cannot be compared against it.
    """

    embedding_version = None

    def __init__(self, detector: FaceMeshDetector = None):
        self.detector = detector or FaceMeshDetector()

    def detect(self, frame: Any) -> List[DetectedFace]:
        h, w = frame.shape[:2]
        return [DetectedFace(bbox=landmarks_to_bbox(lm, w, h), landmarks=lm, score=1.0)
                for lm in self.detector.process(frame)]

    def embed(self, frame: Any, face: DetectedFace) -> np.ndarray:
        raise EmbeddingFormatError("mediapipe analyzer produces no identity embeddings")

    def check_liveness(self, frame: Any, face: DetectedFace) -> float:
        # No anti-spoof model
        return 0.0

    def close(self) -> None:
        self.detector.close()
