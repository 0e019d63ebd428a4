"""
External collaborator contracts: feature adapters, face analyzers and the
exceptions they may raise.

Analyzers are chosen once at configuration time through ``create_face_analyzer``;
nothing in the pipeline probes for backends at runtime.
"""

from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .models import DetectedFace


class ProctoringError(Exception):
    """Base class for errors raised by adapters and storage backends."""


class DeviceUnavailableError(ProctoringError):
    """Camera or microphone could not deliver data."""

    def __init__(self, device: str, message: str = ""):
        self.device = device
        super().__init__(message or f"{device} unavailable")


class EmbeddingFormatError(ProctoringError):
    """Embedding dimension or version does not match the reference."""


class StorageError(ProctoringError):
    """Evidence storage rejected an upload or link request."""


class FaceAnalyzer:
    """
    Fixed interface for identity verification backends.

    Subclasses implement ``detect``, ``embed`` and ``check_liveness``.
    ``embedding_version`` names the embedding family; a reference centroid
    recorded with a different family is incompatible.
    """

    name = "base"
    embedding_version: Optional[str] = None

    def detect(self, frame: Any) -> List[DetectedFace]:
        raise NotImplementedError

    def embed(self, frame: Any, face: DetectedFace) -> np.ndarray:
        raise NotImplementedError

    def check_liveness(self, frame: Any, face: DetectedFace) -> float:
        """Spoof probability in [0, 1]."""
        raise NotImplementedError

    def close(self) -> None:
        pass


FACE_ANALYZERS: Dict[str, Callable[..., FaceAnalyzer]] = {}


def register_face_analyzer(name: str):
    """Class decorator adding an analyzer to the configuration-time registry."""
    def decorator(cls):
        FACE_ANALYZERS[name] = cls
        cls.name = name
        return cls
    return decorator


def create_face_analyzer(name: str, **kwargs) -> FaceAnalyzer:
    if name not in FACE_ANALYZERS:
        raise ValueError(f"Unknown face analyzer backend: {name} "
                         f"(available: {', '.join(sorted(FACE_ANALYZERS)) or 'none'})")
    return FACE_ANALYZERS[name](**kwargs)


def cosine_similarity(v1: Optional[np.ndarray], v2: Optional[np.ndarray]) -> float:
    """
    Cosine similarity in [-1, 1].

    Returns 0.0 when either vector is missing or the lengths differ.
    """
    if v1 is None or v2 is None:
        return 0.0
    a = np.asarray(v1, dtype=float).ravel()
    b = np.asarray(v2, dtype=float).ravel()
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    norm = np.linalg.norm(a) * np.linalg.norm(b)
    if norm == 0:
        return 0.0
    return float(np.clip(np.dot(a, b) / norm, -1.0, 1.0))


def l2_normalize(v: np.ndarray) -> np.ndarray:
    v = np.asarray(v, dtype=float)
    norm = np.linalg.norm(v)
    if norm == 0:
        return v
    return v / norm


def compute_centroid(embeddings: List[np.ndarray]) -> Optional[np.ndarray]:
    """Mean of the registration embeddings, L2-normalized."""
    if not embeddings:
        return None
    stacked = np.vstack([np.asarray(e, dtype=float).ravel() for e in embeddings])
    return l2_normalize(stacked.sum(axis=0))
