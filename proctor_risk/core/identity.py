"""
Identity Verification

Periodic face check against the registered reference centroid. Each tick
observes the frame through a ``FaceAnalyzer`` and feeds the observation to
``apply_observation``, a state transition that depends only on the sample and
the verifier's counters.

States: INITIALIZING -> ACTIVE <-> WARNING, with ERROR on device failure and
a terminal LEGACY state when the reference embedding cannot be compared.
"""

import threading
from typing import Any, Callable, Dict, Optional

import numpy as np

from .adapters import (
    FaceAnalyzer, DeviceUnavailableError, EmbeddingFormatError, cosine_similarity,
)
from .clock import Clock, system_clock
from .flags import FlagDebouncer, FlagEmitter, FlagSink
from .models import (
    IdentitySample, IdentityState, Flag, FlagType, SEVERITY_MEDIUM, SEVERITY_HIGH,
)
from ..utils.config import IdentityConfig, config
from ..utils.logger import get_logger

logger = get_logger(__name__)

ResolvedSink = Callable[[str], None]


class IdentityVerifier:
    """
    Identity state machine with a single outstanding flag.

    While a flag raised by this verifier is unresolved, further identity
    flags are suppressed. A successful match resolves it and notifies
    ``on_resolved`` with the flag id.
    """

    def __init__(self, analyzer: Optional[FaceAnalyzer] = None,
                 settings: Optional[IdentityConfig] = None,
                 on_flag: Optional[FlagSink] = None,
                 on_resolved: Optional[ResolvedSink] = None,
                 clock: Optional[Clock] = None,
                 device_debouncer: Optional[FlagDebouncer] = None):
        self.analyzer = analyzer
        self.settings = settings or config.identity
        self.clock = clock or system_clock
        self.flags = FlagEmitter("identity", on_flag, self.clock, device_debouncer)
        self.on_resolved = on_resolved

        self.state = IdentityState.INITIALIZING
        self.reference: Optional[np.ndarray] = None
        self.reference_version: Optional[str] = None
        self.outstanding_flag_id: Optional[str] = None

        self.mismatch_count = 0
        self.missing_count = 0
        self.multiple_count = 0
        self.last_similarity: Optional[float] = None
        self.last_spoof: Optional[float] = None
        self.checks = 0

        self._lock = threading.RLock()
        self._verify_guard = threading.Lock()
        self._running = True

    @property
    def presence_only(self) -> bool:
        return self.reference is None

    def load_reference(self, centroid: Optional[np.ndarray],
                       embedding_version: Optional[str] = None) -> IdentityState:
        """
        Install the registered centroid.

        No centroid means presence-only checking. A version outside the
        configured embedding family, or one the analyzer does not produce,
        makes verification permanently LEGACY.
        """
        with self._lock:
            if centroid is None:
                logger.warning("No face registration found; presence check only")
                self.reference = None
                self.state = IdentityState.ACTIVE
                return self.state

            prefix = self.settings.embedding_version_prefix
            if embedding_version and not embedding_version.startswith(prefix):
                self._enter_legacy(f"Legacy embedding version '{embedding_version}'")
                return self.state

            if self.analyzer is not None:
                produced = self.analyzer.embedding_version
                if produced is None or (embedding_version and produced != embedding_version):
                    self._enter_legacy(f"Analyzer '{self.analyzer.name}' cannot compare "
                                       f"'{embedding_version or 'unversioned'}' embeddings")
                    return self.state

            self.reference = np.asarray(centroid, dtype=float).ravel()
            self.reference_version = embedding_version
            self.state = IdentityState.ACTIVE
            logger.info(f"Reference centroid loaded ({self.reference.size}D)")
            return self.state

    def verify(self, frame: Any) -> Optional[IdentityState]:
        """
        Run one verification tick on ``frame``.

        Returns None when the tick was skipped: another check still in
        flight, verifier stopped, or LEGACY.
        """
        if not self._verify_guard.acquire(blocking=False):
            logger.debug("Identity check still running; tick skipped")
            return None
        try:
            if not self._running or self.state == IdentityState.LEGACY:
                return None
            if self.analyzer is None:
                raise DeviceUnavailableError("camera", "no face analyzer configured")
            sample = self._observe(frame)
            return self.apply_observation(sample)
        except EmbeddingFormatError as e:
            with self._lock:
                self._enter_legacy(str(e))
            return self.state
        except DeviceUnavailableError as e:
            self.report_device_failure(str(e))
            return self.state
        except Exception as e:
            logger.log_error_with_context(e, "identity verification")
            return self.state
        finally:
            self._verify_guard.release()

    def _observe(self, frame: Any) -> IdentitySample:
        faces = self.analyzer.detect(frame)
        if len(faces) != 1:
            return IdentitySample(face_count=len(faces))

        face = faces[0]
        if face.score < self.settings.min_face_score:
            return IdentitySample(face_count=1, face_score=face.score)

        spoof = float(self.analyzer.check_liveness(frame, face))
        if spoof > self.settings.spoof_threshold or self.reference is None:
            return IdentitySample(face_count=1, spoof_probability=spoof, face_score=face.score)

        embedding = self.analyzer.embed(frame, face)
        return IdentitySample(face_count=1, embedding=embedding,
                              spoof_probability=spoof, face_score=face.score)

    def apply_observation(self, sample: IdentitySample) -> IdentityState:
        """Advance the state machine by one observation."""
        s = self.settings
        with self._lock:
            if not self._running or self.state == IdentityState.LEGACY:
                return self.state
            self.checks += 1

            if sample.face_count == 0:
                self.missing_count += 1
                self.mismatch_count = 0
                if self.missing_count >= s.missing_for_flag:
                    self._trigger_flag(FlagType.IDENTITY_MISSING,
                                       'Student not detected in frame', SEVERITY_MEDIUM)
                return self._set_state(IdentityState.WARNING, sample)
            self.missing_count = 0

            if sample.face_count > 1:
                self.multiple_count += 1
                if self.multiple_count >= s.multiple_for_flag:
                    self._trigger_flag(FlagType.IDENTITY_MULTIPLE_FACES,
                                       f'{sample.face_count} faces detected - possible unauthorized person',
                                       SEVERITY_HIGH)
                return self._set_state(IdentityState.WARNING, sample)
            self.multiple_count = 0

            # Low confidence detection
            if sample.face_score < s.min_face_score:
                return self.state

            spoof = sample.spoof_probability if sample.spoof_probability is not None else 0.0
            self.last_spoof = sample.spoof_probability
            if spoof > s.spoof_threshold:
                self._trigger_flag(FlagType.SPOOF_DETECTED,
                                   f'Liveness check failed - possible photo/screen attack '
                                   f'({spoof * 100:.0f}% spoof probability)',
                                   SEVERITY_HIGH)
                return self._set_state(IdentityState.WARNING, sample)

            if self.reference is None:
                self._clear_flag()
                return self._set_state(IdentityState.ACTIVE, sample)

            similarity = sample.similarity
            if similarity is None:
                if sample.embedding is None:
                    logger.warning("Identity observation without embedding or similarity skipped")
                    return self.state
                embedding = np.asarray(sample.embedding, dtype=float).ravel()
                if embedding.shape != self.reference.shape:
                    self._enter_legacy(
                        f"Embedding shape {embedding.shape} does not match reference {self.reference.shape}")
                    return self.state
                similarity = cosine_similarity(self.reference, embedding)
            self.last_similarity = similarity

            if similarity < s.similarity_threshold:
                self.mismatch_count += 1
                if spoof > s.impersonation_spoof_threshold and similarity < s.impersonation_similarity_threshold:
                    self._trigger_flag(FlagType.IMPERSONATION,
                                       f'Identity mismatch with spoof indicators '
                                       f'(match: {similarity * 100:.0f}%)',
                                       SEVERITY_HIGH)
                elif self.mismatch_count >= s.mismatch_for_flag:
                    self._trigger_flag(FlagType.IDENTITY_MISMATCH,
                                       f'Unrecognized face detected (match: {similarity * 100:.0f}%)',
                                       SEVERITY_HIGH)
                return self._set_state(IdentityState.WARNING, sample)

            self.mismatch_count = 0
            self._clear_flag()
            return self._set_state(IdentityState.ACTIVE, sample)

    def report_device_failure(self, reason: str) -> None:
        with self._lock:
            self.state = IdentityState.ERROR
            if self._running:
                self.flags.emit_device_error("camera", reason, SEVERITY_HIGH)

    def stop(self) -> None:
        with self._lock:
            self._running = False
        if self.analyzer is not None:
            self.analyzer.close()
        logger.info("Identity verifier stopped")

    def _set_state(self, state: IdentityState, sample: IdentitySample) -> IdentityState:
        self.state = state
        logger.log_identity_check(state.value, sample.face_count, self.last_similarity, self.last_spoof)
        return state

    def _enter_legacy(self, reason: str) -> None:
        if self.state != IdentityState.LEGACY:
            logger.warning(f"Identity verification disabled: {reason}")
        self.state = IdentityState.LEGACY

    def _trigger_flag(self, flag_type: str, message: str, severity: str) -> Optional[Flag]:
        if self.outstanding_flag_id is not None:
            logger.debug(f"Identity flag {flag_type} suppressed; {self.outstanding_flag_id} unresolved")
            return None
        flag = self.flags.emit(flag_type, message, severity, 0, details={
            'mismatch_count': self.mismatch_count,
            'missing_count': self.missing_count,
            'multiple_count': self.multiple_count,
            'similarity': self.last_similarity,
            'spoof_probability': self.last_spoof,
        })
        if flag is not None:
            self.outstanding_flag_id = flag.flag_id
        return flag

    def _clear_flag(self) -> None:
        if self.outstanding_flag_id is None:
            return
        flag_id = self.outstanding_flag_id
        self.outstanding_flag_id = None
        logger.info(f"Identity flag {flag_id} resolved")
        if self.on_resolved is not None:
            try:
                self.on_resolved(flag_id)
            except Exception as e:
                logger.log_error_with_context(e, f"identity resolution callback for {flag_id}")

    def get_status(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'presence_only': self.presence_only,
            'last_similarity': self.last_similarity,
            'last_spoof': self.last_spoof,
            'mismatch_count': self.mismatch_count,
            'missing_count': self.missing_count,
            'multiple_count': self.multiple_count,
            'outstanding_flag_id': self.outstanding_flag_id,
            'checks': self.checks,
        }
