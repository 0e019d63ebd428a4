"""
Unit tests for identity verification.
"""

import os
import sys

# Add the project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import random
import unittest

import numpy as np

from proctor_risk.core.adapters import (
    FaceAnalyzer, DeviceUnavailableError, EmbeddingFormatError,
)
from proctor_risk.core.clock import ManualClock
from proctor_risk.core.identity import IdentityVerifier
from proctor_risk.core.models import DetectedFace, FlagType, IdentitySample, IdentityState
from proctor_risk.utils.config import IdentityConfig

REFERENCE = np.array([1.0, 0.0, 0.0, 0.0])
SAME_PERSON = np.array([0.95, 0.3, 0.0, 0.0])
OTHER_PERSON = np.array([0.1, 1.0, 0.2, 0.0])


class FakeAnalyzer(FaceAnalyzer):
    """Scripted analyzer: returns ``face_count`` faces with fixed liveness and embedding."""

    name = "fake"
    embedding_version = "arcface-r100"

    def __init__(self, face_count=1, spoof=0.1, embedding=SAME_PERSON, score=0.9):
        self.face_count = face_count
        self.spoof = spoof
        self.embedding = embedding
        self.score = score
        self.detect_error = None
        self.embed_error = None
        self.closed = False
        self.embed_calls = 0

    def detect(self, frame):
        if self.detect_error is not None:
            raise self.detect_error
        return [DetectedFace(bbox=(0, 0, 10, 10), score=self.score) for _ in range(self.face_count)]

    def embed(self, frame, face):
        self.embed_calls += 1
        if self.embed_error is not None:
            raise self.embed_error
        return self.embedding

    def check_liveness(self, frame, face):
        return self.spoof

    def close(self):
        self.closed = True


class IdentityTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock(0)
        self.flags = []
        self.resolved = []
        self.analyzer = FakeAnalyzer()
        self.verifier = IdentityVerifier(self.analyzer, IdentityConfig(),
                                         on_flag=self.flags.append,
                                         on_resolved=self.resolved.append,
                                         clock=self.clock)
        self.verifier.load_reference(REFERENCE, "arcface-r100")

    def tick(self):
        state = self.verifier.verify(frame=object())
        self.clock.advance(7000)
        return state


class TestIdentityTicks(IdentityTestCase):

    def test_matching_face_is_active(self):
        self.assertEqual(self.tick(), IdentityState.ACTIVE)
        self.assertGreater(self.verifier.last_similarity, 0.9)
        self.assertEqual(self.flags, [])

    def test_two_faces_on_two_ticks_flag_once(self):
        self.analyzer.face_count = 2
        self.assertEqual(self.tick(), IdentityState.WARNING)
        self.assertEqual(self.flags, [])
        self.tick()
        self.tick()
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.IDENTITY_MULTIPLE_FACES)
        self.assertEqual(self.flags[0].severity, 'high')
        self.assertEqual(self.flags[0].timestamp_ms, 7000)

    def test_missing_face_after_three_checks(self):
        self.analyzer.face_count = 0
        self.tick()
        self.tick()
        self.assertEqual(self.flags, [])
        self.tick()
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.IDENTITY_MISSING)
        self.assertEqual(self.flags[0].severity, 'medium')

    def test_mismatch_needs_three_consecutive(self):
        self.analyzer.embedding = OTHER_PERSON
        self.tick()
        self.tick()
        self.analyzer.embedding = SAME_PERSON
        self.tick()  # resets the counter
        self.analyzer.embedding = OTHER_PERSON
        self.tick()
        self.tick()
        self.assertEqual(self.flags, [])
        self.tick()
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.IDENTITY_MISMATCH)
        self.assertEqual(self.flags[0].severity, 'high')

    def test_match_resolves_outstanding_flag(self):
        self.analyzer.embedding = OTHER_PERSON
        for _ in range(5):
            self.tick()
        self.assertEqual(len(self.flags), 1)
        flag_id = self.flags[0].flag_id
        self.assertEqual(self.verifier.outstanding_flag_id, flag_id)

        self.analyzer.embedding = SAME_PERSON
        self.assertEqual(self.tick(), IdentityState.ACTIVE)
        self.assertEqual(self.resolved, [flag_id])
        self.assertIsNone(self.verifier.outstanding_flag_id)

        self.analyzer.embedding = OTHER_PERSON
        for _ in range(3):
            self.tick()
        self.assertEqual(len(self.flags), 2)

    def test_spoof_flag(self):
        self.analyzer.spoof = 0.9
        self.assertEqual(self.tick(), IdentityState.WARNING)
        self.assertEqual(self.flags[0].type, FlagType.SPOOF_DETECTED)
        self.assertEqual(self.flags[0].severity, 'high')
        self.assertEqual(self.analyzer.embed_calls, 0)

    def test_impersonation_flags_immediately(self):
        self.analyzer.spoof = 0.6
        self.analyzer.embedding = np.array([0.2, 1.0, 0.0, 0.0])
        self.tick()
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.IMPERSONATION)

    def test_low_confidence_detection_skipped(self):
        self.analyzer.score = 0.3
        self.analyzer.embedding = OTHER_PERSON
        self.assertEqual(self.tick(), IdentityState.ACTIVE)
        self.assertEqual(self.verifier.mismatch_count, 0)
        self.assertEqual(self.analyzer.embed_calls, 0)

    def test_busy_tick_is_skipped(self):
        self.verifier._verify_guard.acquire()
        try:
            self.assertIsNone(self.verifier.verify(object()))
        finally:
            self.verifier._verify_guard.release()
        self.assertEqual(self.verifier.checks, 0)

    def test_camera_failure(self):
        self.analyzer.detect_error = DeviceUnavailableError("camera", "no frames")
        self.assertEqual(self.tick(), IdentityState.ERROR)
        self.assertEqual(self.flags[0].type, FlagType.DEVICE_ERROR)
        self.assertEqual(self.flags[0].severity, 'high')

    def test_unexpected_error_logged_not_raised(self):
        self.analyzer.detect_error = RuntimeError("model crashed")
        self.assertEqual(self.tick(), IdentityState.ACTIVE)
        self.assertEqual(self.flags, [])

    def test_stop_closes_analyzer(self):
        self.verifier.stop()
        self.assertTrue(self.analyzer.closed)
        self.assertIsNone(self.tick())

    def test_status(self):
        self.tick()
        status = self.verifier.get_status()
        self.assertEqual(status['state'], 'active')
        self.assertFalse(status['presence_only'])
        self.assertEqual(status['checks'], 1)


class TestLegacyReferences(IdentityTestCase):

    def test_foreign_version_prefix(self):
        verifier = IdentityVerifier(FakeAnalyzer(), IdentityConfig(), clock=self.clock)
        self.assertEqual(verifier.load_reference(REFERENCE, "facenet-v1"), IdentityState.LEGACY)
        self.assertIsNone(verifier.verify(object()))

    def test_analyzer_without_embeddings(self):
        analyzer = FakeAnalyzer()
        analyzer.embedding_version = None
        verifier = IdentityVerifier(analyzer, IdentityConfig(), clock=self.clock)
        self.assertEqual(verifier.load_reference(REFERENCE, "arcface-r100"), IdentityState.LEGACY)

    def test_embedding_shape_mismatch(self):
        self.analyzer.embedding = np.ones(8)
        self.assertEqual(self.tick(), IdentityState.LEGACY)
        self.assertEqual(self.flags, [])
        # Terminal: further ticks are skipped
        self.assertIsNone(self.tick())

    def test_embedding_format_error(self):
        self.analyzer.embed_error = EmbeddingFormatError("512D expected")
        self.assertEqual(self.tick(), IdentityState.LEGACY)

    def test_presence_only_without_reference(self):
        verifier = IdentityVerifier(FakeAnalyzer(), IdentityConfig(), clock=self.clock)
        self.assertEqual(verifier.load_reference(None), IdentityState.ACTIVE)
        self.assertTrue(verifier.presence_only)
        self.assertEqual(verifier.verify(object()), IdentityState.ACTIVE)

    def test_no_analyzer_is_device_error(self):
        flags = []
        verifier = IdentityVerifier(None, IdentityConfig(), on_flag=flags.append, clock=self.clock)
        verifier.load_reference(None)
        self.assertEqual(verifier.verify(object()), IdentityState.ERROR)
        self.assertEqual(flags[0].type, FlagType.DEVICE_ERROR)


class TestApplyObservation(IdentityTestCase):

    def test_similarity_from_sample(self):
        state = self.verifier.apply_observation(IdentitySample(face_count=1, similarity=0.8,
                                                               spoof_probability=0.1))
        self.assertEqual(state, IdentityState.ACTIVE)
        self.assertEqual(self.verifier.last_similarity, 0.8)

    def test_missing_embedding_skips_tick(self):
        state = self.verifier.apply_observation(IdentitySample(face_count=1, spoof_probability=0.1))
        self.assertNotEqual(state, IdentityState.LEGACY)
        state = self.verifier.apply_observation(IdentitySample(face_count=1, similarity=0.9,
                                                               spoof_probability=0.1))
        self.assertEqual(state, IdentityState.ACTIVE)

    def test_mismatch_flag_never_early(self):
        """A mismatch flag needs three consecutive low-similarity checks."""
        rng = random.Random(11)
        consecutive = 0
        for _ in range(300):
            low = rng.random() < 0.6
            similarity = rng.uniform(0.36, 0.59) if low else rng.uniform(0.61, 1.0)
            before = len(self.flags)
            self.verifier.apply_observation(IdentitySample(face_count=1, similarity=similarity,
                                                           spoof_probability=0.0))
            consecutive = consecutive + 1 if low else 0
            if len(self.flags) > before:
                self.assertEqual(self.flags[-1].type, FlagType.IDENTITY_MISMATCH)
                self.assertGreaterEqual(consecutive, 3)

    def test_single_outstanding_flag(self):
        for _ in range(4):
            self.verifier.apply_observation(IdentitySample(face_count=0))
        for _ in range(3):
            self.verifier.apply_observation(IdentitySample(face_count=2))
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.IDENTITY_MISSING)


if __name__ == '__main__':
    unittest.main()
