"""
Unit tests for feature extraction and analyzer helpers.
"""

import os
import sys

# Add the project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import unittest

import numpy as np

from proctor_risk.core.adapters import (
    FACE_ANALYZERS, FaceAnalyzer, compute_centroid, cosine_similarity,
    create_face_analyzer, register_face_analyzer,
)
from proctor_risk.core.audio_features import (
    AudioFeatureExtractor, spectral_flatness, spectrum_rms, voice_band_ratio,
)
from proctor_risk.core.clock import ManualClock
from proctor_risk.core.vision_features import LandmarkFeatureExtractor, mouth_aspect_ratio

SAMPLE_RATE = 16000
FFT_SIZE = 512


def tone(freq, amplitude=0.5):
    t = np.arange(FFT_SIZE) / SAMPLE_RATE
    return amplitude * np.sin(2 * np.pi * freq * t)


def synthetic_mesh():
    """Frontal face: eyes level, irises centered, nose slightly below the eyes."""
    mesh = np.zeros((478, 3))
    mesh[33] = (0.3, 0.4, 0)    # left eye outer
    mesh[133] = (0.4, 0.4, 0)   # left eye inner
    mesh[362] = (0.6, 0.4, 0)   # right eye inner
    mesh[263] = (0.7, 0.4, 0)   # right eye outer
    mesh[468] = (0.35, 0.4, 0)  # left iris
    mesh[473] = (0.65, 0.4, 0)  # right iris
    mesh[1] = (0.5, 0.5, 0)     # nose tip
    mesh[61] = (0.4, 0.7, 0)
    mesh[291] = (0.6, 0.7, 0)
    mesh[13] = (0.5, 0.68, 0)
    mesh[14] = (0.5, 0.72, 0)
    return mesh


class TestAudioMetrics(unittest.TestCase):

    def test_metric_helpers(self):
        spectrum = np.array([0, 3, 4, 0])
        self.assertAlmostEqual(spectrum_rms(spectrum), 2.5)
        self.assertAlmostEqual(voice_band_ratio(spectrum, 1, 1), 3 / 7)
        self.assertEqual(voice_band_ratio(np.zeros(4), 0, 3), 0.0)
        self.assertAlmostEqual(spectral_flatness(np.array([9, 5, 5, 5])), 1.0)

    def test_band_bins(self):
        extractor = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE)
        self.assertEqual(extractor.voice_start_bin, 9)
        self.assertEqual(extractor.voice_end_bin, 109)

    def test_silence(self):
        sample = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).extract(np.zeros(FFT_SIZE), 0.0)
        self.assertEqual(sample.rms, 0.0)
        self.assertEqual(sample.voice_band_ratio, 0.0)
        self.assertEqual(sample.spectral_flatness, 1.0)

    def test_voice_band_tone(self):
        inside = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).extract(tone(1000), 0.9)
        outside = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).extract(tone(7000), 0.9)
        self.assertGreater(inside.voice_band_ratio, 0.5)
        self.assertLess(outside.voice_band_ratio, 0.1)
        self.assertEqual(inside.vad_probability, 0.9)

    def test_tone_flatter_than_noise(self):
        noise = np.random.RandomState(0).normal(0, 0.1, FFT_SIZE)
        tonal = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).extract(tone(1000), 0.5)
        noisy = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).extract(noise, 0.5)
        self.assertLess(tonal.spectral_flatness, noisy.spectral_flatness)

    def test_int16_matches_float(self):
        float_frame = tone(1000)
        int_frame = np.round(float_frame * 32768).astype(np.int16)
        a = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).byte_spectrum(float_frame)
        b = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).byte_spectrum(int_frame)
        self.assertEqual(a.shape, (FFT_SIZE // 2,))
        self.assertLessEqual(int(np.max(np.abs(a.astype(int) - b.astype(int)))), 1)

    def test_short_frame_padded(self):
        spectrum = AudioFeatureExtractor(SAMPLE_RATE, FFT_SIZE).byte_spectrum(tone(1000)[:256])
        self.assertEqual(spectrum.shape, (FFT_SIZE // 2,))
        self.assertEqual(spectrum.dtype, np.uint8)


class TestLandmarkFeatures(unittest.TestCase):

    def setUp(self):
        self.extractor = LandmarkFeatureExtractor(clock=ManualClock(250))

    def test_frontal_face(self):
        sample = self.extractor.extract([synthetic_mesh()])
        self.assertEqual(sample.timestamp_ms, 250)
        self.assertEqual(sample.face_count, 1)
        self.assertAlmostEqual(sample.yaw, 0.0)
        self.assertAlmostEqual(sample.pitch, 0.1 / 0.6)
        self.assertAlmostEqual(sample.gaze_h, 0.5)
        self.assertAlmostEqual(sample.gaze_v, 0.0)
        self.assertAlmostEqual(sample.mouth_aspect_ratio, 0.2)

    def test_no_faces(self):
        sample = self.extractor.extract([])
        self.assertEqual(sample.face_count, 0)

    def test_face_count(self):
        sample = self.extractor.extract([synthetic_mesh(), synthetic_mesh()])
        self.assertEqual(sample.face_count, 2)

    def test_degenerate_mesh_keeps_pose(self):
        mesh = synthetic_mesh()
        mesh[263] = (0.305, 0.4, 0)
        sample = self.extractor.extract([mesh])
        self.assertEqual(sample.yaw, 0.0)
        self.assertEqual(sample.pitch, 0.0)

    def test_bad_shape_rejected(self):
        with self.assertRaises(ValueError):
            self.extractor.extract([np.zeros((68, 2))])

    def test_mouth_aspect_ratio_zero_width(self):
        self.assertEqual(mouth_aspect_ratio(np.zeros((478, 2))), 0.0)


class TestAnalyzerHelpers(unittest.TestCase):

    def test_cosine_similarity(self):
        self.assertAlmostEqual(cosine_similarity(np.array([1, 0]), np.array([1, 0])), 1.0)
        self.assertAlmostEqual(cosine_similarity(np.array([1, 0]), np.array([0, 1])), 0.0)
        self.assertEqual(cosine_similarity(np.array([1, 0]), np.array([1, 0, 0])), 0.0)
        self.assertEqual(cosine_similarity(None, np.array([1, 0])), 0.0)

    def test_centroid_is_normalized_mean(self):
        centroid = compute_centroid([np.array([1.0, 0.0]), np.array([0.0, 1.0])])
        np.testing.assert_allclose(centroid, [np.sqrt(0.5), np.sqrt(0.5)])
        self.assertIsNone(compute_centroid([]))

    def test_registry(self):
        @register_face_analyzer("test-null")
        class NullAnalyzer(FaceAnalyzer):
            def detect(self, frame):
                return []

        try:
            analyzer = create_face_analyzer("test-null")
            self.assertIsInstance(analyzer, NullAnalyzer)
            self.assertEqual(analyzer.name, "test-null")
        finally:
            FACE_ANALYZERS.pop("test-null", None)

        with self.assertRaises(ValueError):
            create_face_analyzer("test-null")


if __name__ == '__main__':
    unittest.main()
