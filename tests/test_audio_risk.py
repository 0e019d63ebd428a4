"""
Unit tests for the audio risk scorer.
"""

import os
import sys

# Add the project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import unittest

from proctor_risk.core.audio_risk import AudioRiskScorer
from proctor_risk.core.clock import ManualClock
from proctor_risk.core.models import AudioFeatureSample, FlagType
from proctor_risk.core.multimodal_fusion import MouthDataSink
from proctor_risk.utils.config import AudioConfig

FRAME_MS = 100

SILENCE = dict(vad_probability=0.0, rms=2.0, voice_band_ratio=0.1, spectral_flatness=0.8)
SPEECH = dict(vad_probability=0.9, rms=60.0, voice_band_ratio=0.7, spectral_flatness=0.2)


class AudioTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = ManualClock(0)
        self.flags = []
        self.sink = MouthDataSink()
        self.scorer = AudioRiskScorer(AudioConfig(), mouth_sink=self.sink,
                                      on_flag=self.flags.append, clock=self.clock)

    def frame(self, **features):
        snapshot = self.scorer.process_frame(AudioFeatureSample(timestamp_ms=self.clock.now_ms(), **features))
        self.clock.advance(FRAME_MS)
        return snapshot

    def calibrate(self, **features):
        """Feed frames through the full 5 s window; returns the snapshots."""
        features = features or SILENCE
        self.scorer.start()
        snapshots = []
        while self.scorer.is_calibrating:
            snapshots.append(self.frame(**features))
        return snapshots


class TestCalibration(AudioTestCase):

    def test_silent_calibration_then_speech_flags_once(self):
        snapshots = self.calibrate()
        self.assertTrue(all(s.composite_score == 0.0 for s in snapshots))
        self.assertTrue(snapshots[0].is_calibrating)
        self.assertFalse(snapshots[-1].is_calibrating)
        self.assertEqual(self.flags, [])

        self.sink.publish(0.4, 0.0, self.clock.now_ms())
        self.scorer.speech_started()
        crossed = False
        for _ in range(20):  # 2 s segment
            snapshot = self.frame(**SPEECH)
            crossed = crossed or snapshot.composite_score > 0.65
        self.scorer.speech_ended()

        self.assertTrue(crossed)
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.AUDIO_SPEECH)
        self.assertTrue(self.flags[0].message.startswith('Speech detected (Confidence: '))

    def test_speech_without_mouth_data_stays_below_flag(self):
        """Lip-sync reads 0.0 with a still mouth; the other terms alone do not reach 0.65."""
        self.calibrate()
        self.scorer.speech_started()
        peak = 0.0
        for _ in range(20):
            snapshot = self.frame(**SPEECH)
            self.assertEqual(snapshot.breakdown['lip_sync_score'], 0.0)
            peak = max(peak, snapshot.composite_score)
        self.scorer.speech_ended()

        self.assertGreater(peak, 0.5)
        self.assertLess(peak, 0.65)
        self.assertEqual(self.flags, [])

    def test_no_scoring_during_calibration_even_when_loud(self):
        snapshots = self.calibrate(**SPEECH)
        for snapshot in snapshots:
            self.assertEqual(snapshot.composite_score, 0.0)
        self.assertEqual(self.flags, [])

    def test_baseline_is_mean_of_window(self):
        self.calibrate()
        baseline = self.scorer.calibrator.baseline
        self.assertAlmostEqual(baseline.get('rms'), 2.0)
        self.assertAlmostEqual(baseline.get('voice_band_ratio'), 0.1)
        self.assertAlmostEqual(baseline.get('spectral_flatness'), 0.8)

    def test_calibration_progress_reported(self):
        self.scorer.start()
        self.clock.advance(2500)
        snapshot = self.frame(**SILENCE)
        self.assertTrue(snapshot.is_calibrating)
        self.assertAlmostEqual(snapshot.calibration_progress, 0.5)

    def test_first_frame_auto_starts_calibration(self):
        snapshot = self.frame(**SILENCE)
        self.assertIsNotNone(snapshot)
        self.assertTrue(self.scorer.is_calibrating)
        self.assertEqual(self.scorer.calibrator.start_time_ms, 0)

    def test_adaptive_threshold(self):
        self.assertEqual(self.scorer.adaptive_threshold(), 0.5)
        self.calibrate()
        # 0.5 - 0.15 + 2 / 50 * 0.2
        self.assertAlmostEqual(self.scorer.adaptive_threshold(), 0.358)

    def test_adaptive_threshold_floor(self):
        settings = AudioConfig(calibration_margin=0.4)
        scorer = AudioRiskScorer(settings, clock=self.clock)
        scorer.start()
        self.clock.advance(5000)
        scorer.process_frame(AudioFeatureSample(timestamp_ms=5000, rms=0.0))
        self.assertEqual(scorer.adaptive_threshold(), 0.3)


class TestScoring(AudioTestCase):

    def test_near_field_uses_partial_baseline(self):
        self.calibrate()
        sample = AudioFeatureSample(timestamp_ms=0, rms=26.0, voice_band_ratio=0.33, spectral_flatness=0.5)
        # (26 - 1) / 50 * 0.4 + (0.33 - 0.03) * 1.5 * 0.35 + 0.5 * 0.25
        self.assertAlmostEqual(self.scorer._near_field_raw(sample), 0.2 + 0.1575 + 0.125)

    def test_below_gate_decays_without_flags(self):
        self.calibrate()
        self.sink.publish(0.4, 0.0, self.clock.now_ms())
        peak = self.frame(**SPEECH).composite_score
        self.flags.clear()

        previous = peak
        for _ in range(10):
            snapshot = self.frame(**SILENCE)
            self.assertLess(snapshot.composite_score, previous)
            self.assertEqual(snapshot.breakdown['speech_score'], 0.0)
            previous = snapshot.composite_score
        self.assertEqual(self.flags, [])

    def test_lip_sync_without_mouth_data(self):
        self.calibrate()
        snapshot = self.frame(**SPEECH)
        self.assertEqual(snapshot.breakdown['lip_sync_score'], 0.0)
        self.assertEqual(snapshot.breakdown['mouth_openness'], 0.0)

    def test_lip_sync_with_moving_mouth(self):
        self.calibrate()
        self.sink.publish(0.1, 0.1, self.clock.now_ms())
        snapshot = self.frame(**SPEECH)
        self.assertEqual(snapshot.breakdown['lip_sync_score'], 1.0)

    def test_lip_sync_ambiguous(self):
        self.calibrate()
        self.sink.publish(0.1, 0.03, self.clock.now_ms())
        snapshot = self.frame(**SPEECH)
        self.assertEqual(snapshot.breakdown['lip_sync_score'], 0.5)

    def test_duration_follows_segment(self):
        self.calibrate()
        self.scorer.speech_started()
        for _ in range(30):
            snapshot = self.frame(**SPEECH)
        self.assertAlmostEqual(snapshot.breakdown['speech_duration_ms'], 2900)
        self.assertGreater(snapshot.breakdown['duration_score'], 0.0)

        self.scorer.speech_ended()
        snapshot = self.frame(**SPEECH)
        self.assertEqual(snapshot.breakdown['speech_duration_ms'], 0.0)


class TestSpeechEvents(AudioTestCase):

    def test_short_segment_not_counted(self):
        self.calibrate()
        self.scorer.speech_started()
        self.clock.advance(1000)
        self.scorer.speech_ended()
        self.assertEqual(len(self.scorer.speech_events), 0)

    def test_repetition_window_eviction(self):
        self.calibrate()
        self.clock.set(5000)
        self.scorer.speech_started()
        self.clock.set(7000)
        self.scorer.speech_ended()
        self.assertEqual(len(self.scorer.speech_events), 1)

        self.clock.set(7000 + 600001)
        snapshot = self.frame(**SPEECH)
        self.assertEqual(snapshot.breakdown['repetition_score'], 0.0)

    def test_repetition_counts_inside_window(self):
        self.calibrate()
        self.clock.set(5000)
        self.scorer.speech_started()
        self.clock.set(7000)
        self.scorer.speech_ended()

        self.clock.set(7000 + 599999)
        snapshot = self.frame(**SPEECH)
        self.assertAlmostEqual(snapshot.breakdown['repetition_score'], 0.2)


class TestLifecycle(AudioTestCase):

    def test_frames_after_stop_are_discarded(self):
        self.calibrate()
        self.scorer.stop()
        self.assertIsNone(self.frame(**SPEECH))
        self.assertEqual(self.scorer.score, 0.0)

    def test_microphone_failure(self):
        snapshot = self.scorer.report_device_failure("permission denied")
        self.assertFalse(snapshot.device_ok)
        self.assertEqual(len(self.flags), 1)
        self.assertEqual(self.flags[0].type, FlagType.DEVICE_ERROR)
        self.assertEqual(self.flags[0].severity, 'medium')
        self.assertEqual(self.flags[0].message, 'Microphone unavailable - permission denied')

    def test_no_device_flag_after_stop(self):
        self.scorer.start()
        self.scorer.stop()
        self.scorer.report_device_failure("unplugged")
        self.assertEqual(self.flags, [])

    def test_state_summary(self):
        self.calibrate()
        summary = self.scorer.get_state_summary()
        self.assertFalse(summary['is_calibrating'])
        self.assertEqual(summary['calibration_progress'], 1.0)
        self.assertAlmostEqual(summary['baseline']['rms'], 2.0)


if __name__ == '__main__':
    unittest.main()
