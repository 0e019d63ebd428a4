#!/usr/bin/env python3
"""
Main entry point for the proctoring risk engine.
Runs a live session from a webcam and prints flags as they are raised.
"""

import os
import warnings

# Suppress warnings unless verbose mode
os.environ['TF_CPP_MIN_LOG_LEVEL'] = '3'
warnings.filterwarnings('ignore')

import argparse
import sys
import threading
import time
import uuid

import cv2
import numpy as np

from proctor_risk.core.face_mesh import FaceMeshDetector
from proctor_risk.core.adapters import create_face_analyzer
from proctor_risk.core.flags import severity_tier
from proctor_risk.core.session import ProctoringSession
from proctor_risk.core.vision_features import LandmarkFeatureExtractor
from proctor_risk.utils.config import config, DEFAULT_CONFIG_FILE
from proctor_risk.utils.storage import HttpEvidenceStorage, LocalEvidenceStorage


def parse_arguments():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Proctoring behavioral risk engine")

    parser.add_argument("--camera", "-c", type=int, default=config.camera.device_id,
                        help="Camera device index (default: 0)")
    parser.add_argument("--width", "-w", type=int, default=config.camera.width,
                        help="Frame width (default: 640)")
    parser.add_argument("--height", type=int, default=config.camera.height,
                        help="Frame height (default: 480)")
    parser.add_argument("--config", type=str, default=DEFAULT_CONFIG_FILE,
                        help="JSON configuration file")
    parser.add_argument("--session-id", type=str, default="",
                        help="Session ID (default: random)")
    parser.add_argument("--evidence-dir", type=str, default=config.evidence.storage_dir,
                        help="Local directory for evidence clips")
    parser.add_argument("--evidence-url", type=str, default="",
                        help="Evidence service base URL (overrides --evidence-dir)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Print every vision snapshot")
    parser.add_argument("--no-display", action="store_true",
                        help="Disable video display (headless mode)")

    return parser.parse_args()


def initialize_camera(camera_index: int, width: int, height: int):
    """Initialize camera capture."""
    print(f"Initializing camera (device: {camera_index})...")
    cap = cv2.VideoCapture(camera_index)
    if not cap.isOpened():
        print(f"✗ Error: Could not open camera {camera_index}")
        return None

    cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

    actual_width = cap.get(cv2.CAP_PROP_FRAME_WIDTH)
    actual_height = cap.get(cv2.CAP_PROP_FRAME_HEIGHT)
    print(f"✓ Camera initialized: {actual_width:.0f}x{actual_height:.0f}")
    return cap


def print_flag(flag):
    """Print a flag as soon as it is raised."""
    tier = severity_tier(flag.severity)
    print(f"[{tier:6s}] {flag.type}: {flag.message}")


def draw_overlay(frame: np.ndarray, session: ProctoringSession) -> np.ndarray:
    """Draw the vision score and identity state on the frame."""
    snapshot = session.snapshots.get('vision')
    score = snapshot.composite_score if snapshot else 0.0
    color = (0, 0, 255) if score > config.vision.flag_threshold else (0, 255, 0)

    cv2.rectangle(frame, (10, 10), (300, 90), (0, 0, 0), -1)
    cv2.putText(frame, f"Vision risk: {score:.2f}", (20, 40),
                cv2.FONT_HERSHEY_SIMPLEX, 0.6, color, 2)
    cv2.putText(frame, f"Identity: {session.identity.state.value}", (20, 70),
                cv2.FONT_HERSHEY_SIMPLEX, 0.6, (255, 255, 255), 1)
    return frame


def main():
    """Main function."""
    args = parse_arguments()

    if args.config and os.path.exists(args.config):
        config.load_from_file(args.config)
    if not config.validate_config():
        sys.exit(1)

    session_id = args.session_id or uuid.uuid4().hex
    storage = (HttpEvidenceStorage(args.evidence_url) if args.evidence_url
               else LocalEvidenceStorage(args.evidence_dir))

    print("=" * 60)
    print("Proctoring Risk Engine")
    print("=" * 60)
    print(f"Camera: {args.camera}")
    print(f"Resolution: {args.width}x{args.height}")
    print(f"Vision rate: {config.vision.target_fps:.0f} Hz")
    print(f"Session ID: {session_id}")
    print(f"Evidence: {args.evidence_url or args.evidence_dir}")
    print("=" * 60)

    cap = initialize_camera(args.camera, args.width, args.height)

    def on_snapshot(snapshot):
        if args.verbose and snapshot.modality == 'vision':
            print(f"vision {snapshot.composite_score:.2f} | "
                  f"gaze {snapshot.breakdown.get('gaze_score', 0):.2f} "
                  f"pose {snapshot.breakdown.get('pose_score', 0):.2f} "
                  f"lip {snapshot.breakdown.get('lip_score', 0):.2f}")

    analyzer = create_face_analyzer(config.identity.analyzer_backend)
    session = ProctoringSession(session_id, storage=storage, analyzer=analyzer,
                                on_flag=print_flag, on_snapshot=on_snapshot,
                                on_resolved=lambda flag_id: print(f"[RESOLVED] {flag_id}"))
    # No registered centroid on the command line
    session.identity.load_reference(None)

    if cap is None:
        session.report_device_failure_vision("could not open camera")
        session.stop()
        sys.exit(1)

    detector = FaceMeshDetector(max_num_faces=2)
    extractor = LandmarkFeatureExtractor(config.vision.smoothing_alpha)

    latest_frame = {'frame': None}
    frame_lock = threading.Lock()

    def identity_source():
        with frame_lock:
            frame = latest_frame['frame']
        return None if frame is None else frame.copy()

    session.attach_source('identity', identity_source)
    session.start()

    frame_interval = 1.0 / config.vision.target_fps
    chunk_interval = config.evidence.chunk_interval_ms / 1000.0
    last_chunk = 0.0

    print("\nStarting monitoring... press 'q' to quit\n")

    try:
        while True:
            tick_start = time.time()
            ret, frame = cap.read()
            if not ret:
                session.report_device_failure_vision("could not read frame")
                time.sleep(frame_interval)
                continue

            with frame_lock:
                latest_frame['frame'] = frame

            faces = detector.process(frame)
            session.process_vision(extractor.extract([lm[:, :2] for lm in faces]))

            if tick_start - last_chunk >= chunk_interval:
                ok, encoded = cv2.imencode('.jpg', frame)
                if ok:
                    session.add_evidence_chunk(encoded.tobytes())
                last_chunk = tick_start

            if not args.no_display:
                cv2.imshow("Proctoring Risk Engine", draw_overlay(frame, session))
                if cv2.waitKey(1) & 0xFF == ord('q'):
                    break

            elapsed = time.time() - tick_start
            if elapsed < frame_interval:
                time.sleep(frame_interval - elapsed)

    except KeyboardInterrupt:
        print("\nMonitoring interrupted by user")
    finally:
        session.stop()
        detector.close()
        cap.release()
        if not args.no_display:
            cv2.destroyAllWindows()

        if session.upload_queue is not None:
            print("Waiting for evidence uploads...")
            session.upload_queue.wait_until_idle(timeout=30)
            session.upload_queue.stop()

        print("\n" + "=" * 60)
        print(f"Session {session_id} finished: {len(session.flags)} flag(s)")
        for flag in session.flags:
            print(f"  {flag.type:24s} {flag.severity:6s} {flag.message}"
                  + (f" -> {flag.evidence_ref}" if flag.evidence_ref else ""))
        print("=" * 60)


if __name__ == "__main__":
    main()
