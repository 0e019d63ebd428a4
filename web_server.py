#!/usr/bin/env python3
"""
Flask web server for the proctoring risk engine.

External feature adapters (browser landmark models, VAD, recorders) post
per-tick features here; each exam session gets its own ProctoringSession
and its flags and snapshots can be polled back.
"""

import argparse
import base64
import binascii
import threading
import uuid

from flask import Flask, request, jsonify

from proctor_risk.core.flags import severity_tier
from proctor_risk.core.models import AudioFeatureSample, IdentitySample, VisionFeatureSample
from proctor_risk.core.session import ProctoringSession
from proctor_risk.utils.config import config
from proctor_risk.utils.storage import HttpEvidenceStorage, LocalEvidenceStorage

app = Flask(__name__)

# Active sessions by id
sessions = {}
sessions_lock = threading.Lock()

# Evidence backend shared by new sessions; None disables uploads
evidence_storage = None


def configure_storage(storage):
    """Set the evidence backend used by sessions created afterwards."""
    global evidence_storage
    evidence_storage = storage


def get_session(session_id):
    with sessions_lock:
        return sessions.get(session_id)


def require_json():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError('Expected a JSON object body')
    return data


def number(data, key, default=None):
    value = data.get(key, default)
    if value is None:
        raise ValueError(f"Missing field '{key}'")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Field '{key}' must be a number")
    return value


def parse_vision_sample(data, timestamp_ms):
    return VisionFeatureSample(
        timestamp_ms=timestamp_ms,
        face_count=int(number(data, 'face_count', 1)),
        gaze_h=float(number(data, 'gaze_h', 0.5)),
        gaze_v=float(number(data, 'gaze_v', 0.0)),
        yaw=float(number(data, 'yaw', 0.0)),
        pitch=float(number(data, 'pitch', 0.0)),
        mouth_aspect_ratio=float(number(data, 'mouth_aspect_ratio', 0.0)),
    )


def parse_audio_sample(data, timestamp_ms):
    return AudioFeatureSample(
        timestamp_ms=timestamp_ms,
        vad_probability=float(number(data, 'vad_probability')),
        rms=float(number(data, 'rms', 0.0)),
        voice_band_ratio=float(number(data, 'voice_band_ratio', 0.0)),
        spectral_flatness=float(number(data, 'spectral_flatness', 1.0)),
    )


def parse_identity_sample(data):
    embedding = data.get('embedding')
    if embedding is not None and not isinstance(embedding, list):
        raise ValueError("Field 'embedding' must be a list of numbers")
    similarity = data.get('similarity')
    spoof = data.get('spoof_probability')
    return IdentitySample(
        face_count=int(number(data, 'face_count')),
        embedding=embedding,
        similarity=float(similarity) if similarity is not None else None,
        spoof_probability=float(spoof) if spoof is not None else None,
        face_score=float(number(data, 'face_score', 1.0)),
    )


def flag_to_json(flag):
    result = flag.to_dict()
    result['tier'] = severity_tier(flag.severity)
    return result


@app.errorhandler(ValueError)
def handle_bad_payload(e):
    return jsonify({'error': str(e)}), 400


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    with sessions_lock:
        active = len(sessions)
    return jsonify({
        'status': 'healthy',
        'active_sessions': active,
        'evidence_storage': type(evidence_storage).__name__ if evidence_storage else None,
    })


@app.route('/sessions', methods=['POST'])
def create_session():
    """Create a session; optional body {session_id, reference: {centroid, embedding_version}}."""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValueError('Expected a JSON object body')

    session_id = str(data.get('session_id') or uuid.uuid4().hex)
    with sessions_lock:
        if session_id in sessions:
            return jsonify({'error': f'Session {session_id} already exists'}), 409

    session = ProctoringSession(session_id, storage=evidence_storage)

    reference = data.get('reference')
    if reference is not None:
        if not isinstance(reference, dict) or not isinstance(reference.get('centroid'), list):
            raise ValueError("Field 'reference' must be {centroid: [...], embedding_version: str}")
        session.identity.load_reference(reference['centroid'], reference.get('embedding_version'))
    else:
        session.identity.load_reference(None)

    session.start()
    with sessions_lock:
        # Re-checked: a concurrent request may have registered the id meanwhile
        duplicate = session_id in sessions
        if not duplicate:
            sessions[session_id] = session
    if duplicate:
        session.stop()
        return jsonify({'error': f'Session {session_id} already exists'}), 409

    app.logger.info(f"Session {session_id} started")
    return jsonify({'success': True, 'session_id': session_id}), 201


@app.route('/sessions/<session_id>/vision', methods=['POST'])
def post_vision(session_id):
    """Score one vision frame, or report a camera failure with {device_error}."""
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404
    data = require_json()

    if data.get('device_error'):
        snapshot = session.report_device_failure_vision(str(data['device_error']))
    else:
        snapshot = session.process_vision(parse_vision_sample(data, session.clock.now_ms()))

    return jsonify({'success': True, 'snapshot': snapshot.to_dict() if snapshot else None})


@app.route('/sessions/<session_id>/audio', methods=['POST'])
def post_audio(session_id):
    """Score one VAD frame, or report a microphone failure with {device_error}."""
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404
    data = require_json()

    if data.get('device_error'):
        snapshot = session.report_device_failure_audio(str(data['device_error']))
    else:
        snapshot = session.process_audio(parse_audio_sample(data, session.clock.now_ms()))

    return jsonify({'success': True, 'snapshot': snapshot.to_dict() if snapshot else None})


@app.route('/sessions/<session_id>/audio/speech', methods=['POST'])
def post_speech_event(session_id):
    """VAD segment boundary: {event: "start" | "end"}."""
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404
    data = require_json()

    event = data.get('event')
    if event == 'start':
        session.speech_started()
    elif event == 'end':
        session.speech_ended()
    else:
        raise ValueError("Field 'event' must be 'start' or 'end'")
    return jsonify({'success': True})


@app.route('/sessions/<session_id>/identity', methods=['POST'])
def post_identity(session_id):
    """Apply one identity observation computed by the client's face models."""
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404
    data = require_json()

    sample = parse_identity_sample(data)
    verifier = session.identity
    decided_by_spoof = (sample.spoof_probability or 0.0) > verifier.settings.spoof_threshold
    if (sample.face_count == 1 and sample.embedding is None and sample.similarity is None
            and not verifier.presence_only and not decided_by_spoof):
        raise ValueError("Field 'embedding' or 'similarity' is required once a reference is loaded")

    state = verifier.apply_observation(sample)
    return jsonify({'success': True, 'state': state.value, 'identity': session.identity.get_status()})


@app.route('/sessions/<session_id>/evidence', methods=['POST'])
def post_evidence(session_id):
    """Append a recorder chunk: raw body bytes or {chunk: base64}."""
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404

    if request.is_json:
        data = require_json()
        try:
            chunk = base64.b64decode(str(data.get('chunk', '')).split(',')[-1], validate=True)
        except (binascii.Error, ValueError):
            raise ValueError("Field 'chunk' must be base64 data")
    else:
        chunk = request.get_data()

    if not chunk:
        raise ValueError('Empty evidence chunk')

    accepted = session.add_evidence_chunk(chunk)
    return jsonify({'success': True, 'accepted': accepted,
                    'evidence': session.evidence.get_queue_status()})


@app.route('/sessions/<session_id>/flags', methods=['GET'])
def get_flags(session_id):
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404
    flags = [flag_to_json(flag) for flag in session.get_flags()]
    return jsonify({'success': True, 'flags': flags, 'resolved': list(session.resolved)})


@app.route('/sessions/<session_id>/snapshot', methods=['GET'])
def get_snapshot(session_id):
    session = get_session(session_id)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404
    return jsonify({'success': True, 'session': session.get_snapshot()})


@app.route('/sessions/<session_id>', methods=['DELETE'])
def delete_session(session_id):
    with sessions_lock:
        session = sessions.pop(session_id, None)
    if session is None:
        return jsonify({'error': 'Unknown session'}), 404

    session.stop()
    app.logger.info(f"Session {session_id} stopped")
    return jsonify({'success': True, 'flag_count': len(session.flags)})


def main():
    parser = argparse.ArgumentParser(description="Proctoring risk engine HTTP API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Port")
    parser.add_argument("--evidence-dir", default=config.evidence.storage_dir,
                        help="Local directory for evidence clips")
    parser.add_argument("--evidence-url", help="Evidence service base URL (overrides --evidence-dir)")
    args = parser.parse_args()

    if args.evidence_url:
        configure_storage(HttpEvidenceStorage(args.evidence_url))
    else:
        configure_storage(LocalEvidenceStorage(args.evidence_dir))

    print(f"Starting proctoring risk engine web server on port {args.port}...")
    print("Available endpoints:")
    print("  GET    /health - Health check")
    print("  POST   /sessions - Create session")
    print("  POST   /sessions/<id>/vision - Vision features")
    print("  POST   /sessions/<id>/audio - Audio features")
    print("  POST   /sessions/<id>/audio/speech - Speech segment start/end")
    print("  POST   /sessions/<id>/identity - Identity observation")
    print("  POST   /sessions/<id>/evidence - Recorder chunk")
    print("  GET    /sessions/<id>/flags - Emitted flags")
    print("  GET    /sessions/<id>/snapshot - Latest snapshots")
    print("  DELETE /sessions/<id> - Stop session")
    app.run(host=args.host, port=args.port, threaded=True)


if __name__ == '__main__':
    main()
