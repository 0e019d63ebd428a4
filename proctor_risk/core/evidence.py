"""
Evidence capture: a rolling buffer of recorded media chunks and a serial,
retrying upload queue.

Chunks arrive once per recorder interval and are kept for the retention
window. When a flag needs evidence, the most recent seconds are cut into a
clip and queued; the queue uploads clips one at a time, links each stored
reference back to its flag and retries failures forever at the tail.
"""

import threading
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Tuple, Any

from .clock import Clock, system_clock
from .models import EvidenceClip, UploadState
from ..utils.config import EvidenceConfig, config
from ..utils.logger import get_logger

logger = get_logger(__name__)

LinkedCallback = Callable[[EvidenceClip], None]


class UploadQueue:
    """
    Single drain loop over pending clips.

    Only one drain runs at a time; clips enqueued mid-drain are picked up by
    the running loop. A failed upload moves the clip to the tail and the loop
    waits ``retry_delay_s`` before the next attempt.
    """

    def __init__(self, storage, retry_delay_s: Optional[float] = None,
                 on_linked: Optional[LinkedCallback] = None, autostart: bool = True):
        self.storage = storage
        self.retry_delay_s = config.evidence.retry_delay_s if retry_delay_s is None else retry_delay_s
        self.on_linked = on_linked
        self.autostart = autostart

        self._items: Deque[EvidenceClip] = deque()
        self._lock = threading.Lock()
        self._draining = False
        self._idle = threading.Event()
        self._idle.set()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self.linked: List[EvidenceClip] = []
        self.failed_attempts = 0

    def enqueue(self, clip: EvidenceClip) -> None:
        with self._lock:
            clip.upload_state = UploadState.QUEUED
            self._items.append(clip)
            self._idle.clear()
            start_worker = self.autostart and not self._draining and not self._stop_event.is_set()
            if start_worker:
                self._draining = True
        logger.debug(f"Evidence clip queued: {clip.media_ref}")

        if start_worker:
            self._worker = threading.Thread(target=self._drain, name="evidence-upload", daemon=True)
            self._worker.start()

    def process_queue(self) -> int:
        """
        Drain the queue on the calling thread.

        Returns the number of clips linked, or 0 immediately when another
        drain is already in flight.
        """
        with self._lock:
            if self._draining:
                return 0
            self._draining = True
        return self._drain()

    def _drain(self) -> int:
        linked = 0
        finished = False
        try:
            while not self._stop_event.is_set():
                with self._lock:
                    if not self._items:
                        # Released together with the empty check so a
                        # concurrent enqueue starts a fresh drain.
                        self._draining = False
                        self._idle.set()
                        finished = True
                        break
                    item = self._items[0]
                    item.upload_state = UploadState.UPLOADING
                    item.attempts += 1

                if self._upload(item):
                    with self._lock:
                        self._items.popleft()
                    linked += 1
                    self.linked.append(item)
                    self._notify_linked(item)
                else:
                    with self._lock:
                        self._items.rotate(-1)
                    self._stop_event.wait(self.retry_delay_s)
        finally:
            if not finished:
                with self._lock:
                    self._draining = False
                    if not self._items:
                        self._idle.set()
        return linked

    def _notify_linked(self, item: EvidenceClip) -> None:
        if self.on_linked is None:
            return
        try:
            self.on_linked(item)
        except Exception as e:
            logger.log_error_with_context(e, f"evidence linked callback for {item.media_ref}")

    def _upload(self, item: EvidenceClip) -> bool:
        try:
            ref = self.storage.upload(item.data, item.media_ref, item.content_type)
            self.storage.link(item.flag_id, ref)
        except Exception as e:
            item.upload_state = UploadState.FAILED
            self.failed_attempts += 1
            logger.log_upload_attempt(item.media_ref, False, item.attempts, str(e))
            return False

        item.stored_ref = ref
        item.upload_state = UploadState.LINKED
        logger.log_upload_attempt(item.media_ref, True, item.attempts)
        return True

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        return self._idle.wait(timeout)

    def pending(self) -> List[EvidenceClip]:
        with self._lock:
            return list(self._items)

    def stop(self, timeout: Optional[float] = 1.0) -> None:
        """Stop draining; pending clips stay queued."""
        self._stop_event.set()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class EvidenceBuffer:
    """
    Rolling buffer of (chunk, timestamp) pairs.

    Append, prune and extract share one lock, so a clip never sees a
    partially pruned buffer. A chunk's timestamp marks the end of the
    interval it covers; a clip of ``n`` seconds holds the chunks stamped
    inside ``(now - n, now]``.
    """

    def __init__(self, upload_queue: Optional[UploadQueue] = None,
                 settings: Optional[EvidenceConfig] = None,
                 clock: Optional[Clock] = None,
                 timer_factory: Callable[..., Any] = threading.Timer):
        self.settings = settings or config.evidence
        self.clock = clock or system_clock
        self.upload_queue = upload_queue
        self.timer_factory = timer_factory

        self._chunks: Deque[Tuple[bytes, float]] = deque()
        self._lock = threading.Lock()
        self._clear_timer = None
        self.is_recording = False

    def start(self) -> None:
        with self._lock:
            if self._clear_timer is not None:
                self._clear_timer.cancel()
                self._clear_timer = None
            self.is_recording = True
        logger.info("Evidence recording started")

    def append(self, chunk: bytes, timestamp_ms: Optional[float] = None) -> bool:
        """Add a recorder chunk; ignored when not recording or empty."""
        if not chunk:
            return False
        with self._lock:
            if not self.is_recording:
                return False
            now = self.clock.now_ms() if timestamp_ms is None else timestamp_ms
            self._chunks.append((chunk, now))
            self._prune(now)
        return True

    def _prune(self, now: float) -> None:
        cutoff = now - self.settings.retention_ms
        while self._chunks and self._chunks[0][1] < cutoff:
            self._chunks.popleft()

    def extract_chunks(self, duration_s: float) -> List[Tuple[bytes, float]]:
        """Newest contiguous chunks within the last ``duration_s`` seconds, oldest first."""
        with self._lock:
            cutoff = self.clock.now_ms() - duration_s * 1000.0
            selected = []
            for chunk, ts in reversed(self._chunks):
                if ts <= cutoff:
                    break
                selected.append((chunk, ts))
        selected.reverse()
        return selected

    def extract_clip(self, duration_s: Optional[float] = None) -> Optional[bytes]:
        chunks = self.extract_chunks(self.settings.clip_duration_s if duration_s is None else duration_s)
        if not chunks:
            return None
        return b''.join(chunk for chunk, _ in chunks)

    def capture_for_flag(self, session_id: str, flag_id: str,
                         duration_s: Optional[float] = None) -> Optional[str]:
        """Cut a clip for ``flag_id`` and queue it; returns the media key or None."""
        clip = self.extract_clip(duration_s)
        if clip is None:
            logger.warning("No video data available for evidence")
            return None

        key = f"{session_id}/{flag_id}_{int(self.clock.now_ms())}.webm"
        item = EvidenceClip(session_id=session_id, flag_id=flag_id, media_ref=key,
                            data=clip, content_type=self.settings.content_type)
        if self.upload_queue is not None:
            self.upload_queue.enqueue(item)
        return key

    def stop(self) -> None:
        """
        Stop recording now; keep the buffer for the grace period so flags
        raised during shutdown can still extract evidence.
        """
        with self._lock:
            if not self.is_recording:
                return
            self.is_recording = False
            timer = self.timer_factory(self.settings.stop_grace_ms / 1000.0, self.clear)
            timer.daemon = True
            self._clear_timer = timer
        timer.start()
        logger.info("Evidence recording stopped")

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._clear_timer = None

    def get_queue_status(self) -> Dict[str, Any]:
        with self._lock:
            buffer_size = len(self._chunks)
        return {
            'pending': len(self.upload_queue) if self.upload_queue is not None else 0,
            'buffer_size': buffer_size,
            'is_recording': self.is_recording,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)
