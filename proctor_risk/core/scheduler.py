"""
Periodic tick sources for the modality scorers.
"""

import threading
from typing import Any, Callable, Optional

from .adapters import DeviceUnavailableError
from .models import RiskSnapshot
from ..utils.logger import get_logger

logger = get_logger(__name__)


class TickLoop:
    """
    Calls ``callback`` every ``interval_s`` seconds on a daemon thread.

    ``stop()`` returns only after the thread has exited; once it returns no
    callback is running and none will start.
    """

    def __init__(self, interval_s: float, callback: Callable[[], None], name: str = "tick"):
        self.interval_s = interval_s
        self.callback = callback
        self.name = name
        self.ticks = 0
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"{self.name}-loop", daemon=True)
        self._thread.start()
        logger.info(f"Started {self.name} loop ({self.interval_s * 1000:.0f}ms)")

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            with self._tick_lock:
                # Cancelled while waiting for the lock
                if self._stop_event.is_set():
                    break
                self.ticks += 1
                self.callback()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        # Waits out an in-flight tick.
        with self._tick_lock:
            pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info(f"Stopped {self.name} loop")


class ModalityMonitor:
    """
    Binds a sample source, a scorer and a release hook to one ``TickLoop``.

    A ``DeviceUnavailableError`` from the source is routed to
    ``on_device_failure``; other errors are logged and the loop keeps going.
    """

    def __init__(self, name: str, source: Callable[[], Any],
                 process: Callable[[Any], Optional[RiskSnapshot]],
                 on_device_failure: Callable[[str], Optional[RiskSnapshot]],
                 interval_s: float,
                 on_snapshot: Optional[Callable[[RiskSnapshot], None]] = None,
                 release: Optional[Callable[[], None]] = None):
        self.name = name
        self.source = source
        self.process = process
        self.on_device_failure = on_device_failure
        self.on_snapshot = on_snapshot
        self.release = release
        self.loop = TickLoop(interval_s, self.run_once, name=name)

    def run_once(self) -> Optional[RiskSnapshot]:
        try:
            sample = self.source()
            if sample is None:
                return None
            snapshot = self.process(sample)
        except DeviceUnavailableError as e:
            logger.warning(f"{self.name}: {e}")
            snapshot = self.on_device_failure(str(e))
        except Exception as e:
            logger.log_error_with_context(e, f"{self.name} tick")
            return None

        if snapshot is not None and self.on_snapshot is not None:
            try:
                self.on_snapshot(snapshot)
            except Exception as e:
                logger.log_error_with_context(e, f"{self.name} snapshot consumer")
        return snapshot

    def start(self) -> None:
        self.loop.start()

    def stop(self) -> None:
        self.loop.stop()
        if self.release is not None:
            self.release()
