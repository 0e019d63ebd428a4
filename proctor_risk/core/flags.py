"""
Flag emission and debounce policy.

Every flag type keeps its own last-emission time. A new emission of the same
type inside that type's debounce window is suppressed; other types are
unaffected. Severity collapses to two tiers for external consumers.
"""

import threading
from typing import Callable, Dict, Optional, Any

from .clock import Clock, system_clock
from .models import Flag, SEVERITIES, FlagType
from ..utils.config import config
from ..utils.logger import get_logger

logger = get_logger(__name__)

FlagSink = Callable[[Flag], None]


def severity_tier(severity: str, tiers: Optional[Dict[str, str]] = None) -> str:
    """Map low/medium/high to the two external tiers (ORANGE/RED by default)."""
    tiers = tiers or config.flags.severity_tiers
    return tiers.get(severity, tiers.get('medium', 'ORANGE'))


class FlagDebouncer:
    """Per-type debounce clocks."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or system_clock
        self._last_emission: Dict[str, float] = {}
        self._lock = threading.Lock()

    def try_acquire(self, flag_type: str, debounce_ms: float) -> bool:
        """Record an emission for ``flag_type`` unless its window is still open."""
        now = self.clock.now_ms()
        with self._lock:
            last = self._last_emission.get(flag_type)
            if last is not None and now - last < debounce_ms:
                logger.log_flag_suppressed(flag_type, debounce_ms - (now - last))
                return False
            self._last_emission[flag_type] = now
            return True

    def last_emission(self, flag_type: str) -> Optional[float]:
        return self._last_emission.get(flag_type)

    def reset(self) -> None:
        with self._lock:
            self._last_emission.clear()


class FlagEmitter:
    """Builds flags, applies the debounce policy and hands them to a sink."""

    def __init__(self, source: str, sink: Optional[FlagSink] = None,
                 clock: Optional[Clock] = None,
                 device_debouncer: Optional[FlagDebouncer] = None):
        """
        Args:
            source: Component name stamped on every flag
            sink: Callback receiving emitted flags; its errors are logged
            clock: Time source for the debounce clocks
            device_debouncer: Debouncer shared with other emitters of the
                same session for DEVICE_ERROR flags
        """
        self.source = source
        self.sink = sink
        self.clock = clock or system_clock
        self.debouncer = FlagDebouncer(self.clock)
        self.device_debouncer = device_debouncer or self.debouncer
        self.emitted_count = 0

    def emit(self, flag_type: str, message: str, severity: str, debounce_ms: float,
             score: Optional[float] = None, details: Optional[Dict[str, Any]] = None,
             debouncer: Optional[FlagDebouncer] = None,
             debounce_key: Optional[str] = None) -> Optional[Flag]:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")

        debouncer = debouncer or self.debouncer
        if not debouncer.try_acquire(debounce_key or flag_type, debounce_ms):
            return None

        flag = Flag(
            type=flag_type,
            severity=severity,
            message=message,
            timestamp_ms=self.clock.now_ms(),
            source=self.source,
            score=score,
            details=details or {},
        )
        self.emitted_count += 1
        logger.log_flag(flag.type, flag.severity, flag.message, score)

        if self.sink is not None:
            try:
                self.sink(flag)
            except Exception as e:
                logger.log_error_with_context(e, f"{self.source} flag sink ({flag.type})")
        return flag

    def emit_device_error(self, device: str, reason: str, severity: str) -> Optional[Flag]:
        # One debounce clock per device, shared across the session's emitters
        return self.emit(
            FlagType.DEVICE_ERROR,
            f"{device.capitalize()} unavailable - {reason}",
            severity,
            config.flags.device_error_debounce_ms,
            details={'device': device},
            debouncer=self.device_debouncer,
            debounce_key=f"{FlagType.DEVICE_ERROR}:{device}",
        )

    def reset(self) -> None:
        self.debouncer.reset()
