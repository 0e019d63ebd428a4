"""
Logging utilities for the proctoring risk engine.
"""

import logging
import sys
import time
import traceback
from datetime import datetime
from typing import Optional, Dict, Any
from pathlib import Path

from .config import config


class ProctorLogger:
    """Custom logger for the proctoring risk engine."""

    def __init__(self, name: str = "proctor_risk", log_file: Optional[str] = None):
        """Initialize the logger."""
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)
        # Module loggers sit under "proctor_risk" and carry their own handlers
        self.logger.propagate = False

        # Prevent duplicate handlers
        if self.logger.handlers:
            return

        detailed_formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
        )
        simple_formatter = logging.Formatter(
            '%(asctime)s - %(levelname)s - %(message)s'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, config.logging.console_level.upper(), logging.ERROR))
        console_handler.setFormatter(simple_formatter)
        self.logger.addHandler(console_handler)

        if config.logging.log_to_file:
            if log_file is None:
                logs_dir = Path(config.logging.log_dir)
                logs_dir.mkdir(parents=True, exist_ok=True)

                timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
                log_file = logs_dir / f"proctor_risk_{timestamp}.log"

            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(detailed_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str) -> None:
        """Log debug message."""
        self.logger.debug(message)

    def info(self, message: str) -> None:
        """Log info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log error message."""
        self.logger.error(message)

    def critical(self, message: str) -> None:
        """Log critical message."""
        self.logger.critical(message)

    def log_flag(self, flag_type: str, severity: str, message: str, score: Optional[float] = None) -> None:
        """Log an emitted flag."""
        text = f"Flag - Type: {flag_type}, Severity: {severity}, Message: {message}"
        if score is not None:
            text += f", Score: {score:.3f}"
        self.warning(text)

    def log_flag_suppressed(self, flag_type: str, remaining_ms: float) -> None:
        """Log a flag held back by its debounce window."""
        self.debug(f"Flag suppressed - Type: {flag_type}, Debounce remaining: {remaining_ms:.0f}ms")

    def log_risk_snapshot(self, modality: str, score: float, breakdown: Dict[str, Any]) -> None:
        """Log risk scoring details."""
        parts = ", ".join(
            f"{key}: {value:.3f}" for key, value in breakdown.items()
            if key.endswith('_score') and isinstance(value, float)
        )
        self.debug(f"{modality} risk: {score:.3f} ({parts})")

    def log_calibration(self, modality: str, baseline: Dict[str, float], samples: int) -> None:
        """Log a completed calibration."""
        values = ", ".join(f"{key}={value:.3f}" for key, value in baseline.items())
        self.info(f"{modality} calibration complete: {values} ({samples} samples)")

    def log_identity_check(self, state: str, face_count: int, similarity: Optional[float],
                           spoof_probability: Optional[float]) -> None:
        """Log an identity verification tick."""
        sim = f"{similarity:.3f}" if similarity is not None else "n/a"
        spoof = f"{spoof_probability:.3f}" if spoof_probability is not None else "n/a"
        self.debug(f"Identity check - State: {state}, Faces: {face_count}, "
                   f"Similarity: {sim}, Spoof: {spoof}")

    def log_upload_attempt(self, key: str, success: bool, attempt: int,
                           error: Optional[Exception] = None) -> None:
        """Log an evidence upload attempt."""
        if success:
            self.info(f"Evidence uploaded: {key} (attempt {attempt})")
        else:
            self.error(f"Evidence upload failed: {key} (attempt {attempt}): {error}")

    def log_error_with_context(self, error: Exception, context: str) -> None:
        """Log error with additional context."""
        self.error(f"Error in {context}: {str(error)}")
        if error.__traceback__ is not None:
            self.debug("Traceback: " + "".join(
                traceback.format_exception(type(error), error, error.__traceback__)))


# Global logger instance
logger = ProctorLogger()


def get_logger(name: str = "proctor_risk") -> ProctorLogger:
    """Get a logger instance."""
    return ProctorLogger(name)


def log_performance_metrics(func):
    """Decorator to log performance metrics."""
    def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            result = func(*args, **kwargs)
            processing_time = (time.time() - start_time) * 1000
            logger.debug(f"{func.__name__} took {processing_time:.2f}ms")
            return result
        except Exception as e:
            logger.log_error_with_context(e, func.__name__)
            raise
    wrapper.__name__ = func.__name__
    wrapper.__doc__ = func.__doc__
    return wrapper
