# =============================================================================
# tutor_core/logging/config.py
# Logging Configuration for the Offline Tutor Engine
# =============================================================================

import logging
import re
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Iterable, Optional, Union


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_DIR = Path("logs")

# Chatty HTTP stack loggers, kept at WARNING
NOISY_LOGGERS = ("urllib3", "requests", "charset_normalizer")

_SECRET_PATTERNS = (
    re.compile(r"(Bearer\s+)[^\s'\"]+", re.IGNORECASE),
    re.compile(r"((?:api_key|apikey|token|secret|password)=)[^&\s'\"]+", re.IGNORECASE),
)


class CredentialFilter(logging.Filter):
    """Masks bearer tokens and credential query parameters in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = message
        for pattern in _SECRET_PATTERNS:
            masked = pattern.sub(r"\1***", masked)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: Union[int, str] = logging.INFO,
    log_to_file: bool = True,
    log_filename: Optional[str] = None,
    log_dir: Optional[Path] = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """
    Configure logging for a host application embedding tutor_core.

    Args:
        level: Logging level, as a number or a name such as "DEBUG"
        log_to_file: Whether to also write a daily log file
        log_filename: Custom log filename (default: tutor_YYYY-MM-DD.log)
        log_dir: Directory for log files (default: ./logs)
        quiet_loggers: Third-party loggers lowered to WARNING
    """
    if isinstance(level, str):
        name = level
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {name}")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_to_file:
        target_dir = log_dir or LOG_DIR
        target_dir.mkdir(parents=True, exist_ok=True)
        if log_filename is None:
            log_filename = f"tutor_{datetime.now().strftime('%Y-%m-%d')}.log"
        handlers.append(logging.FileHandler(target_dir / log_filename, encoding="utf-8"))

    credential_filter = CredentialFilter()
    for handler in handlers:
        handler.addFilter(credential_filter)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("tutor_core").info(f"Logging initialized at {logging.getLevelName(level)}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a tutor_core module.

    Usage:
        from tutor_core.logging import get_logger
        logger = get_logger(__name__)
    """
    return logging.getLogger(name)


class LogContext:
    """
    Logs start, end and duration of an operation.

    Usage:
        with LogContext(logger, "Prefetching 3 tutorials"):
            ...
        # "Prefetching 3 tutorials... started"
        # "Prefetching 3 tutorials... completed (0.42s)"

    Failures are logged at ERROR with the traceback and re-raised.
    """

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.INFO):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.elapsed: Optional[float] = None
        self._started: Optional[float] = None

    def __enter__(self) -> "LogContext":
        self._started = time.perf_counter()
        self.logger.log(self.level, f"{self.operation}... started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed = time.perf_counter() - self._started
        if exc_type is None:
            self.logger.log(self.level, f"{self.operation}... completed ({self.elapsed:.2f}s)")
        else:
            self.logger.error(f"{self.operation}... failed ({self.elapsed:.2f}s): {exc_val}", exc_info=True)
        return False
