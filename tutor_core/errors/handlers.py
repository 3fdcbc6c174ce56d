# =============================================================================
# tutor_core/errors/handlers.py
# Error Reporting Helpers for Background Work and Shutdown
# =============================================================================

from __future__ import annotations
import logging
import traceback
from typing import Any, Dict, Optional

from tutor_core.logging import get_logger
from .exceptions import TutorCoreError

logger = get_logger(__name__)


def handle_error(
    error: Exception,
    log_error: bool = True,
    user_message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Log an error once, with its code and redacted details.

    Transient errors (network, 5xx, rate limits) are logged at WARNING
    without a traceback; everything else at ERROR with one.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        user_message: Message to log instead of the error's own

    Returns:
        Serializable description of the error (for status displays)
    """
    if isinstance(error, TutorCoreError):
        report = error.to_dict()
    else:
        report = {
            "error_type": error.__class__.__name__,
            "code": "UNKNOWN",
            "message": str(error),
            "details": {"traceback": "".join(traceback.format_exception(error))},
            "recoverable": True,
            "transient": False,
        }
    if user_message:
        report["message"] = user_message

    if log_error:
        level = logging.WARNING if report["transient"] else logging.ERROR
        logger.log(
            level,
            f"[{report['code']}] {report['message']}",
            extra={"details": report["details"]},
            exc_info=None if report["transient"] else error,
        )
    return report


class ErrorContext:
    """
    Runs a block, reporting any failure through handle_error.

    With recoverable=True, recoverable errors are suppressed and kept on
    `.error`; unrecoverable TutorCoreErrors (e.g. a schema mismatch) always
    propagate.

    Usage:
        with ErrorContext("Starting network monitoring") as ctx:
            monitor.start_monitoring()
        if ctx.error:
            ...
    """

    def __init__(self, operation: str, recoverable: bool = True):
        self.operation = operation
        self.recoverable = recoverable
        self.error: Optional[BaseException] = None

    def __enter__(self) -> ErrorContext:
        logger.debug(f"Starting: {self.operation}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_type is None:
            logger.debug(f"Completed: {self.operation}")
            return False
        if not issubclass(exc_type, Exception):
            return False

        self.error = exc_val
        if isinstance(exc_val, TutorCoreError):
            handle_error(exc_val, user_message=f"{self.operation} failed: {exc_val.message}")
            return self.recoverable and exc_val.recoverable
        handle_error(exc_val, user_message=f"Error during: {self.operation}")
        return self.recoverable
