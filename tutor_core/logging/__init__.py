# =============================================================================
# tutor_core/logging/__init__.py
# Logging Setup for tutor_core
# =============================================================================

from .config import setup_logging, get_logger, LogContext, CredentialFilter

__all__ = ["setup_logging", "get_logger", "LogContext", "CredentialFilter"]
