# =============================================================================
# tutor_core/errors/__init__.py
# Centralized Error Handling for the offline tutor core
# =============================================================================

from .exceptions import (
    TutorCoreError,
    StorageError,
    StorageErrorKind,
    NetworkError,
    NetworkErrorKind,
    RemoteServiceError,
    RemoteErrorKind,
    ProgressError,
    RequestCancelled,
    ConfigurationError,
    redact_details,
)

from .handlers import (
    handle_error,
    ErrorContext,
)

__all__ = [
    # Exceptions
    "TutorCoreError",
    "StorageError",
    "StorageErrorKind",
    "NetworkError",
    "NetworkErrorKind",
    "RemoteServiceError",
    "RemoteErrorKind",
    "ProgressError",
    "RequestCancelled",
    "ConfigurationError",
    "redact_details",
    # Handlers
    "handle_error",
    "ErrorContext",
]
