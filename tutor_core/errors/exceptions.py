# =============================================================================
# tutor_core/errors/exceptions.py
# Custom Exception Hierarchy for the offline tutor core
# =============================================================================

from enum import Enum
from typing import Optional, Dict, Any
from urllib.parse import urlsplit, urlunsplit


# Detail keys whose values never leave the process
SENSITIVE_KEYS = ("api_key", "token", "secret", "password", "authorization")


def redact_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential-like values and strip query strings from URLs."""
    clean: Dict[str, Any] = {}
    for key, value in details.items():
        lowered = key.lower()
        if any(marker in lowered for marker in SENSITIVE_KEYS):
            clean[key] = "***"
        elif isinstance(value, str) and value.startswith(("http://", "https://")):
            parts = urlsplit(value)
            clean[key] = urlunsplit((parts.scheme, parts.hostname or "", parts.path, "", ""))
        else:
            clean[key] = value
    return clean


class TutorCoreError(Exception):
    """
    Base exception for all tutor core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "STORE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "TUTOR_000"
        self.details = redact_details(details or {})
        self.recoverable = recoverable

    @property
    def transient(self) -> bool:
        """Whether the retry policy may try the operation again."""
        return False

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "transient": self.transient,
        }


# =============================================================================
# STORAGE EXCEPTIONS
# =============================================================================

class StorageErrorKind(Enum):
    """Failure classes of the local persistent store."""
    QUOTA_EXCEEDED = "quota_exceeded"
    CORRUPT = "corrupt"
    SCHEMA_MISMATCH = "schema_mismatch"


class StorageError(TutorCoreError):
    """Raised when the local store cannot serve an operation. Never retried."""

    CODES = {
        StorageErrorKind.QUOTA_EXCEEDED: "STORE_001",
        StorageErrorKind.CORRUPT: "STORE_002",
        StorageErrorKind.SCHEMA_MISMATCH: "STORE_003",
    }

    def __init__(
        self,
        message: str,
        kind: StorageErrorKind,
        entity_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["kind"] = kind.value
        if entity_id is not None:
            details["entity_id"] = entity_id
        if operation:
            details["operation"] = operation

        # A broken schema takes the whole store down
        recoverable = kwargs.pop("recoverable", kind != StorageErrorKind.SCHEMA_MISMATCH)

        super().__init__(
            message=message,
            code=self.CODES[kind],
            details=details,
            recoverable=recoverable,
            **kwargs,
        )
        self.kind = kind
        self.entity_id = entity_id
        self.operation = operation


# =============================================================================
# NETWORK / REMOTE EXCEPTIONS
# =============================================================================

class NetworkErrorKind(Enum):
    """Transport-level failures."""
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"


class NetworkError(TutorCoreError):
    """Raised when the remote content source cannot be reached in time"""

    def __init__(
        self,
        message: str,
        kind: NetworkErrorKind,
        source: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["kind"] = kind.value
        if source:
            details["source"] = source

        super().__init__(
            message=message,
            code="NET_001" if kind == NetworkErrorKind.TIMEOUT else "NET_002",
            details=details,
            **kwargs,
        )
        self.kind = kind

    @property
    def transient(self) -> bool:
        return True


class RemoteErrorKind(Enum):
    """Failures reported by the remote content source itself."""
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    SERVER_ERROR = "server_error"


class RemoteServiceError(TutorCoreError):
    """Raised when the remote content source answers with an error"""

    CODES = {
        RemoteErrorKind.RATE_LIMITED: "REMOTE_001",
        RemoteErrorKind.INVALID_REQUEST: "REMOTE_002",
        RemoteErrorKind.SERVER_ERROR: "REMOTE_003",
    }

    def __init__(
        self,
        message: str,
        kind: RemoteErrorKind,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        content_key: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        details["kind"] = kind.value
        if status_code is not None:
            details["status_code"] = status_code
        if retry_after is not None:
            details["retry_after"] = retry_after
        if content_key:
            details["content_key"] = content_key

        super().__init__(
            message=message,
            code=self.CODES[kind],
            details=details,
            recoverable=kind != RemoteErrorKind.INVALID_REQUEST,
            **kwargs,
        )
        self.kind = kind
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def transient(self) -> bool:
        return self.kind != RemoteErrorKind.INVALID_REQUEST


# =============================================================================
# DOMAIN EXCEPTIONS
# =============================================================================

class ProgressError(TutorCoreError):
    """Raised when a progress mutation cannot be applied"""

    def __init__(
        self,
        message: str,
        content_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if content_id:
            details["content_id"] = content_id
        if unit_id:
            details["unit_id"] = unit_id

        super().__init__(
            message=message,
            code="PROGRESS_001",
            details=details,
            **kwargs,
        )


class RequestCancelled(TutorCoreError):
    """Raised to a caller that abandoned its request before resolution"""

    def __init__(self, key: str, **kwargs):
        super().__init__(
            message=f"Request for '{key}' was cancelled",
            code="REQ_001",
            details={"key": key},
            **kwargs,
        )
        self.key = key


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(TutorCoreError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )
