# =============================================================================
# tests/unit/test_errors.py
# Unit Tests for the Error Taxonomy and Handlers
# =============================================================================

import logging

import pytest

from tutor_core.errors import (
    ConfigurationError,
    ErrorContext,
    NetworkError,
    NetworkErrorKind,
    ProgressError,
    RemoteErrorKind,
    RemoteServiceError,
    RequestCancelled,
    StorageError,
    StorageErrorKind,
    TutorCoreError,
    handle_error,
    redact_details,
)


class TestRedaction:
    """Test that credentials never reach error details"""

    def test_sensitive_keys_are_masked(self):
        details = redact_details({"api_key": "abc", "Authorization": "Bearer x", "entity_id": "a"})

        assert details == {"api_key": "***", "Authorization": "***", "entity_id": "a"}

    def test_urls_lose_query_and_userinfo(self):
        details = redact_details({"url": "https://user:pw@content.example.com/api/index?token=abc"})

        assert details["url"] == "https://content.example.com/api/index"

    def test_errors_redact_on_construction(self):
        error = RemoteServiceError(
            "boom",
            kind=RemoteErrorKind.SERVER_ERROR,
            details={"token": "abc"},
        )

        assert "abc" not in str(error)


class TestTaxonomy:
    """Test codes and retry classification"""

    @pytest.mark.parametrize("kind,code", [
        (StorageErrorKind.QUOTA_EXCEEDED, "STORE_001"),
        (StorageErrorKind.CORRUPT, "STORE_002"),
        (StorageErrorKind.SCHEMA_MISMATCH, "STORE_003"),
    ])
    def test_storage_codes(self, kind, code):
        error = StorageError("x", kind=kind, entity_id="a", operation="get")

        assert error.code == code
        assert error.transient is False
        assert error.details["entity_id"] == "a"

    def test_schema_mismatch_is_unrecoverable(self):
        assert StorageError("x", kind=StorageErrorKind.SCHEMA_MISMATCH).recoverable is False
        assert StorageError("x", kind=StorageErrorKind.CORRUPT).recoverable is True

    @pytest.mark.parametrize("kind", list(NetworkErrorKind))
    def test_network_errors_are_transient(self, kind):
        assert NetworkError("x", kind=kind).transient is True

    @pytest.mark.parametrize("kind,transient", [
        (RemoteErrorKind.RATE_LIMITED, True),
        (RemoteErrorKind.SERVER_ERROR, True),
        (RemoteErrorKind.INVALID_REQUEST, False),
    ])
    def test_remote_transience(self, kind, transient):
        assert RemoteServiceError("x", kind=kind).transient is transient

    def test_domain_errors(self):
        assert ProgressError("x", content_id="a", unit_id="u").details == {"content_id": "a", "unit_id": "u"}
        assert RequestCancelled("content:a").key == "content:a"
        assert ConfigurationError("x").recoverable is False

    def test_to_dict(self):
        data = NetworkError("timed out", kind=NetworkErrorKind.TIMEOUT, source="api").to_dict()

        assert data["error_type"] == "NetworkError"
        assert data["code"] == "NET_001"
        assert data["transient"] is True


class TestHandlers:
    """Test handle_error and ErrorContext"""

    def test_handle_error_logs(self, caplog):
        with caplog.at_level(logging.ERROR):
            handle_error(ProgressError("cannot save"), user_message="Saving failed")

        assert "[PROGRESS_001] Saving failed" in caplog.text

    def test_context_suppresses_recoverable_errors(self):
        with ErrorContext("probe"):
            raise NetworkError("down", kind=NetworkErrorKind.UNREACHABLE)

    def test_context_propagates_unrecoverable_errors(self):
        with pytest.raises(StorageError):
            with ErrorContext("migrate"):
                raise StorageError("bad schema", kind=StorageErrorKind.SCHEMA_MISMATCH)

    def test_context_not_recoverable(self):
        with pytest.raises(ValueError):
            with ErrorContext("shutdown", recoverable=False):
                raise ValueError("x")

    def test_base_error_defaults(self):
        error = TutorCoreError("plain")

        assert error.code == "TUTOR_000"
        assert str(error) == "[TUTOR_000] plain"

    def test_transient_errors_log_as_warning(self, caplog):
        with caplog.at_level(logging.WARNING):
            report = handle_error(NetworkError("down", kind=NetworkErrorKind.UNREACHABLE))

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert record.exc_info is None
        assert report["code"] == "NET_002"

    def test_report_for_plain_exceptions(self):
        report = handle_error(KeyError("theme"), log_error=False)

        assert report["code"] == "UNKNOWN"
        assert report["error_type"] == "KeyError"

    def test_context_keeps_suppressed_error(self):
        with ErrorContext("probe") as ctx:
            raise NetworkError("down", kind=NetworkErrorKind.TIMEOUT)

        assert isinstance(ctx.error, NetworkError)
