# =============================================================================
# tests/unit/test_http_connector.py
# Unit Tests for the Content Connectors
# =============================================================================

import threading
from unittest.mock import MagicMock

import pytest
import requests

from tutor_core.api import ConnectorConfig, HTTPContentConnector, MockContentConnector, payload_from_dict
from tutor_core.errors import NetworkError, NetworkErrorKind, RemoteErrorKind, RemoteServiceError


def make_response(status=200, body=None, headers=None, json_error=False):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = body
    return response


@pytest.fixture
def connector(mock_session):
    config = ConnectorConfig(
        api_name="content_api",
        base_url="https://content.example.com/api/",
        api_key="secret-key",
        timeout=5.0,
    )
    http = HTTPContentConnector(config)
    mock_session.headers.update(http.session.headers)
    http.session = mock_session
    return http


class TestHTTPContentConnector:
    """Test the HTTP content source"""

    def test_auth_header_is_set(self):
        http = HTTPContentConnector(ConnectorConfig(api_name="api", base_url="https://x", api_key="k"))

        assert http.session.headers["Authorization"] == "Bearer k"

    def test_fetch_content(self, connector, mock_session):
        mock_session.get.return_value = make_response(body={
            "id": "python-basics",
            "category": "python",
            "version": 3,
            "title": "Python Basics",
            "payload": {"units": []},
        })

        payload = connector.fetch_content("python-basics")

        assert payload.version == 3
        assert payload.payload == {"units": []}
        url = mock_session.get.call_args[0][0]
        assert url == "https://content.example.com/api/content/python-basics"
        assert mock_session.get.call_args[1]["timeout"] == 5.0

    def test_content_key_is_url_quoted(self, connector, mock_session):
        mock_session.get.return_value = make_response(body={"payload": {}})

        payload = connector.fetch_content("c++/intro")

        assert mock_session.get.call_args[0][0].endswith("content/c%2B%2B%2Fintro")
        assert payload.id == "c++/intro"

    def test_fetch_index_accepts_list_and_wrapper(self, connector, mock_session):
        rows = [{"id": "a", "category": "go", "version": 1}]
        mock_session.get.return_value = make_response(body=rows)
        assert [m.id for m in connector.fetch_index()] == ["a"]

        mock_session.get.return_value = make_response(body={"items": rows})
        assert [m.id for m in connector.fetch_index()] == ["a"]

    @pytest.mark.parametrize("status,kind", [
        (429, RemoteErrorKind.RATE_LIMITED),
        (500, RemoteErrorKind.SERVER_ERROR),
        (503, RemoteErrorKind.SERVER_ERROR),
        (404, RemoteErrorKind.INVALID_REQUEST),
        (400, RemoteErrorKind.INVALID_REQUEST),
    ])
    def test_status_codes_map_to_remote_errors(self, connector, mock_session, status, kind):
        mock_session.get.return_value = make_response(status=status)

        with pytest.raises(RemoteServiceError) as exc_info:
            connector.fetch_content("python-basics")

        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status

    def test_retry_after_header(self, connector, mock_session):
        mock_session.get.return_value = make_response(status=429, headers={"Retry-After": "7"})

        with pytest.raises(RemoteServiceError) as exc_info:
            connector.fetch_index()

        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.transient is True

    def test_timeout(self, connector, mock_session):
        mock_session.get.side_effect = requests.exceptions.Timeout("read timed out")

        with pytest.raises(NetworkError) as exc_info:
            connector.fetch_content("python-basics")

        assert exc_info.value.kind == NetworkErrorKind.TIMEOUT

    def test_connection_error_hides_credentials(self, connector, mock_session):
        mock_session.get.side_effect = requests.exceptions.ConnectionError(
            "https://content.example.com/api/index?token=secret-key refused"
        )

        with pytest.raises(NetworkError) as exc_info:
            connector.fetch_index()

        assert exc_info.value.kind == NetworkErrorKind.UNREACHABLE
        assert "secret-key" not in str(exc_info.value)

    def test_non_json_body_is_server_error(self, connector, mock_session):
        mock_session.get.return_value = make_response(json_error=True)

        with pytest.raises(RemoteServiceError) as exc_info:
            connector.fetch_content("python-basics")

        assert exc_info.value.kind == RemoteErrorKind.SERVER_ERROR

    def test_malformed_document_is_server_error(self, connector, mock_session):
        mock_session.get.return_value = make_response(body={"id": "python-basics"})

        with pytest.raises(RemoteServiceError) as exc_info:
            connector.fetch_content("python-basics")

        assert exc_info.value.kind == RemoteErrorKind.SERVER_ERROR

    def test_config_repr_masks_key(self, connector):
        assert "secret-key" not in repr(connector.config)

    def test_test_connection(self, connector, mock_session):
        mock_session.get.return_value = make_response(body=[])
        assert connector.test_connection()["status"] == "success"

        mock_session.get.side_effect = requests.exceptions.ConnectionError("down")
        assert connector.test_connection()["status"] == "error"


class TestPayloadParsing:
    """Test JSON document parsing"""

    def test_content_alias_and_requested_key(self):
        payload = payload_from_dict({"content": {"units": []}, "version": "2"}, requested_key="go-basics")

        assert payload.id == "go-basics"
        assert payload.version == 2

    def test_non_object_rejected(self):
        with pytest.raises(ValueError):
            payload_from_dict(["not", "an", "object"])


class TestMockContentConnector:
    """Test the in-memory source"""

    def test_scripted_failures_then_success(self, sample_catalog):
        source = MockContentConnector(catalog=sample_catalog)
        error = RemoteServiceError("busy", kind=RemoteErrorKind.SERVER_ERROR, status_code=503)
        source.fail_next("python-basics", error)

        with pytest.raises(RemoteServiceError):
            source.fetch_content("python-basics")
        assert source.fetch_content("python-basics").id == "python-basics"
        assert source.calls["python-basics"] == 2

    def test_unknown_key(self):
        with pytest.raises(RemoteServiceError) as exc_info:
            MockContentConnector().fetch_content("nope")

        assert exc_info.value.status_code == 404
        assert exc_info.value.transient is False

    def test_gate_held_past_timeout_is_a_timeout(self, sample_catalog):
        source = MockContentConnector(ConnectorConfig(api_name="mock", timeout=0.05), catalog=sample_catalog)
        source.gate = threading.Event()

        with pytest.raises(NetworkError) as exc_info:
            source.fetch_content("python-basics")

        assert exc_info.value.kind == NetworkErrorKind.TIMEOUT
