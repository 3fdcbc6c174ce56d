"""
Tutorial Content Connectors
HTTP source for deployed content servers and an in-memory source for
development and tests
"""
import threading
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from tutor_core.errors import (
    NetworkError,
    NetworkErrorKind,
    RemoteErrorKind,
    RemoteServiceError,
)
from tutor_core.logging import get_logger
from tutor_core.models import ContentMetadata, ContentPayload

from .base_connector import BaseContentConnector, ConnectorConfig

logger = get_logger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def payload_from_dict(raw: Dict[str, Any], requested_key: Optional[str] = None) -> ContentPayload:
    """Build a ContentPayload from a JSON document."""
    if not isinstance(raw, dict):
        raise ValueError("content document must be an object")
    body = raw.get("payload", raw.get("content"))
    if not isinstance(body, dict):
        raise ValueError("content document has no payload object")
    return ContentPayload(
        id=str(raw.get("id") or requested_key or ""),
        category=str(raw.get("category", "")),
        version=int(raw.get("version", 1)),
        payload=body,
        title=str(raw.get("title", "")),
    )


def metadata_from_dict(raw: Dict[str, Any]) -> ContentMetadata:
    """Build one index row from a JSON document."""
    return ContentMetadata(
        id=str(raw["id"]),
        category=str(raw.get("category", "")),
        version=int(raw.get("version", 1)),
        title=str(raw.get("title", "")),
    )


class HTTPContentConnector(BaseContentConnector):
    """
    Content server speaking JSON over HTTP

    Endpoints:
        GET {base_url}/content/{key} -> {"id", "category", "version", "title", "payload"}
        GET {base_url}/index         -> [{"id", "category", "version", "title"}, ...]
                                        or {"items": [...]}
    """

    def __init__(self, config: ConnectorConfig):
        super().__init__(config)
        self.session = requests.Session()

        if config.headers:
            self.session.headers.update(config.headers)

        if config.api_key:
            self._set_auth_header()

    def _set_auth_header(self):
        self.session.headers["Authorization"] = f"Bearer {self.config.api_key}"

    def _make_request(self, endpoint: str, params: Optional[Dict] = None) -> requests.Response:
        """
        GET an endpoint and map failures onto the remote error taxonomy

        Args:
            endpoint: API endpoint (appended to base_url)
            params: Query parameters

        Returns:
            Successful response
        """
        url = f"{self.config.base_url.rstrip('/')}/{endpoint}"
        merged = {**(self.config.additional_params or {}), **(params or {})}

        try:
            response = self.session.get(url, params=merged or None, timeout=self.config.timeout)
        except requests.exceptions.Timeout as e:
            raise NetworkError(
                f"Request to {self.config.api_name} timed out after {self.config.timeout}s",
                kind=NetworkErrorKind.TIMEOUT,
                source=self.config.api_name,
            ) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(
                f"{self.config.api_name} is unreachable: {type(e).__name__}",
                kind=NetworkErrorKind.UNREACHABLE,
                source=self.config.api_name,
            ) from e

        self.validate_response(response, endpoint)
        return response

    def validate_response(self, response: requests.Response, endpoint: str) -> None:
        """Raise RemoteServiceError for non-success status codes"""
        status = response.status_code
        if status < 400:
            return

        if status == 429:
            kind = RemoteErrorKind.RATE_LIMITED
        elif status >= 500:
            kind = RemoteErrorKind.SERVER_ERROR
        else:
            kind = RemoteErrorKind.INVALID_REQUEST

        raise RemoteServiceError(
            f"{self.config.api_name} answered {status} for '{endpoint}'",
            kind=kind,
            status_code=status,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            content_key=endpoint,
        )

    def _json(self, response: requests.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteServiceError(
                f"{self.config.api_name} returned a non-JSON body for '{endpoint}'",
                kind=RemoteErrorKind.SERVER_ERROR,
                status_code=response.status_code,
                content_key=endpoint,
            ) from e

    def fetch_content(self, key: str) -> ContentPayload:
        endpoint = f"content/{quote(key, safe='')}"
        response = self._make_request(endpoint)
        try:
            return payload_from_dict(self._json(response, endpoint), requested_key=key)
        except (ValueError, TypeError) as e:
            raise RemoteServiceError(
                f"Malformed content document for '{key}': {e}",
                kind=RemoteErrorKind.SERVER_ERROR,
                status_code=response.status_code,
                content_key=key,
            ) from e

    def fetch_index(self) -> List[ContentMetadata]:
        response = self._make_request("index")
        raw = self._json(response, "index")
        items = raw.get("items", []) if isinstance(raw, dict) else raw
        try:
            return [metadata_from_dict(item) for item in items]
        except (KeyError, ValueError, TypeError) as e:
            raise RemoteServiceError(
                f"Malformed content index: {e}",
                kind=RemoteErrorKind.SERVER_ERROR,
                status_code=response.status_code,
                content_key="index",
            ) from e


class MockContentConnector(BaseContentConnector):
    """
    In-memory content source

    Counts calls per key, can replay scripted failures and can hold calls
    on a gate (threading.Event) to make concurrency observable.
    """

    def __init__(
        self,
        config: Optional[ConnectorConfig] = None,
        catalog: Optional[Dict[str, ContentPayload]] = None,
    ):
        super().__init__(config or ConnectorConfig(api_name="mock"))
        self.catalog: Dict[str, ContentPayload] = dict(catalog or {})
        self.calls: Counter = Counter()
        self.index_calls = 0
        self.gate: Optional[threading.Event] = None
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._lock = threading.Lock()
        self._active = 0
        self.max_concurrent = 0

    def publish(self, payload: ContentPayload) -> None:
        """Add or replace a tutorial"""
        with self._lock:
            self.catalog[payload.id] = payload

    def fail_next(self, key: str, *errors: Exception) -> None:
        """Raise these errors (in order) on the next calls for key"""
        with self._lock:
            self._failures[key].extend(errors)

    def fetch_content(self, key: str) -> ContentPayload:
        with self._lock:
            self.calls[key] += 1
            self._active += 1
            self.max_concurrent = max(self.max_concurrent, self._active)
            failure = self._failures[key].pop(0) if self._failures[key] else None
        try:
            if self.gate is not None and not self.gate.wait(timeout=self.config.timeout):
                raise NetworkError(
                    f"Mock source held '{key}' past {self.config.timeout:g}s",
                    kind=NetworkErrorKind.TIMEOUT,
                    source=self.config.api_name,
                )
            if failure is not None:
                raise failure
            with self._lock:
                payload = self.catalog.get(key)
            if payload is None:
                raise RemoteServiceError(
                    f"Unknown tutorial '{key}'",
                    kind=RemoteErrorKind.INVALID_REQUEST,
                    status_code=404,
                    content_key=key,
                )
            logger.debug(f"Mock source served '{key}' v{payload.version}")
            return payload
        finally:
            with self._lock:
                self._active -= 1

    def fetch_index(self) -> List[ContentMetadata]:
        with self._lock:
            self.index_calls += 1
            failure = self._failures["index"].pop(0) if self._failures["index"] else None
            items = list(self.catalog.values())
        if failure is not None:
            raise failure
        return [
            ContentMetadata(id=item.id, category=item.category, version=item.version, title=item.title)
            for item in sorted(items, key=lambda p: p.id)
        ]
