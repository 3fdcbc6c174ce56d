"""
Base Content Connector
Abstract interface for remote tutorial content sources
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from tutor_core.models import ContentMetadata, ContentPayload


@dataclass
class ConnectorConfig:
    """Configuration for a remote content source"""
    api_name: str
    base_url: str = ""
    api_key: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    timeout: float = 15.0
    additional_params: Optional[Dict[str, Any]] = None

    def __repr__(self) -> str:
        # Keep the key out of logs and tracebacks
        masked = "***" if self.api_key else None
        return (
            f"ConnectorConfig(api_name={self.api_name!r}, base_url={self.base_url!r}, "
            f"api_key={masked!r}, timeout={self.timeout!r})"
        )


class BaseContentConnector(ABC):
    """
    Abstract base class for all remote content sources.

    Implementations raise only the remote taxonomy:
    NetworkError (TIMEOUT, UNREACHABLE) and RemoteServiceError
    (RATE_LIMITED, INVALID_REQUEST, SERVER_ERROR).
    """

    def __init__(self, config: ConnectorConfig):
        self.config = config

    @abstractmethod
    def fetch_content(self, key: str) -> ContentPayload:
        """
        Fetch one tutorial by key

        Args:
            key: Tutorial id

        Returns:
            ContentPayload with the tutorial body and its version
        """
        pass

    @abstractmethod
    def fetch_index(self) -> List[ContentMetadata]:
        """Fetch the list of available tutorials"""
        pass

    def test_connection(self) -> Dict[str, Any]:
        """
        Test the source and return status

        Returns:
            Dict with status, message, and metadata
        """
        try:
            index = self.fetch_index()
            return {
                "status": "success",
                "message": f"Successfully connected to {self.config.api_name}",
                "items_available": len(index),
            }
        except Exception as e:
            return {
                "status": "error",
                "message": f"Connection failed: {str(e)}",
            }
