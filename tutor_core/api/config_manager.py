"""
Content Source Configuration Manager
Builds the remote content connector from configuration
"""
import os
from typing import Any, Dict, Optional

from tutor_core.config import OfflineConfig
from tutor_core.errors import ConfigurationError
from tutor_core.logging import get_logger

from .base_connector import BaseContentConnector, ConnectorConfig
from .content_connector import HTTPContentConnector, MockContentConnector

logger = get_logger(__name__)


class ContentSourceConfigManager:
    """
    Manages the content source configuration and creates connector instances

    Usage:
        manager = ContentSourceConfigManager(load_config())
        connector = manager.get_content_connector()
        payload = connector.fetch_content("python-basics")
    """

    # Registry of available connectors
    CONTENT_CONNECTORS = {
        "mock": MockContentConnector,
        "http": HTTPContentConnector,
    }

    def __init__(self, config: Optional[OfflineConfig] = None):
        """Initialize from the [content_source] section or defaults"""
        self.offline_config = config or OfflineConfig()
        self.configs = self._load_configs(self.offline_config)

    def _load_configs(self, config: OfflineConfig) -> Dict[str, Any]:
        """
        Read the content source section

        Expected config.toml format:
        [content_source]
        provider = "http"
        base_url = "https://content.example.com/api"
        api_key = "your_api_key"       # or TUTOR_CONTENT_API_KEY
        timeout = 15
        """
        section = dict(config.sections.get("content_source", {}))
        if not section:
            return self._get_default_configs()

        env_key = os.environ.get("TUTOR_CONTENT_API_KEY")
        if env_key and not section.get("api_key"):
            section["api_key"] = env_key
        return section

    def _get_default_configs(self) -> Dict[str, Any]:
        """Default to the in-memory source when nothing is configured"""
        return {"provider": "mock"}

    def get_content_connector(self, provider: Optional[str] = None, **kwargs) -> BaseContentConnector:
        """
        Get the content connector

        Args:
            provider: Connector type ('mock', 'http')
            **kwargs: Override configuration parameters

        Returns:
            Configured connector instance
        """
        provider = provider or self.configs.get("provider", "mock")
        connector_class = self.CONTENT_CONNECTORS.get(provider)
        if not connector_class:
            raise ConfigurationError(
                f"Unknown content connector: {provider}",
                config_key="content_source.provider",
                expected_type=" | ".join(sorted(self.CONTENT_CONNECTORS)),
            )

        config = self._build_config(provider, kwargs)
        if provider == "http" and not config.base_url:
            raise ConfigurationError(
                "The http content source needs a base_url",
                config_key="content_source.base_url",
            )

        logger.info(f"Using '{provider}' content source")
        return connector_class(config)

    def _build_config(self, provider: str, overrides: Dict[str, Any]) -> ConnectorConfig:
        """Build ConnectorConfig from stored configs and overrides"""
        merged = {**self.configs, **overrides}

        timeout = merged.get("timeout", self.offline_config.remote_timeout)
        try:
            timeout = float(timeout)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid content source timeout: {timeout!r}",
                config_key="content_source.timeout",
                expected_type="float",
            ) from e

        return ConnectorConfig(
            api_name=merged.get("api_name", f"{provider}_content"),
            base_url=merged.get("base_url", ""),
            api_key=merged.get("api_key"),
            headers=merged.get("headers"),
            timeout=timeout,
            additional_params=merged.get("params"),
        )

    def test_connection(self, provider: Optional[str] = None) -> Dict[str, Any]:
        """Test the configured content source"""
        try:
            return self.get_content_connector(provider).test_connection()
        except ConfigurationError as e:
            return {"status": "error", "message": e.message}
