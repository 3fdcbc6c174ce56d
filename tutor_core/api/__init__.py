"""
Remote content sources for the offline tutor core
"""
from .base_connector import BaseContentConnector, ConnectorConfig
from .content_connector import (
    HTTPContentConnector,
    MockContentConnector,
    metadata_from_dict,
    payload_from_dict,
)
from .config_manager import ContentSourceConfigManager

__all__ = [
    "BaseContentConnector",
    "ConnectorConfig",
    "HTTPContentConnector",
    "MockContentConnector",
    "ContentSourceConfigManager",
    "metadata_from_dict",
    "payload_from_dict",
]
