# =============================================================================
# tutor_core/offline/key_value_store.py
# Small Durable Key-Value Store for Settings and Session State
# =============================================================================
"""
KeyValueStore - JSON values under string keys.

SQLiteKeyValueStore persists into the app_settings table of the local
database; MemoryKeyValueStore keeps everything in process (tests,
throwaway sessions).
"""

from __future__ import annotations
import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List
import logging

from tutor_core.errors import StorageError, StorageErrorKind
from tutor_core.offline.local_database import LocalDatabase

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Contract shared by all key-value backends."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...


class SQLiteKeyValueStore(KeyValueStore):
    """Key-value pairs stored in the local database."""

    def __init__(self, database: LocalDatabase):
        self._db = database

    def get(self, key: str, default: Any = None) -> Any:
        found, raw = self._db.get_setting(key)
        if not found:
            return default
        try:
            return json.loads(raw) if raw is not None else None
        except json.JSONDecodeError as e:
            raise StorageError(
                f"Setting '{key}' holds invalid JSON",
                kind=StorageErrorKind.CORRUPT,
                entity_id=key,
                operation="get",
            ) from e

    def set(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value, sort_keys=True)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Setting '{key}' is not JSON-serializable: {e}") from e
        self._db.set_setting(key, encoded)

    def delete(self, key: str) -> bool:
        return self._db.delete_setting(key)

    def keys(self) -> List[str]:
        return self._db.setting_keys()


class MemoryKeyValueStore(KeyValueStore):
    """In-process key-value store."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return json.loads(self._data[key])

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, sort_keys=True)
        with self._lock:
            self._data[key] = encoded

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)
