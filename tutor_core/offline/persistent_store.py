# =============================================================================
# tutor_core/offline/persistent_store.py
# Typed Entity Stores over the Local Database
# =============================================================================
"""
PersistentStore - the per-entity storage contract and its SQLite
implementations for tutorials and learner progress.

Contract:
    put(entity) -> bool          False if the identical entity is already stored
    get(id) -> entity | None
    query_by_index(index, value) -> list[entity]
    delete(id) -> bool

Every call is one transaction. Corrupt rows are quarantined: `get` raises
StorageError(CORRUPT) once, listing reads skip them.
"""

from __future__ import annotations
import json
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar
import logging
import sqlite3

import pandas as pd

from tutor_core.errors import StorageError, StorageErrorKind
from tutor_core.models import ContentItem, ProgressRecord, ProgressStatus
from tutor_core.offline.local_database import LocalDatabase

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Decoding failures that mean the stored row is unusable
DECODE_ERRORS = (ValueError, KeyError, TypeError, IndexError)


class PersistentStore(ABC, Generic[T]):
    """Abstract durable store for one entity type."""

    # index name -> column
    INDEXES: Dict[str, str] = {}

    @abstractmethod
    def put(self, entity: T) -> bool:
        """Store entity; True if anything changed."""

    @abstractmethod
    def get(self, entity_id: str) -> Optional[T]:
        """Return the stored entity or None."""

    @abstractmethod
    def query_by_index(self, index: str, value: Any) -> List[T]:
        """Return entities whose index column equals value."""

    @abstractmethod
    def delete(self, entity_id: str) -> bool:
        """Remove entity; True if it existed."""

    @abstractmethod
    def all(self) -> List[T]:
        """Return every readable entity."""


class SQLiteEntityStore(PersistentStore[T]):
    """Shared row mapping, decoding and quarantine logic."""

    TABLE: str = ""

    def __init__(self, database: LocalDatabase):
        self._db = database

    @abstractmethod
    def _to_row(self, entity: T) -> Dict[str, Any]:
        ...

    @abstractmethod
    def _from_row(self, row: sqlite3.Row) -> T:
        ...

    @abstractmethod
    def _entity_id(self, entity: T) -> str:
        ...

    def _decode(self, row: sqlite3.Row) -> Optional[T]:
        try:
            return self._from_row(row)
        except DECODE_ERRORS as e:
            self._db.quarantine(self.TABLE, row, reason=f"{type(e).__name__}: {e}")
            return None

    def put(self, entity: T) -> bool:
        changed = self._db.upsert(self.TABLE, self._to_row(entity))
        if changed:
            logger.debug(f"Stored {self.TABLE}/{self._entity_id(entity)}")
        return changed

    def get(self, entity_id: str) -> Optional[T]:
        row = self._db.get_row(self.TABLE, entity_id)
        if row is None:
            return None
        entity = self._decode(row)
        if entity is None:
            raise StorageError(
                f"Stored record '{entity_id}' is corrupt and was quarantined",
                kind=StorageErrorKind.CORRUPT,
                entity_id=entity_id,
                operation="get",
                details={"table": self.TABLE},
            )
        return entity

    def query_by_index(self, index: str, value: Any) -> List[T]:
        if index not in self.INDEXES:
            raise ValueError(f"Unknown index '{index}' for {self.TABLE}")
        if isinstance(value, Enum):
            value = value.value
        rows = self._db.get_rows(self.TABLE, self.INDEXES[index], value)
        return [entity for entity in (self._decode(row) for row in rows) if entity is not None]

    def delete(self, entity_id: str) -> bool:
        return self._db.delete_row(self.TABLE, entity_id)

    def all(self) -> List[T]:
        rows = self._db.get_rows(self.TABLE)
        return [entity for entity in (self._decode(row) for row in rows) if entity is not None]

    def to_dataframe(self) -> pd.DataFrame:
        """Raw rows of this store as a DataFrame."""
        return self._db.to_dataframe(self.TABLE)


class ContentStore(SQLiteEntityStore[ContentItem]):
    """Downloaded tutorials."""

    TABLE = "content_items"
    INDEXES = {"category": "category"}

    def _entity_id(self, entity: ContentItem) -> str:
        return entity.id

    def _to_row(self, entity: ContentItem) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "category": entity.category,
            "version": int(entity.version),
            "payload_json": json.dumps(entity.payload, sort_keys=True),
            "title": entity.title,
            "fetched_at": entity.fetched_at.isoformat(),
            "last_accessed_at": entity.last_accessed_at.isoformat(),
        }

    def _from_row(self, row: sqlite3.Row) -> ContentItem:
        payload = json.loads(row["payload_json"])
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        return ContentItem(
            id=str(row["id"]),
            category=str(row["category"]),
            version=int(row["version"]),
            payload=payload,
            title=str(row["title"] or ""),
            fetched_at=datetime.fromisoformat(row["fetched_at"]),
            last_accessed_at=datetime.fromisoformat(row["last_accessed_at"]),
        )

    def touch(self, content_id: str, when: Optional[datetime] = None) -> bool:
        """Record a read without touching the content itself."""
        when = when or datetime.now()
        return self._db.update_columns(self.TABLE, content_id, {"last_accessed_at": when.isoformat()})


class ProgressStore(SQLiteEntityStore[ProgressRecord]):
    """Learner progress, one row per tutorial."""

    TABLE = "progress_records"
    INDEXES = {"status": "status"}

    def _entity_id(self, entity: ProgressRecord) -> str:
        return entity.content_id

    def _to_row(self, entity: ProgressRecord) -> Dict[str, Any]:
        return {
            "content_id": entity.content_id,
            "completed_units_json": json.dumps(sorted(entity.completed_units)),
            "current_unit_id": entity.current_unit_id,
            "status": entity.status.value,
            "updated_at": entity.updated_at.isoformat() if entity.updated_at else None,
        }

    def _from_row(self, row: sqlite3.Row) -> ProgressRecord:
        units = json.loads(row["completed_units_json"])
        if not isinstance(units, list):
            raise ValueError("completed_units is not a list")
        return ProgressRecord(
            content_id=str(row["content_id"]),
            completed_units=frozenset(str(unit) for unit in units),
            current_unit_id=row["current_unit_id"],
            status=ProgressStatus(row["status"]),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )
