# =============================================================================
# tutor_core/models.py
# Domain Records for Tutorial Content, Progress and Cache State
# =============================================================================
"""
Immutable records shared by every layer of the offline engine.

Entities handed out by the store and the cache are frozen snapshots; callers
change state only through the store, cache and tracker contracts.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


def content_key(content_id: str) -> str:
    """Cache key for one tutorial."""
    return f"content:{content_id}"


INDEX_KEY = "index"


# =============================================================================
# CONTENT
# =============================================================================

@dataclass(frozen=True)
class ContentMetadata:
    """One row of the remote content index."""
    id: str
    category: str
    version: int
    title: str = ""


@dataclass(frozen=True)
class ContentPayload:
    """Content as returned by a remote content source."""
    id: str
    category: str
    version: int
    payload: Dict[str, Any]
    title: str = ""


@dataclass(frozen=True)
class ContentItem:
    """A downloaded tutorial held in the local store."""
    id: str
    category: str
    version: int
    payload: Dict[str, Any]
    fetched_at: datetime
    last_accessed_at: datetime
    title: str = ""

    @classmethod
    def from_payload(cls, remote: ContentPayload, now: datetime) -> ContentItem:
        return cls(
            id=remote.id,
            category=remote.category,
            version=remote.version,
            payload=remote.payload,
            title=remote.title,
            fetched_at=now,
            last_accessed_at=now,
        )

    def refreshed(self, now: datetime) -> ContentItem:
        """Same content, re-confirmed by the remote source."""
        return replace(self, fetched_at=now, last_accessed_at=now)


# =============================================================================
# PROGRESS
# =============================================================================

class ProgressStatus(Enum):
    """Lifecycle of a learner's progress through one tutorial."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ProgressRecord:
    """Learner progress for one tutorial."""
    content_id: str
    completed_units: FrozenSet[str] = frozenset()
    current_unit_id: Optional[str] = None
    status: ProgressStatus = ProgressStatus.NOT_STARTED
    updated_at: Optional[datetime] = None

    def with_unit(self, unit_id: str, now: datetime) -> ProgressRecord:
        """Record completion of one unit."""
        status = self.status
        if status == ProgressStatus.NOT_STARTED:
            status = ProgressStatus.IN_PROGRESS
        return replace(
            self,
            completed_units=self.completed_units | {unit_id},
            current_unit_id=unit_id,
            status=status,
            updated_at=self._next_timestamp(now),
        )

    def completed(self, now: datetime) -> ProgressRecord:
        """Apply the explicit completion signal."""
        return replace(self, status=ProgressStatus.COMPLETED, updated_at=self._next_timestamp(now))

    def _next_timestamp(self, now: datetime) -> datetime:
        # updated_at never goes backwards, even if the wall clock does
        if self.updated_at is not None and now < self.updated_at:
            return self.updated_at
        return now


# =============================================================================
# CACHE / NETWORK
# =============================================================================

@dataclass
class CacheEntry:
    """One cached value with its freshness deadlines (monotonic seconds)."""
    key: str
    value: Any
    inserted_at: float
    stale_at: float
    expires_at: float
    last_accessed_at: float = 0.0

    def __post_init__(self):
        if self.stale_at > self.expires_at:
            raise ValueError(f"stale_at must not exceed expires_at for '{self.key}'")

    def is_fresh(self, now: float) -> bool:
        return now < self.stale_at

    def is_stale(self, now: float) -> bool:
        return self.stale_at <= now < self.expires_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheEventStatus(Enum):
    """Status values carried by subscription events."""
    LOADING = "loading"
    READY = "ready"
    STALE = "stale"
    ERROR = "error"


@dataclass(frozen=True)
class CacheEvent:
    """One element of a subscription stream."""
    key: str
    status: CacheEventStatus
    value: Any = None
    error: Any = None


class NetworkStatus(Enum):
    """Connectivity as committed by the network monitor."""
    ONLINE = "online"
    OFFLINE = "offline"


@dataclass(frozen=True)
class NetworkState:
    """Connectivity snapshot owned by the network monitor."""
    status: NetworkStatus = NetworkStatus.OFFLINE
    last_changed_at: datetime = field(default_factory=datetime.now)

    @property
    def is_online(self) -> bool:
        return self.status == NetworkStatus.ONLINE
