# =============================================================================
# tutor_core/offline/__init__.py
# Offline-First Content Engine for the Tutor App
# =============================================================================
"""
Offline-First Content Module

Tutorials and learner progress stay usable whether or not the device is
online. Reads are served locally first; the remote content source is only
consulted when a local copy is missing or stale and the network is up.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                    OFFLINE-FIRST ARCHITECTURE                    │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                 UnifiedContentService                     │  │
│   │         (Single API - Apps use this only)                 │  │
│   └──────────────────────────────────────────────────────────┘  │
│              │                 │                  │              │
│              ▼                 ▼                  ▼              │
│   ┌──────────────────┐ ┌───────────────┐ ┌─────────────────┐   │
│   │ FetchOrchestrator│ │ProgressTracker│ │AppStateContainer│   │
│   └──────────────────┘ └───────────────┘ └─────────────────┘   │
│       │        │                │                  │             │
│       ▼        ▼                ▼                  ▼             │
│ ┌──────────┐ ┌──────────────────────────┐ ┌────────────────┐    │
│ │ Reactive │ │   ContentStore /         │ │ KeyValueStore  │    │
│ │  Cache   │ │   ProgressStore (SQLite) │ │ (app_settings) │    │
│ └──────────┘ └──────────────────────────┘ └────────────────┘    │
│       │                                                          │
│       ▼              ┌──────────────────┐                        │
│ ┌──────────────┐     │  NetworkMonitor  │──► reconnect sweep     │
│ │Remote Content│     │ (Online/Offline) │                        │
│ │   Source     │     └──────────────────┘                        │
│ └──────────────┘                                                 │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from tutor_core.offline import get_content_service

service = get_content_service()

result = service.get_content("python-basics")
service.mutate_progress("python-basics", "unit-1")

print(service.is_online)
"""

from tutor_core.offline.cancellation import CancellationToken

from tutor_core.offline.local_database import (
    LocalDatabase,
    get_local_database,
    SCHEMA_VERSION,
)

from tutor_core.offline.persistent_store import (
    PersistentStore,
    ContentStore,
    ProgressStore,
)

from tutor_core.offline.key_value_store import (
    KeyValueStore,
    SQLiteKeyValueStore,
    MemoryKeyValueStore,
)

from tutor_core.offline.reactive_cache import (
    ReactiveCache,
    Subscription,
)

from tutor_core.offline.network_monitor import NetworkMonitor

from tutor_core.offline.fetch_orchestrator import (
    FetchOrchestrator,
    FetchRequest,
    FetchResult,
    FetchSource,
    FetchState,
    ContentUnavailableOffline,
    backoff_delay,
)

from tutor_core.offline.progress_tracker import ProgressTracker

from tutor_core.offline.unified_content_service import (
    UnifiedContentService,
    get_content_service,
)

__all__ = [
    "CancellationToken",
    # Local Database
    "LocalDatabase",
    "get_local_database",
    "SCHEMA_VERSION",
    # Stores
    "PersistentStore",
    "ContentStore",
    "ProgressStore",
    "KeyValueStore",
    "SQLiteKeyValueStore",
    "MemoryKeyValueStore",
    # Cache
    "ReactiveCache",
    "Subscription",
    # Connectivity
    "NetworkMonitor",
    # Fetching
    "FetchOrchestrator",
    "FetchRequest",
    "FetchResult",
    "FetchSource",
    "FetchState",
    "ContentUnavailableOffline",
    "backoff_delay",
    # Progress
    "ProgressTracker",
    # Unified Service (Main API)
    "UnifiedContentService",
    "get_content_service",
]
