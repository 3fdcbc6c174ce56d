# =============================================================================
# tutor_core/offline/unified_content_service.py
# Unified Content Service - Single API for Online/Offline Operations
# =============================================================================
"""
UnifiedContentService - the primary API for the surrounding application.

Wires the local database, stores, reactive cache, network monitor, remote
content source, fetch orchestrator, progress tracker and session state
together, and exposes one facade:

Usage:
------
from tutor_core.offline import get_content_service

service = get_content_service()

# Read a tutorial (local first, remote when needed and possible)
result = service.get_content("python-basics")
if result:
    render(result.value)

# Record progress (visible at once, saved in the background)
service.mutate_progress("python-basics", "unit-1")

# Check status
print(f"Online: {service.is_online}")
"""

from __future__ import annotations
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import pandas as pd

from tutor_core.api.base_connector import BaseContentConnector
from tutor_core.api.config_manager import ContentSourceConfigManager
from tutor_core.config import OfflineConfig, load_config
from tutor_core.errors import ErrorContext
from tutor_core.logging import get_logger
from tutor_core.models import CacheEvent, ProgressRecord, ProgressStatus
from tutor_core.offline.cancellation import CancellationToken
from tutor_core.offline.fetch_orchestrator import FetchOrchestrator, FetchResult
from tutor_core.offline.key_value_store import KeyValueStore, SQLiteKeyValueStore
from tutor_core.offline.local_database import LocalDatabase
from tutor_core.offline.network_monitor import NetworkMonitor
from tutor_core.offline.persistent_store import ContentStore, ProgressStore
from tutor_core.offline.progress_tracker import ProgressTracker
from tutor_core.offline.reactive_cache import ReactiveCache, Subscription
from tutor_core.state.app_state import AppStateContainer, Selection

logger = get_logger(__name__)


class UnifiedContentService:
    """
    Unified content service providing a single API for online/offline use.

    Every collaborator can be injected (tests, embedding apps); anything not
    injected is built lazily from the configuration.
    """

    _instance: Optional[UnifiedContentService] = None
    _lock = threading.Lock()

    def __init__(
        self,
        config: Optional[OfflineConfig] = None,
        database: Optional[LocalDatabase] = None,
        connector: Optional[BaseContentConnector] = None,
        monitor: Optional[NetworkMonitor] = None,
        kv_store: Optional[KeyValueStore] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the unified content service."""
        self._config = config
        self._local_db = database
        self._connector = connector
        self._monitor = monitor
        self._kv_store = kv_store
        self._sleep = sleep
        self._now = now
        self._clock = clock

        self._content_store: Optional[ContentStore] = None
        self._progress_store: Optional[ProgressStore] = None
        self._cache: Optional[ReactiveCache] = None
        self._orchestrator: Optional[FetchOrchestrator] = None
        self._tracker: Optional[ProgressTracker] = None
        self._state: Optional[AppStateContainer] = None
        self._initialized = False

    @classmethod
    def get_instance(cls, config: Optional[OfflineConfig] = None) -> UnifiedContentService:
        """Get or create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = UnifiedContentService(config)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._lock:
            if cls._instance is not None:
                cls._instance.shutdown()
            cls._instance = None

    # =========================================================================
    # LAZY LOADING OF DEPENDENCIES
    # =========================================================================

    def _get_config(self) -> OfflineConfig:
        if self._config is None:
            self._config = load_config()
        return self._config

    def _get_local_db(self) -> LocalDatabase:
        if self._local_db is None:
            self._local_db = LocalDatabase.get_instance(self._get_config().db_path)
        return self._local_db

    def _get_content_store(self) -> ContentStore:
        if self._content_store is None:
            self._content_store = ContentStore(self._get_local_db())
        return self._content_store

    def _get_progress_store(self) -> ProgressStore:
        if self._progress_store is None:
            self._progress_store = ProgressStore(self._get_local_db())
        return self._progress_store

    def _get_kv_store(self) -> KeyValueStore:
        if self._kv_store is None:
            self._kv_store = SQLiteKeyValueStore(self._get_local_db())
        return self._kv_store

    def _get_cache(self) -> ReactiveCache:
        if self._cache is None:
            config = self._get_config()
            self._cache = ReactiveCache(
                max_entries=config.cache_max_entries,
                max_idle=config.cache_max_idle,
                default_stale_after=config.content_stale_after,
                default_expire_after=config.content_expire_after,
                max_workers=config.cache_workers,
                clock=self._clock,
            )
        return self._cache

    def _get_monitor(self) -> NetworkMonitor:
        if self._monitor is None:
            self._monitor = NetworkMonitor.get_instance(self._get_config())
        return self._monitor

    def _get_connector(self) -> BaseContentConnector:
        if self._connector is None:
            self._connector = ContentSourceConfigManager(self._get_config()).get_content_connector()
        return self._connector

    def _get_orchestrator(self) -> FetchOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = FetchOrchestrator(
                store=self._get_content_store(),
                kv_store=self._get_kv_store(),
                cache=self._get_cache(),
                monitor=self._get_monitor(),
                connector=self._get_connector(),
                config=self._get_config(),
                sleep=self._sleep,
                now=self._now,
            )
        return self._orchestrator

    def _get_tracker(self) -> ProgressTracker:
        if self._tracker is None:
            self._tracker = ProgressTracker(
                self._get_progress_store(),
                self._get_content_store(),
                cache=self._get_cache(),
                now=self._now,
            )
        return self._tracker

    def _get_state(self) -> AppStateContainer:
        if self._state is None:
            self._state = AppStateContainer(self._get_kv_store())
        return self._state

    # =========================================================================
    # INITIALIZATION
    # =========================================================================

    def initialize(self, start_monitoring: bool = True) -> None:
        """
        Bring the engine up.

        Migrations run and persisted state is rehydrated before anything
        else reads from them. A broken database raises StorageError.

        Args:
            start_monitoring: Whether to start background connectivity checks
        """
        if self._initialized:
            return

        self._get_local_db().initialize()
        state = self._get_state()
        state.rehydrate()

        monitor = self._get_monitor()
        with ErrorContext("Starting network monitoring", recoverable=True):
            monitor.initialize(start_monitoring=start_monitoring)
        state.bind_network_monitor(monitor)

        self._get_orchestrator()
        self._get_tracker()

        self._initialized = True
        logger.info(f"UnifiedContentService initialized. Online: {self.is_online}")

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def is_online(self) -> bool:
        return self._get_monitor().is_online

    @property
    def is_offline(self) -> bool:
        return self._get_monitor().is_offline

    @property
    def state(self) -> AppStateContainer:
        """Session state container (already rehydrated after initialize)."""
        return self._get_state()

    # =========================================================================
    # CONTENT
    # =========================================================================

    def get_content(
        self,
        content_id: str,
        force_revalidate: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FetchResult:
        """Resolve a tutorial; see FetchOrchestrator.get_content."""
        return self._get_orchestrator().get_content(content_id, force_revalidate, cancel_token)

    def get_index(self, force_revalidate: bool = False) -> FetchResult:
        """List available tutorials (last persisted index when offline)."""
        return self._get_orchestrator().get_index(force_revalidate)

    def subscribe(
        self,
        content_id: str,
        callback: Optional[Callable[[CacheEvent], None]] = None,
    ) -> Subscription:
        """Stream of loading/ready/stale/error events for a tutorial."""
        return self._get_orchestrator().subscribe(content_id, callback)

    def prefetch(self, content_ids: Iterable[str]) -> Dict[str, FetchResult]:
        """Download several tutorials for offline use."""
        return self._get_orchestrator().prefetch(content_ids)

    def delete_content(self, content_id: str) -> bool:
        """Remove a downloaded tutorial."""
        return self._get_orchestrator().delete_content(content_id)

    def select_content(self, content_id: str, unit_id: Optional[str] = None) -> bool:
        """Remember what the learner is looking at (persisted)."""
        return self._get_state().set("current_selection", Selection(content_id, unit_id))

    # =========================================================================
    # PROGRESS
    # =========================================================================

    def mutate_progress(self, content_id: str, unit_id: str) -> ProgressRecord:
        """Mark a unit as completed; raises ProgressError for unknown content."""
        return self._get_tracker().mutate_progress(content_id, unit_id)

    def complete_content(self, content_id: str) -> ProgressRecord:
        return self._get_tracker().complete_content(content_id)

    def get_progress(self, content_id: str) -> Optional[ProgressRecord]:
        return self._get_tracker().get_progress(content_id)

    def list_progress(self, status: Optional[ProgressStatus] = None) -> List[ProgressRecord]:
        return self._get_tracker().list_progress(status)

    def progress_dataframe(self) -> pd.DataFrame:
        return self._get_tracker().progress_dataframe()

    # =========================================================================
    # SETTINGS
    # =========================================================================

    def get_settings(self) -> Dict[str, Any]:
        return self._get_state().get_settings()

    def set_setting(self, key: str, value: Any) -> bool:
        """Change one setting; persisted in the background."""
        return self._get_state().set_setting(key, value)

    # =========================================================================
    # STATUS & DIAGNOSTICS
    # =========================================================================

    def get_status_display(self) -> Dict[str, Any]:
        """
        Get comprehensive status information.

        Returns:
            Dict with status information for UI display
        """
        database = self._get_local_db()
        return {
            "network": self._get_monitor().get_status_display(),
            "cache": self._get_cache().stats(),
            "is_online": self.is_online,
            "pending_progress_writes": self._get_tracker().pending_writes(),
            "schema_version": database.schema_version,
            "quarantined_records": len(database.list_quarantined()),
        }

    def force_offline(self) -> None:
        """Force offline mode (user preference, tests)."""
        self._get_monitor().force_offline()

    def force_online(self) -> None:
        self._get_monitor().force_online()

    def check_connection(self) -> None:
        """Force an immediate connection check."""
        self._get_monitor().check_connection()

    def shutdown(self) -> None:
        """Flush pending writes and release threads and connections."""
        with ErrorContext("Flushing pending writes", recoverable=True):
            if self._tracker is not None:
                self._tracker.flush()
            if self._state is not None:
                self._state.flush()

        with ErrorContext("Shutting down content service", recoverable=True):
            if self._orchestrator is not None:
                self._orchestrator.close()
            if self._tracker is not None:
                self._tracker.shutdown()
            if self._state is not None:
                self._state.shutdown()
            if self._cache is not None:
                self._cache.shutdown()
            if self._monitor is not None:
                self._monitor.stop_monitoring()
            if self._local_db is not None:
                self._local_db.close()
        self._initialized = False


# Singleton accessor
def get_content_service(config: Optional[OfflineConfig] = None) -> UnifiedContentService:
    """
    Get the global UnifiedContentService instance.

    Returns:
        UnifiedContentService singleton (initialized)

    Usage:
        from tutor_core.offline import get_content_service

        service = get_content_service()
        result = service.get_content("python-basics")
    """
    service = UnifiedContentService.get_instance(config)
    service.initialize()
    return service
