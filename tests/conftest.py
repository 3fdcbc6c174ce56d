# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from datetime import datetime, timedelta
from unittest.mock import MagicMock

from tutor_core.api import MockContentConnector
from tutor_core.config import OfflineConfig
from tutor_core.models import ContentPayload, NetworkStatus
from tutor_core.offline.fetch_orchestrator import FetchOrchestrator
from tutor_core.offline.key_value_store import MemoryKeyValueStore, SQLiteKeyValueStore
from tutor_core.offline.local_database import LocalDatabase
from tutor_core.offline.network_monitor import NetworkMonitor
from tutor_core.offline.persistent_store import ContentStore, ProgressStore
from tutor_core.offline.reactive_cache import ReactiveCache


# =============================================================================
# CLOCKS
# =============================================================================

class FakeClock:
    """Monotonic seconds and wall-clock time that only move when told to."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 9, 0, 0)):
        self.seconds = 1000.0
        self.wall = start

    def monotonic(self) -> float:
        return self.seconds

    def now(self) -> datetime:
        return self.wall

    def advance(self, seconds: float) -> None:
        self.seconds += seconds
        self.wall += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """Shared fake clock for cache deadlines and record timestamps"""
    return FakeClock()


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping"""
    return []


# =============================================================================
# CONFIGURATION / STORAGE
# =============================================================================

@pytest.fixture
def offline_config(tmp_path):
    """Config pointing at a temporary database, no debounce"""
    return OfflineConfig(
        db_path=tmp_path / "tutor.db",
        debounce_seconds=0.0,
        retry_max_attempts=3,
        retry_base_delay=0.5,
        retry_max_delay=4.0,
        cache_workers=4,
    )


@pytest.fixture
def database(offline_config):
    """Migrated SQLite database in a temp directory"""
    db = LocalDatabase(offline_config.db_path)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def content_store(database):
    return ContentStore(database)


@pytest.fixture
def progress_store(database):
    return ProgressStore(database)


@pytest.fixture
def kv_store(database):
    return SQLiteKeyValueStore(database)


@pytest.fixture
def memory_kv():
    return MemoryKeyValueStore()


# =============================================================================
# CONTENT FIXTURES
# =============================================================================

def make_payload(content_id: str, version: int = 1, category: str = "python") -> ContentPayload:
    """Build a small tutorial payload"""
    return ContentPayload(
        id=content_id,
        category=category,
        version=version,
        title=content_id.replace("-", " ").title(),
        payload={
            "units": [
                {"id": "unit-1", "text": f"{content_id} introduction"},
                {"id": "unit-2", "text": f"{content_id} exercises"},
            ],
            "version": version,
        },
    )


@pytest.fixture
def payload_factory():
    """Factory for tutorial payloads"""
    return make_payload


@pytest.fixture
def sample_catalog():
    """Tutorials published by the mock content source"""
    return {
        "python-basics": make_payload("python-basics"),
        "go-basics": make_payload("go-basics", category="go"),
        "java-basics": make_payload("java-basics", category="java"),
    }


@pytest.fixture
def mock_connector(sample_catalog):
    """In-memory content source with call counting"""
    return MockContentConnector(catalog=sample_catalog)


# =============================================================================
# ENGINE FIXTURES
# =============================================================================

@pytest.fixture
def monitor(offline_config):
    """Network monitor that starts online and never probes real hosts"""
    return NetworkMonitor(
        offline_config,
        initial_status=NetworkStatus.ONLINE,
        probe=lambda: True,
    )


@pytest.fixture
def cache(clock):
    """Reactive cache driven by the fake clock"""
    reactive_cache = ReactiveCache(max_entries=64, clock=clock.monotonic)
    yield reactive_cache
    reactive_cache.shutdown()


@pytest.fixture
def orchestrator(content_store, kv_store, cache, monitor, mock_connector, offline_config, clock, sleeps):
    """Fetch orchestrator wired to fakes"""
    fetcher = FetchOrchestrator(
        store=content_store,
        kv_store=kv_store,
        cache=cache,
        monitor=monitor,
        connector=mock_connector,
        config=offline_config,
        sleep=sleeps.append,
        now=clock.now,
    )
    yield fetcher
    fetcher.close()


@pytest.fixture
def mock_session():
    """requests.Session stand-in for HTTP connector tests"""
    session = MagicMock()
    session.headers = {}
    return session
