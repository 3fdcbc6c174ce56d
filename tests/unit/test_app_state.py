# =============================================================================
# tests/unit/test_app_state.py
# Unit Tests for AppStateContainer
# =============================================================================

import sqlite3
import threading
from unittest.mock import MagicMock

import pytest

from tutor_core.errors import StorageError, StorageErrorKind
from tutor_core.models import NetworkStatus
from tutor_core.state import AppStateContainer, Selection
from tutor_core.state.app_state import KEY_PREFIX, SETTINGS_DEFAULTS, deserialize_field, validate_setting


@pytest.fixture
def state(memory_kv):
    container = AppStateContainer(memory_kv)
    container.rehydrate()
    yield container
    container.shutdown()


class TestDefaultsAndAccess:
    """Test reads and writes of fields"""

    def test_defaults(self, state):
        assert state.get("current_selection") is None
        assert state.get_settings() == SETTINGS_DEFAULTS
        assert state.get("network_status") == NetworkStatus.OFFLINE
        assert state.get("ui_flags") == {}

    def test_unknown_field(self, state):
        with pytest.raises(KeyError):
            state.get("nope")
        with pytest.raises(KeyError):
            state.set("nope", 1)

    def test_returned_containers_are_copies(self, state):
        settings = state.get_settings()
        settings["theme"] = "dark"

        assert state.get_settings()["theme"] == "light"

    def test_unchanged_set_returns_false(self, state):
        assert state.set("current_selection", Selection("python-basics")) is True
        assert state.set("current_selection", Selection("python-basics")) is False

    def test_selection_type_is_checked(self, state):
        with pytest.raises(TypeError):
            state.set("current_selection", "python-basics")

    def test_network_status_accepts_raw_value(self, state):
        state.set("network_status", "online")

        assert state.get("network_status") == NetworkStatus.ONLINE


class TestSettingsValidation:
    """Test setting validation"""

    @pytest.mark.parametrize("key,value", [
        ("theme", "neon"),
        ("font_size", 4),
        ("font_size", 100),
        ("font_size", True),
        ("font_size", "16"),
        ("language_focus", 3),
        ("volume", 11),
    ])
    def test_invalid_values_are_rejected(self, state, key, value):
        with pytest.raises(ValueError):
            state.set_setting(key, value)

        assert state.get_settings() == SETTINGS_DEFAULTS

    def test_valid_setting(self, state):
        assert state.set_setting("font_size", 20) is True
        assert validate_setting("language_focus", "go") == "go"

    def test_unknown_stored_settings_are_dropped(self):
        settings = deserialize_field("settings", {"theme": "dark", "legacy_option": 1})

        assert settings == {**SETTINGS_DEFAULTS, "theme": "dark"}


class TestPersistence:
    """Test write-behind persistence and rehydration"""

    def test_persistent_fields_survive_restart(self, memory_kv):
        first = AppStateContainer(memory_kv)
        first.rehydrate()
        first.set("current_selection", Selection("python-basics", "unit-2"))
        first.set_setting("theme", "dark")
        first.set_ui_flag("sidebar_open", True)
        assert first.flush(timeout=5)
        first.shutdown()

        second = AppStateContainer(memory_kv)
        restored = second.rehydrate()
        try:
            assert set(restored) == {"current_selection", "settings"}
            assert second.get("current_selection") == Selection("python-basics", "unit-2")
            assert second.get_settings()["theme"] == "dark"
            assert second.get("ui_flags") == {}
        finally:
            second.shutdown()

    def test_session_fields_are_not_persisted(self, state, memory_kv):
        state.set_ui_flag("sidebar_open", True)
        state.set("network_status", NetworkStatus.ONLINE)
        state.flush(timeout=5)

        assert memory_kv.keys() == []

    def test_superseded_writes_are_skipped(self, memory_kv):
        """Only the newest pending value of a field is written"""
        entered = threading.Event()
        release = threading.Event()
        real_set = memory_kv.set
        written = []

        def slow_set(key, value):
            written.append(value)
            entered.set()
            assert release.wait(timeout=5)
            real_set(key, value)

        memory_kv.set = slow_set
        container = AppStateContainer(memory_kv)
        try:
            container.set_setting("theme", "dark")
            assert entered.wait(timeout=5)
            container.set_setting("theme", "system")
            container.set_setting("font_size", 18)
            release.set()
            assert container.flush(timeout=5)

            assert [value["theme"] for value in written] == ["dark", "system"]
            assert written[-1]["font_size"] == 18
            assert memory_kv.get(KEY_PREFIX + "settings")["font_size"] == 18
        finally:
            container.shutdown()

    def test_invalid_stored_values_fall_back_to_defaults(self, memory_kv):
        memory_kv.set(KEY_PREFIX + "current_selection", "not an object")
        memory_kv.set(KEY_PREFIX + "settings", {"font_size": 500})

        container = AppStateContainer(memory_kv)
        try:
            assert container.rehydrate() == {}
            assert container.get_settings() == SETTINGS_DEFAULTS
            assert container.rehydrated is True
        finally:
            container.shutdown()

    def test_failed_write_surfaces_on_flush(self, memory_kv):
        memory_kv.set = MagicMock(side_effect=StorageError("full", kind=StorageErrorKind.QUOTA_EXCEEDED))
        container = AppStateContainer(memory_kv)
        try:
            container.set_setting("theme", "dark")

            with pytest.raises(StorageError):
                container.flush(timeout=5)
            assert container.get_settings()["theme"] == "dark"
        finally:
            container.shutdown()

    def test_unclassified_write_error_surfaces_on_flush(self, memory_kv):
        memory_kv.set = MagicMock(side_effect=sqlite3.OperationalError("database is locked"))
        container = AppStateContainer(memory_kv)
        try:
            container.set("current_selection", Selection("python-basics"))

            with pytest.raises(sqlite3.OperationalError):
                container.flush(timeout=5)
            assert container.flush(timeout=5) is True
        finally:
            container.shutdown()


class TestSubscriptions:
    """Test change notification"""

    def test_subscriber_called_synchronously(self, state):
        seen = []
        unsubscribe = state.subscribe(lambda field, value: seen.append((field, value)))

        state.set("current_selection", Selection("go-basics"))
        unsubscribe()
        state.set("current_selection", None)

        assert seen == [("current_selection", Selection("go-basics"))]

    def test_reset_session_clears_flags(self, state):
        state.set_ui_flag("tour_seen", True)
        state.set_setting("theme", "dark")

        state.reset_session()

        assert state.get("ui_flags") == {}
        assert state.get_settings()["theme"] == "dark"


class TestNetworkBinding:
    """Test mirroring of the network monitor"""

    def test_network_status_follows_monitor(self, state, monitor):
        state.bind_network_monitor(monitor)
        assert state.get("network_status") == NetworkStatus.ONLINE

        monitor.force_offline()
        assert state.get("network_status") == NetworkStatus.OFFLINE

    def test_shutdown_detaches_from_monitor(self, memory_kv, monitor):
        container = AppStateContainer(memory_kv)
        container.bind_network_monitor(monitor)
        container.shutdown()

        monitor.force_offline()

        assert container.get("network_status") == NetworkStatus.ONLINE
