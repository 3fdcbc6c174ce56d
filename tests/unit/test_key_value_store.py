# =============================================================================
# tests/unit/test_key_value_store.py
# Unit Tests for the Key-Value Stores
# =============================================================================

import pytest

from tutor_core.errors import StorageError, StorageErrorKind


@pytest.fixture(params=["sqlite", "memory"])
def any_kv(request, kv_store, memory_kv):
    return kv_store if request.param == "sqlite" else memory_kv


class TestKeyValueStore:
    """Behavior shared by every backend"""

    def test_missing_key_returns_default(self, any_kv):
        assert any_kv.get("theme") is None
        assert any_kv.get("theme", "light") == "light"

    def test_set_and_get_json_values(self, any_kv):
        any_kv.set("settings", {"theme": "dark", "font_size": 18})
        any_kv.set("selection", None)

        assert any_kv.get("settings") == {"theme": "dark", "font_size": 18}
        assert any_kv.get("selection", "fallback") is None

    def test_delete_and_keys(self, any_kv):
        any_kv.set("b", 1)
        any_kv.set("a", 2)

        assert any_kv.keys() == ["a", "b"]
        assert any_kv.delete("a") is True
        assert any_kv.delete("a") is False
        assert any_kv.keys() == ["b"]


class TestSQLiteKeyValueStore:
    """SQLite specific behavior"""

    def test_non_serializable_value_is_rejected(self, kv_store):
        with pytest.raises(ValueError):
            kv_store.set("bad", object())

    def test_invalid_stored_json_is_corrupt(self, database, kv_store):
        database.set_setting("broken", "{nope")

        with pytest.raises(StorageError) as exc_info:
            kv_store.get("broken")

        assert exc_info.value.kind == StorageErrorKind.CORRUPT

    def test_values_survive_reopen(self, offline_config, kv_store, database):
        from tutor_core.offline.key_value_store import SQLiteKeyValueStore
        from tutor_core.offline.local_database import LocalDatabase

        kv_store.set("content_index", {"items": [1, 2, 3]})
        database.close()

        reopened = LocalDatabase(offline_config.db_path)
        try:
            assert SQLiteKeyValueStore(reopened).get("content_index") == {"items": [1, 2, 3]}
        finally:
            reopened.close()
