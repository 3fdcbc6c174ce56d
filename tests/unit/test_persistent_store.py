# =============================================================================
# tests/unit/test_persistent_store.py
# Unit Tests for LocalDatabase and the Entity Stores
# =============================================================================

import sqlite3
import threading
from dataclasses import replace
from datetime import datetime

import pytest

from tutor_core.errors import StorageError, StorageErrorKind
from tutor_core.models import ContentItem, ProgressRecord, ProgressStatus
from tutor_core.offline.local_database import (
    SCHEMA_VERSION,
    LocalDatabase,
    _migrate_to_v1,
    classify_sqlite_error,
)


def make_item(content_id="python-basics", category="python", version=1, title="Python Basics"):
    when = datetime(2024, 1, 1, 9, 0, 0, 123456)
    return ContentItem(
        id=content_id,
        category=category,
        version=version,
        payload={"units": [{"id": "unit-1"}], "level": "beginner"},
        title=title,
        fetched_at=when,
        last_accessed_at=when,
    )


class TestContentStore:
    """Test tutorial persistence"""

    def test_put_then_get_returns_equal_item(self, content_store):
        """A stored item reads back structurally equal"""
        item = make_item()
        assert content_store.put(item) is True

        loaded = content_store.get("python-basics")

        assert loaded == item
        assert loaded is not item

    def test_put_unchanged_item_is_a_noop(self, content_store):
        """Re-putting an identical item reports no mutation"""
        item = make_item()
        content_store.put(item)

        assert content_store.put(item) is False

    def test_put_changed_item_replaces(self, content_store):
        content_store.put(make_item(version=1))
        assert content_store.put(make_item(version=2)) is True
        assert content_store.get("python-basics").version == 2

    def test_get_missing_returns_none(self, content_store):
        assert content_store.get("does-not-exist") is None

    def test_query_by_category(self, content_store):
        """Index lookups return only matching items"""
        content_store.put(make_item("python-basics", "python"))
        content_store.put(make_item("python-advanced", "python"))
        content_store.put(make_item("go-basics", "go"))

        python_items = content_store.query_by_index("category", "python")

        assert sorted(item.id for item in python_items) == ["python-advanced", "python-basics"]

    def test_unknown_index_raises(self, content_store):
        with pytest.raises(ValueError):
            content_store.query_by_index("version", 1)

    def test_delete(self, content_store):
        content_store.put(make_item())

        assert content_store.delete("python-basics") is True
        assert content_store.delete("python-basics") is False
        assert content_store.get("python-basics") is None

    def test_touch_updates_last_accessed_only(self, content_store):
        item = make_item()
        content_store.put(item)
        later = datetime(2024, 2, 1, 12, 0, 0)

        assert content_store.touch("python-basics", later) is True

        loaded = content_store.get("python-basics")
        assert loaded.last_accessed_at == later
        assert loaded.fetched_at == item.fetched_at
        assert loaded.payload == item.payload

    def test_to_dataframe(self, content_store):
        content_store.put(make_item("python-basics"))
        content_store.put(make_item("go-basics", "go"))

        df = content_store.to_dataframe()

        assert len(df) == 2
        assert set(df["category"]) == {"python", "go"}


class TestProgressStore:
    """Test progress persistence"""

    def test_round_trip(self, progress_store):
        record = ProgressRecord(
            content_id="python-basics",
            completed_units=frozenset({"unit-1", "unit-2"}),
            current_unit_id="unit-2",
            status=ProgressStatus.IN_PROGRESS,
            updated_at=datetime(2024, 1, 1, 10, 0, 0),
        )
        progress_store.put(record)

        assert progress_store.get("python-basics") == record

    def test_query_by_status_accepts_enum(self, progress_store):
        progress_store.put(ProgressRecord("a", status=ProgressStatus.COMPLETED))
        progress_store.put(ProgressRecord("b", status=ProgressStatus.IN_PROGRESS))
        progress_store.put(ProgressRecord("c", status=ProgressStatus.COMPLETED))

        completed = progress_store.query_by_index("status", ProgressStatus.COMPLETED)

        assert sorted(r.content_id for r in completed) == ["a", "c"]


class TestQuarantine:
    """Test handling of corrupt rows"""

    def _corrupt(self, database, content_id):
        with database.transaction() as conn:
            conn.execute(
                "UPDATE content_items SET payload_json = ? WHERE id = ?",
                ["{not json", content_id],
            )

    def test_corrupt_row_raises_once_then_disappears(self, database, content_store):
        """get raises CORRUPT after quarantining, then reports the row as absent"""
        content_store.put(make_item())
        self._corrupt(database, "python-basics")

        with pytest.raises(StorageError) as exc_info:
            content_store.get("python-basics")

        assert exc_info.value.kind == StorageErrorKind.CORRUPT
        assert exc_info.value.entity_id == "python-basics"
        assert content_store.get("python-basics") is None

        quarantined = database.list_quarantined()
        assert len(quarantined) == 1
        assert quarantined[0]["record_id"] == "python-basics"

    def test_listing_skips_corrupt_rows(self, database, content_store):
        """Index reads keep working around corrupt rows"""
        content_store.put(make_item("python-basics"))
        content_store.put(make_item("python-advanced"))
        self._corrupt(database, "python-basics")

        items = content_store.query_by_index("category", "python")

        assert [item.id for item in items] == ["python-advanced"]
        assert len(database.list_quarantined()) == 1


class TestConcurrentWrites:
    """Test per-row write serialization"""

    def test_same_id_writers_leave_one_whole_item(self, content_store, database):
        """Racing writers of one id never leave a mixed row"""
        items = [
            replace(make_item(version=v, title=f"Python Basics v{v}"), payload={"units": [], "revision": v})
            for v in range(1, 9)
        ]
        barrier = threading.Barrier(len(items))

        def writer(item):
            barrier.wait()
            content_store.put(item)

        threads = [threading.Thread(target=writer, args=(item,)) for item in items]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        loaded = content_store.get("python-basics")
        assert loaded in items
        assert loaded.payload["revision"] == loaded.version
        assert loaded.title == f"Python Basics v{loaded.version}"
        assert database.active_row_locks() == 0

    def test_other_ids_do_not_wait(self, content_store, database):
        """A held row lock blocks writers of that id only"""
        other_done = threading.Event()
        same_done = threading.Event()

        def put_and_signal(item, event):
            content_store.put(item)
            event.set()

        with database.row_lock("content_items", "python-basics"):
            other = threading.Thread(target=put_and_signal, args=(make_item("go-basics", "go"), other_done))
            same = threading.Thread(target=put_and_signal, args=(make_item(), same_done))
            other.start()
            same.start()

            assert other_done.wait(5)
            assert not same_done.wait(0.2)

        assert same_done.wait(5)
        other.join(timeout=5)
        same.join(timeout=5)
        assert content_store.get("python-basics") == make_item()
        assert database.active_row_locks() == 0

    def test_row_locks_are_released_after_writes(self, content_store, database):
        for n in range(50):
            content_store.put(make_item(f"tutorial-{n}"))
        content_store.delete("tutorial-0")

        assert database.active_row_locks() == 0


class TestMigrations:
    """Test schema versioning"""

    def test_fresh_database_is_at_latest_version(self, database):
        assert database.schema_version == SCHEMA_VERSION

    def test_v1_database_is_migrated_additively(self, tmp_path):
        """Existing rows survive the v1 -> v2 upgrade"""
        path = tmp_path / "old.db"
        conn = sqlite3.connect(str(path))
        _migrate_to_v1(conn)
        conn.execute(
            "INSERT INTO content_items VALUES (?, ?, ?, ?, ?, ?)",
            ["python-basics", "python", 1, '{"units": []}', "2024-01-01T09:00:00", "2024-01-01T09:00:00"],
        )
        conn.execute("PRAGMA user_version = 1")
        conn.commit()
        conn.close()

        db = LocalDatabase(path)
        try:
            db.initialize()
            assert db.schema_version == SCHEMA_VERSION
            row = db.get_row("content_items", "python-basics")
            assert row["title"] == ""
            assert db.list_quarantined() == []
        finally:
            db.close()

    def test_newer_schema_is_fatal(self, tmp_path):
        """A database from a newer release refuses every call"""
        path = tmp_path / "future.db"
        conn = sqlite3.connect(str(path))
        conn.execute("PRAGMA user_version = 99")
        conn.commit()
        conn.close()

        db = LocalDatabase(path)
        try:
            with pytest.raises(StorageError) as first:
                db.initialize()
            assert first.value.kind == StorageErrorKind.SCHEMA_MISMATCH
            assert first.value.recoverable is False

            with pytest.raises(StorageError):
                db.get_row("content_items", "python-basics")
        finally:
            db.close()


class TestSqliteErrorClassification:
    """Test mapping of sqlite3 errors"""

    @pytest.mark.parametrize("message,kind", [
        ("database or disk is full", StorageErrorKind.QUOTA_EXCEEDED),
        ("database disk image is malformed", StorageErrorKind.CORRUPT),
        ("file is not a database", StorageErrorKind.CORRUPT),
        ("no such table: content_items", StorageErrorKind.SCHEMA_MISMATCH),
    ])
    def test_known_messages(self, message, kind):
        error = classify_sqlite_error(sqlite3.OperationalError(message), entity_id="x", operation="put")

        assert error.kind == kind
        assert error.operation == "put"

    def test_unknown_message_is_not_mapped(self):
        assert classify_sqlite_error(sqlite3.OperationalError("database is locked")) is None
