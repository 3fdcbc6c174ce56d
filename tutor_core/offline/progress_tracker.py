# =============================================================================
# tutor_core/offline/progress_tracker.py
# Local-Only Learner Progress with Ordered Background Persistence
# =============================================================================
"""
ProgressTracker - records which units of a tutorial a learner has finished.

- Mutations take effect synchronously: the returned record, get_progress()
  and registered callbacks all see it at once.
- Persistence runs on a single writer thread, so writes land in the order
  they were issued. Until a write lands, reads are served from an in-memory
  overlay.
- Progress exists only for tutorials that are available locally; anything
  else is rejected with ProgressError.
- Nothing is queued for a remote backend; progress never leaves the device.
"""

from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Dict, List, Optional
import logging

import pandas as pd

from tutor_core.errors import ProgressError, StorageError, StorageErrorKind, handle_error
from tutor_core.models import ProgressRecord, ProgressStatus, content_key
from tutor_core.offline.persistent_store import ContentStore, ProgressStore
from tutor_core.offline.reactive_cache import ReactiveCache

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressRecord], None]


class ProgressTracker:
    """
    Owner of ProgressRecord mutations.

    Usage:
        tracker = ProgressTracker(progress_store, content_store, cache)
        record = tracker.mutate_progress("python-basics", "unit-1")
        tracker.complete_content("python-basics")
        tracker.flush()
    """

    def __init__(
        self,
        progress_store: ProgressStore,
        content_store: ContentStore,
        cache: Optional[ReactiveCache] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._store = progress_store
        self._content_store = content_store
        self._cache = cache
        self._now = now
        self._lock = threading.RLock()
        self._overlay: Dict[str, ProgressRecord] = {}
        self._pending: Dict[str, int] = {}
        self._futures = set()
        self._failed_writes: List[Exception] = []
        self._callbacks: List[ProgressCallback] = []
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ProgressWriter")

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def mutate_progress(self, content_id: str, unit_id: str) -> ProgressRecord:
        """
        Mark one unit of a tutorial as completed.

        Args:
            content_id: Tutorial id
            unit_id: Unit within the tutorial

        Returns:
            The updated record (already visible to readers)

        Raises:
            ProgressError: unit_id is empty or the tutorial is not available locally
        """
        if not unit_id:
            raise ProgressError("A unit id is required", content_id=content_id)
        self._require_content(content_id, unit_id)

        with self._lock:
            current = self._current(content_id)
            updated = current.with_unit(unit_id, self._now())
            if self._same_progress(current, updated):
                return current
            self._stage(updated)

        self._notify_callbacks(updated)
        return updated

    def complete_content(self, content_id: str) -> ProgressRecord:
        """Apply the explicit completion signal for a tutorial."""
        self._require_content(content_id)

        with self._lock:
            current = self._current(content_id)
            if current.status == ProgressStatus.COMPLETED:
                return current
            updated = current.completed(self._now())
            self._stage(updated)

        logger.info(f"Tutorial '{content_id}' completed")
        self._notify_callbacks(updated)
        return updated

    @staticmethod
    def _same_progress(before: ProgressRecord, after: ProgressRecord) -> bool:
        return (
            before.completed_units == after.completed_units
            and before.current_unit_id == after.current_unit_id
            and before.status == after.status
        )

    def _require_content(self, content_id: str, unit_id: Optional[str] = None) -> None:
        if self._cache is not None and self._cache.peek(content_key(content_id)) is not None:
            return
        try:
            available = self._content_store.get(content_id) is not None
        except StorageError as e:
            if e.kind != StorageErrorKind.CORRUPT:
                raise
            available = False
        if not available:
            raise ProgressError(
                f"Tutorial '{content_id}' is not available locally",
                content_id=content_id,
                unit_id=unit_id,
            )

    def _current(self, content_id: str) -> ProgressRecord:
        # caller holds _lock
        if content_id in self._overlay:
            return self._overlay[content_id]
        try:
            stored = self._store.get(content_id)
        except StorageError as e:
            if e.kind != StorageErrorKind.CORRUPT:
                raise
            logger.warning(f"Progress for '{content_id}' was corrupt; starting over")
            stored = None
        return stored or ProgressRecord(content_id=content_id)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _stage(self, record: ProgressRecord) -> None:
        # caller holds _lock
        content_id = record.content_id
        self._overlay[content_id] = record
        self._pending[content_id] = self._pending.get(content_id, 0) + 1
        future = self._writer.submit(self._persist, record)
        self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _persist(self, record: ProgressRecord) -> None:
        content_id = record.content_id
        ok = False
        try:
            self._store.put(record)
            ok = True
        except Exception as e:
            handle_error(e, user_message=f"Could not save progress for '{content_id}'")
            with self._lock:
                self._failed_writes.append(e)
        finally:
            with self._lock:
                self._pending[content_id] -= 1
                if self._pending[content_id] == 0:
                    del self._pending[content_id]
                    # Keep the overlay after a failed write so reads stay consistent
                    if ok and self._overlay.get(content_id) is record:
                        del self._overlay[content_id]

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued writes.

        Returns:
            False if the timeout expired first

        Raises:
            The first write error since the last flush (StorageError, or an
            unclassified sqlite3 error)
        """
        with self._lock:
            futures = list(self._futures)
        done, not_done = wait(futures, timeout=timeout)
        with self._lock:
            failed, self._failed_writes = self._failed_writes, []
        if failed:
            raise failed[0]
        return not not_done

    def pending_writes(self) -> int:
        with self._lock:
            return sum(self._pending.values())

    # =========================================================================
    # READS
    # =========================================================================

    def get_progress(self, content_id: str) -> Optional[ProgressRecord]:
        """Latest record for a tutorial, including unsaved changes."""
        with self._lock:
            if content_id in self._overlay:
                return self._overlay[content_id]
        try:
            return self._store.get(content_id)
        except StorageError as e:
            if e.kind != StorageErrorKind.CORRUPT:
                raise
            return None

    def list_progress(self, status: Optional[ProgressStatus] = None) -> List[ProgressRecord]:
        """All records, optionally filtered by status, including unsaved changes."""
        stored = self._store.all() if status is None else self._store.query_by_index("status", status)
        records = {record.content_id: record for record in stored}
        with self._lock:
            overlay = dict(self._overlay)
        for content_id, record in overlay.items():
            if status is None or record.status == status:
                records[content_id] = record
            else:
                records.pop(content_id, None)
        return sorted(records.values(), key=lambda r: r.content_id)

    def progress_dataframe(self) -> pd.DataFrame:
        """Persisted progress as a DataFrame (writes are flushed first)."""
        self.flush()
        df = self._store.to_dataframe()
        if not df.empty:
            df["updated_at"] = pd.to_datetime(df["updated_at"])
        return df

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: ProgressCallback) -> None:
        """Register a callback for every applied mutation."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: ProgressCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self, record: ProgressRecord) -> None:
        for callback in list(self._callbacks):
            try:
                callback(record)
            except Exception as e:
                logger.error(f"Error in progress callback: {e}", exc_info=True)

    def shutdown(self) -> None:
        """Finish queued writes and stop the writer thread."""
        self._writer.shutdown(wait=True)
