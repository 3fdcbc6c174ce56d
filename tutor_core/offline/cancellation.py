# =============================================================================
# tutor_core/offline/cancellation.py
# Cancellation Tokens for Abandonable Requests
# =============================================================================
"""
CancellationToken - lets a caller abandon a request it is waiting on.

Cancelling only detaches the caller. Work shared with other callers keeps
running; see ReactiveCache.get_or_fetch.
"""

from __future__ import annotations
import threading
from typing import Callable, List


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)
