# =============================================================================
# tutor_core/offline/reactive_cache.py
# In-Memory, Staleness-Aware Cache with Request De-duplication
# =============================================================================
"""
ReactiveCache - the in-memory layer in front of the local store.

Lookup semantics (get_or_fetch):
- fresh   (now < stale_at):              cached value, loader not called
- stale   (stale_at <= now < expires_at): cached value now, one background
                                          refresh, subscribers told when done
- expired or absent:                      caller waits for the loader; all
                                          concurrent callers share one call

Also:
- LRU eviction past `max_entries`, idle/expiry sweep via evict_expired()
- invalidate(key) / invalidate_prefix(prefix)
- subscribe(key) -> Subscription (event queue + optional callback)
- revalidate_subscribed_stale() for the reconnect sweep
"""

from __future__ import annotations
import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging

from tutor_core.errors import RequestCancelled
from tutor_core.models import CacheEntry, CacheEvent, CacheEventStatus
from tutor_core.offline.cancellation import CancellationToken

logger = logging.getLogger(__name__)

Loader = Callable[[], Any]
Windows = Tuple[float, float]


@dataclass
class _InFlight:
    """One running loader call shared by every waiter on its key."""
    key: str
    future: Future = field(default_factory=Future)
    waiters: int = 0
    background: bool = False
    loader: Optional[Loader] = None
    windows: Optional[Windows] = None


class Subscription:
    """
    Stream of CacheEvents for one key.

    Events are queued (read with get()/drain() or by iterating) and, when a
    callback is given, also pushed to it on the notifying thread.
    """

    def __init__(
        self,
        cache: ReactiveCache,
        key: str,
        callback: Optional[Callable[[CacheEvent], None]] = None,
    ):
        self.key = key
        self._cache = cache
        self._callback = callback
        self._queue: "queue.Queue[CacheEvent]" = queue.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: CacheEvent) -> None:
        if self._closed:
            return
        self._queue.put(event)
        if self._callback is not None:
            try:
                self._callback(event)
            except Exception as e:
                logger.error(f"Error in subscription callback for '{self.key}': {e}", exc_info=True)

    def get(self, timeout: Optional[float] = None) -> CacheEvent:
        """Next event; raises queue.Empty on timeout."""
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[CacheEvent]:
        """All events queued so far."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def __iter__(self) -> Iterator[CacheEvent]:
        while not (self._closed and self._queue.empty()):
            try:
                yield self._queue.get(timeout=0.1)
            except queue.Empty:
                continue

    def unsubscribe(self) -> None:
        if not self._closed:
            self._closed = True
            self._cache._unsubscribe(self)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.unsubscribe()


class ReactiveCache:
    """
    Process-wide in-memory cache.

    Usage:
        cache = ReactiveCache(max_entries=256)
        value = cache.get_or_fetch("content:python-basics", load_it,
                                   stale_after=60, expire_after=3600)
    """

    def __init__(
        self,
        max_entries: int = 256,
        max_idle: Optional[float] = None,
        default_stale_after: float = 300.0,
        default_expire_after: float = 3600.0,
        max_workers: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        if default_stale_after > default_expire_after:
            raise ValueError("default_stale_after must not exceed default_expire_after")
        self.max_entries = max_entries
        self.max_idle = max_idle
        self.default_stale_after = default_stale_after
        self.default_expire_after = default_expire_after
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ReactiveCache")

        self._lock = threading.RLock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._loaders: Dict[str, Loader] = {}
        self._windows: Dict[str, Windows] = {}
        self._inflight: Dict[str, _InFlight] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._stats = {
            "hits": 0,
            "stale_hits": 0,
            "misses": 0,
            "loads": 0,
            "load_errors": 0,
            "evictions": 0,
        }

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def _resolve_windows(self, stale_after: Optional[float], expire_after: Optional[float]) -> Windows:
        stale = self.default_stale_after if stale_after is None else stale_after
        expire = self.default_expire_after if expire_after is None else expire_after
        if stale > expire:
            raise ValueError("stale_after must not exceed expire_after")
        return stale, expire

    def get_or_fetch(
        self,
        key: str,
        loader: Loader,
        *,
        stale_after: Optional[float] = None,
        expire_after: Optional[float] = None,
        force: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """
        Return the value for key, loading it when needed.

        Args:
            key: Cache key
            loader: Zero-argument callable producing the value
            stale_after: Seconds until a loaded value turns stale
            expire_after: Seconds until a loaded value is unusable
            force: Ignore any cached value and wait for a load
            cancel_token: Lets the caller stop waiting

        Raises:
            RequestCancelled: the caller cancelled before the load finished
            Exception: whatever the loader raised
        """
        windows = self._resolve_windows(stale_after, expire_after)
        events: List[CacheEvent] = []
        launches: List[_InFlight] = []
        inflight: Optional[_InFlight] = None
        stale_value: Any = None

        with self._lock:
            self._loaders[key] = loader
            self._windows[key] = windows
            now = self._clock()
            entry = self._entries.get(key)

            if entry is not None and not force:
                if entry.is_fresh(now):
                    self._touch(entry, now)
                    self._stats["hits"] += 1
                    return entry.value
                if entry.is_expired(now):
                    self._remove(key)
                    entry = None

            if entry is not None and not force:
                # Stale: serve now, refresh once in the background
                self._touch(entry, now)
                self._stats["stale_hits"] += 1
                stale_value = entry.value
                events.append(CacheEvent(key, CacheEventStatus.STALE, value=stale_value))
                self._start_load(key, loader, windows, True, events, launches)
            else:
                self._stats["misses"] += 1
                inflight = self._inflight.get(key)
                if inflight is None:
                    inflight = self._start_load(key, loader, windows, False, events, launches)
                inflight.waiters += 1

        self._emit(events)
        self._launch(launches)
        if inflight is None:
            return stale_value
        return self._wait(key, inflight, cancel_token)

    def _start_load(
        self,
        key: str,
        loader: Loader,
        windows: Windows,
        background: bool,
        events: List[CacheEvent],
        launches: List[_InFlight],
    ) -> _InFlight:
        # caller holds _lock; the loader is submitted by _launch once LOADING is out
        existing = self._inflight.get(key)
        if existing is not None:
            return existing
        inflight = _InFlight(key, background=background, loader=loader, windows=windows)
        self._inflight[key] = inflight
        self._stats["loads"] += 1
        events.append(CacheEvent(key, CacheEventStatus.LOADING, value=self._current_value(key)))
        launches.append(inflight)
        logger.debug(f"Started {'background ' if background else ''}load for '{key}'")
        return inflight

    def _launch(self, launches: List[_InFlight]) -> None:
        for inflight in launches:
            self._executor.submit(self._run_loader, inflight)

    def _run_loader(self, inflight: _InFlight) -> None:
        future = inflight.future
        if not future.set_running_or_notify_cancel():
            return
        try:
            value = inflight.loader()
        except BaseException as e:
            self._finish_load(inflight.key, inflight, error=e)
            future.set_exception(e)
            return
        self._finish_load(inflight.key, inflight, value=value, windows=inflight.windows)
        future.set_result(value)

    def _finish_load(
        self,
        key: str,
        inflight: _InFlight,
        value: Any = None,
        windows: Optional[Windows] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        events: List[CacheEvent] = []
        with self._lock:
            if self._inflight.get(key) is inflight:
                del self._inflight[key]
            if error is not None:
                self._stats["load_errors"] += 1
                logger.warning(f"Load for '{key}' failed: {error}")
                events.append(CacheEvent(key, CacheEventStatus.ERROR, value=self._current_value(key), error=error))
            else:
                self._insert(key, value, windows)
                events.append(CacheEvent(key, CacheEventStatus.READY, value=value))
        self._emit(events)

    def _wait(self, key: str, inflight: _InFlight, cancel_token: Optional[CancellationToken]) -> Any:
        future = inflight.future
        if cancel_token is None:
            try:
                return future.result()
            finally:
                with self._lock:
                    inflight.waiters -= 1

        done = threading.Event()
        future.add_done_callback(lambda _: done.set())
        cancel_token.add_callback(done.set)
        try:
            done.wait()
        finally:
            cancel_token.remove_callback(done.set)

        with self._lock:
            inflight.waiters -= 1
            abandoned = cancel_token.cancelled and not future.done()
            if abandoned and inflight.waiters == 0 and not inflight.background:
                # Nobody else needs it; drop it if it has not started yet
                if future.cancel() and self._inflight.get(key) is inflight:
                    del self._inflight[key]
                    logger.debug(f"Cancelled unstarted load for '{key}'")
        if abandoned:
            raise RequestCancelled(key)
        return future.result()

    # =========================================================================
    # DIRECT ACCESS
    # =========================================================================

    def set(
        self,
        key: str,
        value: Any,
        stale_after: Optional[float] = None,
        expire_after: Optional[float] = None,
    ) -> bool:
        """
        Insert a value (write-through path).

        Returns:
            False if an equal value was already cached (deadlines are still
            renewed, subscribers are not notified)
        """
        windows = self._resolve_windows(stale_after, expire_after)
        with self._lock:
            existing = self._entries.get(key)
            self._insert(key, value, windows)
            if existing is not None and existing.value == value:
                return False
        self._emit([CacheEvent(key, CacheEventStatus.READY, value=value)])
        return True

    def register_loader(
        self,
        key: str,
        loader: Loader,
        stale_after: Optional[float] = None,
        expire_after: Optional[float] = None,
    ) -> None:
        """Remember how to reload key (used by the reconnect sweep)."""
        windows = self._resolve_windows(stale_after, expire_after)
        with self._lock:
            self._loaders[key] = loader
            self._windows[key] = windows

    def state(self, key: str) -> Optional[str]:
        """'fresh', 'stale', 'expired' or None when nothing is cached."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            if entry.is_fresh(now):
                return "fresh"
            return "stale" if entry.is_stale(now) else "expired"

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Copy of the entry for key, without touching LRU order."""
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry is not None else None

    def pending(self, key: str) -> Optional[Future]:
        """Future of the load currently running for key, if any."""
        with self._lock:
            inflight = self._inflight.get(key)
            return inflight.future if inflight else None

    def _current_value(self, key: str) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry is not None else None

    def _touch(self, entry: CacheEntry, now: float) -> None:
        entry.last_accessed_at = now
        self._entries.move_to_end(entry.key)

    def _insert(self, key: str, value: Any, windows: Optional[Windows]) -> None:
        # caller holds _lock
        stale_after, expire_after = windows or self._windows.get(
            key, (self.default_stale_after, self.default_expire_after)
        )
        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            inserted_at=now,
            stale_at=now + stale_after,
            expires_at=now + expire_after,
            last_accessed_at=now,
        )
        self._entries.move_to_end(key)
        self._sweep(now)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats["evictions"] += 1
            logger.debug(f"Evicted least recently used '{evicted}'")

    def _remove(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    # =========================================================================
    # EVICTION / INVALIDATION
    # =========================================================================

    def invalidate(self, key: str) -> bool:
        """Drop one key."""
        with self._lock:
            removed = self._remove(key)
        if removed:
            logger.debug(f"Invalidated '{key}'")
        return removed

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix."""
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                self._remove(key)
        if keys:
            logger.debug(f"Invalidated {len(keys)} entries under '{prefix}'")
        return len(keys)

    def evict_expired(self) -> int:
        """Remove expired entries and entries idle longer than max_idle."""
        with self._lock:
            return self._sweep(self._clock())

    def _sweep(self, now: float) -> int:
        # caller holds _lock
        doomed = [
            key for key, entry in self._entries.items()
            if entry.is_expired(now)
            or (self.max_idle is not None and now - entry.last_accessed_at > self.max_idle)
        ]
        for key in doomed:
            self._remove(key)
        self._stats["evictions"] += len(doomed)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def subscribe(self, key: str, callback: Optional[Callable[[CacheEvent], None]] = None) -> Subscription:
        """Subscribe to events for key."""
        subscription = Subscription(self, key, callback)
        with self._lock:
            self._subscribers.setdefault(key, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.key, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.key, None)

    def subscribed_keys(self) -> List[str]:
        with self._lock:
            return [key for key, subs in self._subscribers.items() if subs]

    def _emit(self, events: List[CacheEvent]) -> None:
        # Delivered outside _lock so callbacks may call back into the cache
        for event in events:
            with self._lock:
                targets = list(self._subscribers.get(event.key, []))
            for subscription in targets:
                subscription.deliver(event)

    def revalidate_subscribed_stale(self) -> List[str]:
        """
        Reconnect sweep: one background refresh per subscribed stale key.

        Returns:
            Keys whose refresh was started or already running
        """
        events: List[CacheEvent] = []
        launches: List[_InFlight] = []
        started: List[str] = []
        with self._lock:
            now = self._clock()
            for key, subscribers in self._subscribers.items():
                entry = self._entries.get(key)
                if not subscribers or entry is None or not entry.is_stale(now):
                    continue
                loader = self._loaders.get(key)
                if loader is None:
                    continue
                windows = self._windows.get(key, (self.default_stale_after, self.default_expire_after))
                self._start_load(key, loader, windows, True, events, launches)
                started.append(key)
        self._emit(events)
        self._launch(launches)
        if started:
            logger.info(f"Revalidating {len(started)} stale subscribed key(s)")
        return started

    # =========================================================================
    # HOUSEKEEPING
    # =========================================================================

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no load is running; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                futures = [i.future for i in self._inflight.values() if i.future is not None]
            if not futures:
                return True
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(futures, timeout=remaining)

    def stats(self) -> Dict[str, int]:
        """Counters for diagnostics."""
        with self._lock:
            return {
                **self._stats,
                "entries": len(self._entries),
                "in_flight": len(self._inflight),
                "subscribed_keys": len([k for k, s in self._subscribers.items() if s]),
            }

    def shutdown(self, wait_for_loads: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_loads)
