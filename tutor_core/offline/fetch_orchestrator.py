# =============================================================================
# tutor_core/offline/fetch_orchestrator.py
# Local-First Content Resolution with Remote Fallback
# =============================================================================
"""
FetchOrchestrator - decides, per request, where tutorial content comes from.

Per-request state machine:

    IDLE -> CHECKING_LOCAL -> RESOLVED            fresh cache / fresh stored copy
                           -> FETCHING_REMOTE     absent, stale or forced; online
                           -> FAILED              absent or stale; offline
    FETCHING_REMOTE        -> RESOLVED | FAILED

Remote results are written to the persistent store first and the cache
second. Transient remote failures are retried with bounded exponential
backoff. Being offline is an outcome (ContentUnavailableOffline), not an
exception.
"""

from __future__ import annotations
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import logging

from tutor_core.api.base_connector import BaseContentConnector
from tutor_core.config import OfflineConfig
from tutor_core.errors import (
    NetworkError,
    NetworkErrorKind,
    RemoteServiceError,
    RequestCancelled,
    StorageError,
    StorageErrorKind,
)
from tutor_core.logging import LogContext
from tutor_core.models import (
    INDEX_KEY,
    CacheEvent,
    CacheEventStatus,
    ContentItem,
    ContentMetadata,
    NetworkState,
    content_key,
)
from tutor_core.offline.cancellation import CancellationToken
from tutor_core.offline.key_value_store import KeyValueStore
from tutor_core.offline.network_monitor import NetworkMonitor
from tutor_core.offline.persistent_store import ContentStore
from tutor_core.offline.reactive_cache import ReactiveCache, Subscription

logger = logging.getLogger(__name__)

# Key-value entry holding the last index seen online
INDEX_STORE_KEY = "content_index"


class FetchState(Enum):
    """States of one content request."""
    IDLE = "idle"
    CHECKING_LOCAL = "checking_local"
    FETCHING_REMOTE = "fetching_remote"
    RESOLVED = "resolved"
    FAILED = "failed"


TRANSITIONS = {
    FetchState.IDLE: {FetchState.CHECKING_LOCAL},
    FetchState.CHECKING_LOCAL: {FetchState.RESOLVED, FetchState.FETCHING_REMOTE, FetchState.FAILED},
    FetchState.FETCHING_REMOTE: {FetchState.RESOLVED, FetchState.FAILED},
    FetchState.RESOLVED: set(),
    FetchState.FAILED: set(),
}


class FetchSource(Enum):
    """Where a resolved value came from."""
    CACHE = "cache"
    STORE = "store"
    REMOTE = "remote"


@dataclass
class FetchRequest:
    """Lifecycle of one call; never shared between calls."""
    key: str
    state: FetchState = FetchState.IDLE
    history: List[FetchState] = field(default_factory=lambda: [FetchState.IDLE])

    def advance(self, new_state: FetchState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal fetch transition for '{self.key}': {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)


@dataclass(frozen=True)
class ContentUnavailableOffline:
    """
    Outcome for content that cannot be served without the network.

    stale_value carries the last known local copy, if any.
    """
    content_id: str
    reason: str
    stale_value: Any = None
    error: Optional[Exception] = None


@dataclass
class FetchResult:
    """
    Result of one orchestrated fetch.

    Truthy only when a current value was resolved. `broadcast` is True when
    subscribers of the key were already notified through the cache.
    """
    success: bool
    key: str
    value: Any = None
    source: Optional[FetchSource] = None
    revalidating: bool = False
    broadcast: bool = False
    unavailable: Optional[ContentUnavailableOffline] = None
    error: Optional[Exception] = None
    history: List[FetchState] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.success

    @property
    def is_unavailable(self) -> bool:
        return self.unavailable is not None

    @property
    def state(self) -> FetchState:
        return self.history[-1] if self.history else FetchState.IDLE

    @classmethod
    def ok(
        cls,
        request: FetchRequest,
        value: Any,
        source: FetchSource,
        revalidating: bool = False,
        broadcast: bool = False,
    ) -> FetchResult:
        return cls(
            success=True,
            key=request.key,
            value=value,
            source=source,
            revalidating=revalidating,
            broadcast=broadcast,
            history=list(request.history),
        )

    @classmethod
    def offline(cls, request: FetchRequest, unavailable: ContentUnavailableOffline) -> FetchResult:
        return cls(
            success=False,
            key=request.key,
            unavailable=unavailable,
            error=unavailable.error,
            history=list(request.history),
        )

    @classmethod
    def fail(cls, request: FetchRequest, error: Exception) -> FetchResult:
        return cls(success=False, key=request.key, error=error, history=list(request.history))


def backoff_delay(attempt: int, base: float, cap: float, retry_after: Optional[float] = None) -> float:
    """
    Delay before retry number `attempt` (0-based).

    base * 2**attempt capped at `cap`; a server supplied retry_after is a
    lower bound.
    """
    delay = min(base * (2 ** attempt), cap)
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


class FetchOrchestrator:
    """
    Resolves tutorial content through cache, local store and remote source.

    Usage:
        orchestrator = FetchOrchestrator(store, kv, cache, monitor, connector, config)
        result = orchestrator.get_content("python-basics")
        if result:
            render(result.value.payload)
        elif result.is_unavailable:
            show_offline_notice(result.unavailable.stale_value)
    """

    def __init__(
        self,
        store: ContentStore,
        kv_store: KeyValueStore,
        cache: ReactiveCache,
        monitor: NetworkMonitor,
        connector: BaseContentConnector,
        config: Optional[OfflineConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._kv = kv_store
        self._cache = cache
        self._monitor = monitor
        self._connector = connector
        self._config = config or OfflineConfig()
        self._sleep = sleep
        self._now = now
        self._executor = ThreadPoolExecutor(
            max_workers=self._config.cache_workers,
            thread_name_prefix="FetchOrchestrator",
        )
        # Connector calls; each one bounded by remote_timeout
        self._remote_executor = ThreadPoolExecutor(
            max_workers=self._config.cache_workers,
            thread_name_prefix="RemoteSource",
        )
        self._closed = threading.Event()
        self._monitor.register_callback(self.on_network_change)

    # =========================================================================
    # CONTENT
    # =========================================================================

    def get_content(
        self,
        content_id: str,
        force_revalidate: bool = False,
        cancel_token: Optional[CancellationToken] = None,
    ) -> FetchResult:
        """
        Resolve one tutorial.

        Args:
            content_id: Tutorial id
            force_revalidate: Skip local copies and ask the remote source
            cancel_token: Lets the caller stop waiting for a remote fetch

        Returns:
            FetchResult; offline misses carry ContentUnavailableOffline
        """
        key = content_key(content_id)
        request = FetchRequest(key)
        request.advance(FetchState.CHECKING_LOCAL)
        stale_after, expire_after = self._content_windows()
        loader = self._content_loader(content_id)
        online = self._monitor.is_online
        local: Optional[ContentItem] = None

        try:
            if not force_revalidate:
                cache_state = self._cache.state(key)
                if cache_state == "fresh" or (cache_state == "stale" and online):
                    value = self._cache.get_or_fetch(
                        key,
                        loader,
                        stale_after=stale_after,
                        expire_after=expire_after,
                        cancel_token=cancel_token,
                    )
                    request.advance(FetchState.RESOLVED)
                    return FetchResult.ok(request, value, FetchSource.CACHE, revalidating=cache_state == "stale")

            local = self._read_local(content_id)
            if local is not None and not force_revalidate and self._is_fresh(local):
                announced = self._cache.set(key, local, *self._remaining_windows(local))
                self._store.touch(content_id, self._now())
                request.advance(FetchState.RESOLVED)
                return FetchResult.ok(request, local, FetchSource.STORE, broadcast=announced)

            if not online:
                request.advance(FetchState.FAILED)
                last_known = self._last_known(key, local)
                logger.info(f"'{content_id}' is not available offline")
                return FetchResult.offline(
                    request,
                    ContentUnavailableOffline(
                        content_id=content_id,
                        reason="stale" if last_known is not None else "not_downloaded",
                        stale_value=last_known,
                    ),
                )

            request.advance(FetchState.FETCHING_REMOTE)
            value = self._cache.get_or_fetch(
                key,
                loader,
                stale_after=stale_after,
                expire_after=expire_after,
                force=force_revalidate,
                cancel_token=cancel_token,
            )
            request.advance(FetchState.RESOLVED)
            return FetchResult.ok(request, value, FetchSource.REMOTE)

        except NetworkError as e:
            request.advance(FetchState.FAILED)
            return FetchResult.offline(
                request,
                ContentUnavailableOffline(
                    content_id=content_id,
                    reason=e.kind.value,
                    stale_value=self._last_known(key, local),
                    error=e,
                ),
            )
        except (RemoteServiceError, StorageError, RequestCancelled) as e:
            request.advance(FetchState.FAILED)
            logger.warning(f"Fetching '{content_id}' failed: {e}")
            return FetchResult.fail(request, e)

    def _content_windows(self) -> Tuple[float, float]:
        return self._config.content_stale_after, self._config.content_expire_after

    def _remaining_windows(self, item: ContentItem) -> Tuple[float, float]:
        # Cache deadlines follow the stored copy's fetch time
        age = max(0.0, (self._now() - item.fetched_at).total_seconds())
        stale_after = max(0.0, self._config.content_stale_after - age)
        expire_after = max(stale_after, self._config.content_expire_after - age)
        return stale_after, expire_after

    def _is_fresh(self, item: ContentItem) -> bool:
        age = (self._now() - item.fetched_at).total_seconds()
        return age < self._config.content_stale_after

    def _read_local(self, content_id: str) -> Optional[ContentItem]:
        try:
            return self._store.get(content_id)
        except StorageError as e:
            if e.kind != StorageErrorKind.CORRUPT:
                raise
            logger.warning(f"Ignoring corrupt local copy of '{content_id}'")
            return None

    def _last_known(self, key: str, local: Optional[ContentItem]) -> Optional[ContentItem]:
        if local is not None:
            return local
        entry = self._cache.peek(key)
        return entry.value if entry is not None else None

    def _content_loader(self, content_id: str) -> Callable[[], ContentItem]:
        return lambda: self._load_remote_content(content_id)

    def _load_remote_content(self, content_id: str) -> ContentItem:
        """Fetch from the remote source, then write through to the store."""
        remote = self._with_retry(f"content '{content_id}'", lambda: self._connector.fetch_content(content_id))
        if remote.id != content_id:
            logger.warning(f"Remote returned id '{remote.id}' for '{content_id}'")
            remote = replace(remote, id=content_id)

        now = self._now()
        existing = self._read_local(content_id)
        if existing is not None and remote.version <= existing.version:
            item = existing.refreshed(now)
        else:
            item = ContentItem.from_payload(remote, now)
            if existing is not None:
                logger.info(f"'{content_id}' updated: v{existing.version} -> v{remote.version}")

        self._store.put(item)
        return item

    def _with_retry(self, label: str, operation: Callable[[], Any]) -> Any:
        """Run a remote call, retrying transient failures with backoff."""
        attempts = self._config.retry_max_attempts
        attempt = 0
        while True:
            try:
                return self._call_remote(label, operation)
            except (NetworkError, RemoteServiceError) as e:
                if not e.transient or attempt >= attempts - 1:
                    raise
                if not self._monitor.is_online:
                    logger.info(f"Offline while fetching {label}; not retrying")
                    raise
                delay = backoff_delay(
                    attempt,
                    self._config.retry_base_delay,
                    self._config.retry_max_delay,
                    getattr(e, "retry_after", None),
                )
                logger.warning(
                    f"Fetching {label} failed ({e.code}); retry {attempt + 1}/{attempts - 1} in {delay:.2f}s"
                )
                self._sleep(delay)
                attempt += 1

    def _call_remote(self, label: str, operation: Callable[[], Any]) -> Any:
        """One connector call, abandoned after remote_timeout seconds."""
        future = self._remote_executor.submit(operation)
        try:
            return future.result(timeout=self._config.remote_timeout)
        except FutureTimeout:
            if future.done():
                raise
            future.cancel()
            raise NetworkError(
                f"Fetching {label} timed out after {self._config.remote_timeout:g}s",
                kind=NetworkErrorKind.TIMEOUT,
                source=self._connector.config.api_name,
            ) from None

    # =========================================================================
    # INDEX
    # =========================================================================

    def get_index(self, force_revalidate: bool = False) -> FetchResult:
        """
        Resolve the list of available tutorials.

        Online the remote index is cached under a short freshness window and
        persisted; offline the last persisted index is served.
        """
        request = FetchRequest(INDEX_KEY)
        request.advance(FetchState.CHECKING_LOCAL)
        windows = (self._config.index_stale_after, self._config.index_expire_after)
        cache_state = self._cache.state(INDEX_KEY)

        try:
            if not self._monitor.is_online:
                entry = self._cache.peek(INDEX_KEY) if cache_state in ("fresh", "stale") else None
                if entry is not None:
                    request.advance(FetchState.RESOLVED)
                    return FetchResult.ok(request, entry.value, FetchSource.CACHE)
                persisted = self._load_persisted_index()
                if persisted is not None:
                    request.advance(FetchState.RESOLVED)
                    return FetchResult.ok(request, persisted, FetchSource.STORE)
                request.advance(FetchState.FAILED)
                return FetchResult.offline(
                    request, ContentUnavailableOffline(content_id=INDEX_KEY, reason="not_downloaded")
                )

            if cache_state is None or cache_state == "expired" or force_revalidate:
                request.advance(FetchState.FETCHING_REMOTE)
            value = self._cache.get_or_fetch(
                INDEX_KEY,
                self._load_remote_index,
                stale_after=windows[0],
                expire_after=windows[1],
                force=force_revalidate,
            )
            request.advance(FetchState.RESOLVED)
            source = FetchSource.REMOTE if request.history[-2] == FetchState.FETCHING_REMOTE else FetchSource.CACHE
            return FetchResult.ok(request, value, source, revalidating=cache_state == "stale" and not force_revalidate)

        except NetworkError as e:
            request.advance(FetchState.FAILED)
            return FetchResult.offline(
                request,
                ContentUnavailableOffline(
                    content_id=INDEX_KEY,
                    reason=e.kind.value,
                    stale_value=self._load_persisted_index(),
                    error=e,
                ),
            )
        except (RemoteServiceError, StorageError) as e:
            request.advance(FetchState.FAILED)
            logger.warning(f"Fetching the content index failed: {e}")
            return FetchResult.fail(request, e)

    def _load_remote_index(self) -> List[ContentMetadata]:
        index = self._with_retry("content index", self._connector.fetch_index)
        self._kv.set(INDEX_STORE_KEY, {
            "fetched_at": self._now().isoformat(),
            "items": [asdict(item) for item in index],
        })
        logger.debug(f"Persisted content index ({len(index)} items)")
        return index

    def _load_persisted_index(self) -> Optional[List[ContentMetadata]]:
        try:
            stored = self._kv.get(INDEX_STORE_KEY)
        except StorageError as e:
            logger.warning(f"Persisted content index is unreadable: {e}")
            return None
        if not stored:
            return None
        return [ContentMetadata(**item) for item in stored.get("items", [])]

    # =========================================================================
    # SUBSCRIPTIONS / BULK
    # =========================================================================

    def subscribe(
        self,
        content_id: str,
        callback: Optional[Callable[[CacheEvent], None]] = None,
    ) -> Subscription:
        """
        Subscribe to one tutorial and start resolving it in the background.

        The stream starts with `loading` and continues with `ready`, `stale`
        or `error`; later refreshes (e.g. after reconnecting) are delivered
        as they happen. A remote load may add its own `loading` event.
        """
        key = content_key(content_id)
        subscription = self._cache.subscribe(key, callback)
        stale_after, expire_after = self._content_windows()
        self._cache.register_loader(key, self._content_loader(content_id), stale_after, expire_after)
        self._executor.submit(self._resolve_for_subscription, subscription, content_id)
        return subscription

    def _resolve_for_subscription(self, subscription: Subscription, content_id: str) -> None:
        key = subscription.key
        subscription.deliver(CacheEvent(key, CacheEventStatus.LOADING))
        result = self.get_content(content_id)

        # Values that went through the cache already reached every subscriber
        if result.revalidating or result.broadcast or FetchState.FETCHING_REMOTE in result.history:
            return

        if result.success:
            subscription.deliver(CacheEvent(key, CacheEventStatus.READY, value=result.value))
        elif result.unavailable is not None and result.unavailable.stale_value is not None:
            subscription.deliver(CacheEvent(
                key, CacheEventStatus.STALE, value=result.unavailable.stale_value, error=result.unavailable,
            ))
        else:
            subscription.deliver(CacheEvent(
                key, CacheEventStatus.ERROR, error=result.unavailable or result.error,
            ))

    def prefetch(self, content_ids: Iterable[str]) -> Dict[str, FetchResult]:
        """
        Resolve several tutorials concurrently (initial download).

        Returns:
            Dict of content_id -> FetchResult
        """
        content_ids = list(content_ids)
        with LogContext(logger, f"Prefetching {len(content_ids)} tutorials"):
            futures = {content_id: self._executor.submit(self.get_content, content_id) for content_id in content_ids}
            results = {content_id: future.result() for content_id, future in futures.items()}
        downloaded = sum(1 for result in results.values() if result)
        logger.info(f"Prefetched {downloaded}/{len(results)} tutorials")
        return results

    def delete_content(self, content_id: str) -> bool:
        """Remove a tutorial from the local store and the cache."""
        removed = self._store.delete(content_id)
        invalidated = self._cache.invalidate(content_key(content_id))
        if removed or invalidated:
            logger.info(f"Deleted local copy of '{content_id}'")
        return removed or invalidated

    # =========================================================================
    # CONNECTIVITY
    # =========================================================================

    def on_network_change(self, previous: NetworkState, current: NetworkState) -> List[str]:
        """Offline -> online: refresh subscribed stale keys, nothing else."""
        if previous.is_online or not current.is_online or self._closed.is_set():
            return []
        logger.info("Connection restored, revalidating subscribed stale content")
        return self._cache.revalidate_subscribed_stale()

    def close(self) -> None:
        """Stop reacting to the network and release worker threads."""
        self._closed.set()
        self._monitor.unregister_callback(self.on_network_change)
        self._executor.shutdown(wait=True)
        self._remote_executor.shutdown(wait=False, cancel_futures=True)
