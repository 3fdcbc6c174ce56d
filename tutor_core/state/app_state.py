# =============================================================================
# tutor_core/state/app_state.py
# Session-Wide State with Selective Persistence
# =============================================================================
"""
AppStateContainer - small session-wide fields shared across the app.

Fields:
    current_selection   persistent   Selection of tutorial/unit being viewed
    settings            persistent   theme, font_size, language_focus
    network_status      session      mirrored from the NetworkMonitor
    ui_flags            session      ephemeral flags, reset every session

Mutations are synchronous (subscribers are called before set() returns).
Persistent fields are written to the key-value store by a single writer
thread; every write carries a sequence number and a write superseded by a
newer one for the same field is dropped, so the last value set is the one
found after a restart.
"""

from __future__ import annotations
import copy
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from tutor_core.errors import StorageError, handle_error
from tutor_core.logging import get_logger
from tutor_core.models import NetworkState, NetworkStatus

if TYPE_CHECKING:
    from tutor_core.offline.key_value_store import KeyValueStore

logger = get_logger(__name__)

StateCallback = Callable[[str, Any], None]

KEY_PREFIX = "state:"

SETTINGS_DEFAULTS: Dict[str, Any] = {
    "theme": "light",
    "font_size": 16,
    "language_focus": None,
}

THEMES = ("light", "dark", "system")

# Central registry for state fields and their defaults
STATE_DEFAULTS: Dict[str, Any] = {
    "current_selection": None,
    "settings": SETTINGS_DEFAULTS,
    "network_status": NetworkStatus.OFFLINE,
    "ui_flags": {},
}

PERSISTENT_FIELDS = ("current_selection", "settings")

_MISSING = object()


@dataclass(frozen=True)
class Selection:
    """The tutorial (and optionally the unit) the learner is looking at."""
    content_id: str
    unit_id: Optional[str] = None


# =============================================================================
# SERIALIZATION
# =============================================================================

def serialize_field(field: str, value: Any) -> Any:
    """Convert a persistent field to a JSON-compatible value."""
    if field == "current_selection":
        return asdict(value) if value is not None else None
    if field == "settings":
        return dict(value)
    raise KeyError(f"'{field}' is not a persistent state field")


def deserialize_field(field: str, raw: Any) -> Any:
    """Rebuild a persistent field from its stored form."""
    if field == "current_selection":
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise ValueError("current_selection must be an object")
        return Selection(content_id=str(raw["content_id"]), unit_id=raw.get("unit_id"))
    if field == "settings":
        if not isinstance(raw, dict):
            raise ValueError("settings must be an object")
        settings = dict(SETTINGS_DEFAULTS)
        for key, value in raw.items():
            if key in SETTINGS_DEFAULTS:
                settings[key] = validate_setting(key, value)
            else:
                logger.warning(f"Dropping unknown stored setting '{key}'")
        return settings
    raise KeyError(f"'{field}' is not a persistent state field")


def validate_setting(key: str, value: Any) -> Any:
    """Check one setting; returns the value or raises ValueError."""
    if key not in SETTINGS_DEFAULTS:
        raise ValueError(f"Unknown setting '{key}'")
    if key == "theme" and value not in THEMES:
        raise ValueError(f"theme must be one of {THEMES}")
    if key == "font_size":
        if isinstance(value, bool) or not isinstance(value, int) or not 8 <= value <= 48:
            raise ValueError("font_size must be an integer between 8 and 48")
    if key == "language_focus" and value is not None and not isinstance(value, str):
        raise ValueError("language_focus must be a string or None")
    return value


class AppStateContainer:
    """
    Session state container.

    Usage:
        state = AppStateContainer(kv_store)
        state.rehydrate()
        state.set_setting("theme", "dark")
        state.set("current_selection", Selection("python-basics"))
    """

    def __init__(self, kv_store: KeyValueStore):
        self._kv = kv_store
        self._lock = threading.RLock()
        self._values: Dict[str, Any] = copy.deepcopy(STATE_DEFAULTS)
        self._callbacks: List[StateCallback] = []
        self._sequence = 0
        self._latest: Dict[str, int] = {}
        self._futures = set()
        self._failed_writes: List[Exception] = []
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="StateWriter")
        self._monitor = None
        self.rehydrated = False

    # =========================================================================
    # STARTUP
    # =========================================================================

    def rehydrate(self) -> Dict[str, Any]:
        """
        Load persistent fields from the key-value store.

        Call before anything reads state. Unreadable stored values fall back
        to defaults.

        Returns:
            The fields that were restored
        """
        restored: Dict[str, Any] = {}
        for field in PERSISTENT_FIELDS:
            try:
                raw = self._kv.get(KEY_PREFIX + field, _MISSING)
            except StorageError as e:
                logger.warning(f"Stored state '{field}' is unreadable: {e}")
                continue
            if raw is _MISSING:
                continue
            try:
                restored[field] = deserialize_field(field, raw)
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Ignoring invalid stored state '{field}': {e}")

        with self._lock:
            self._values.update(restored)
            self.rehydrated = True
        logger.info(f"State rehydrated ({', '.join(sorted(restored)) or 'defaults'})")
        return restored

    # =========================================================================
    # ACCESS
    # =========================================================================

    @staticmethod
    def _check_field(field: str) -> None:
        if field not in STATE_DEFAULTS:
            raise KeyError(f"Unknown state field '{field}'")

    def get(self, field: str) -> Any:
        """Current value of a field (containers are returned as copies)."""
        self._check_field(field)
        with self._lock:
            return copy.copy(self._values[field])

    def set(self, field: str, value: Any) -> bool:
        """
        Replace a field.

        Returns:
            False if the value was unchanged (no notification, no write)
        """
        self._check_field(field)
        if field == "network_status" and not isinstance(value, NetworkStatus):
            value = NetworkStatus(value)
        if field == "current_selection" and value is not None and not isinstance(value, Selection):
            raise TypeError("current_selection must be a Selection or None")

        with self._lock:
            if self._values[field] == value:
                return False
            self._values[field] = copy.copy(value)
            if field in PERSISTENT_FIELDS:
                self._schedule_write(field, serialize_field(field, value))

        self._notify_callbacks(field, value)
        return True

    def get_settings(self) -> Dict[str, Any]:
        return self.get("settings")

    def set_setting(self, key: str, value: Any) -> bool:
        """Change one setting (validated) and persist it."""
        validate_setting(key, value)
        with self._lock:
            settings = dict(self._values["settings"])
            settings[key] = value
            return self.set("settings", settings)

    def set_ui_flag(self, name: str, value: Any) -> bool:
        with self._lock:
            flags = dict(self._values["ui_flags"])
            flags[name] = value
            return self.set("ui_flags", flags)

    def reset_session(self) -> None:
        """Reset session-only fields; persistent ones are kept."""
        self.set("ui_flags", {})

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _schedule_write(self, field: str, payload: Any) -> None:
        # caller holds _lock
        self._sequence += 1
        self._latest[field] = self._sequence
        future = self._writer.submit(self._persist, field, payload, self._sequence)
        self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _persist(self, field: str, payload: Any, sequence: int) -> bool:
        with self._lock:
            if self._latest.get(field) != sequence:
                logger.debug(f"Skipping superseded write #{sequence} for '{field}'")
                return False
        try:
            self._kv.set(KEY_PREFIX + field, payload)
            return True
        except Exception as e:
            handle_error(e, user_message=f"Could not persist state field '{field}'")
            with self._lock:
                self._failed_writes.append(e)
            return False

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for pending writes.

        Returns:
            False if the timeout expired first

        Raises:
            The first write error since the last flush
        """
        with self._lock:
            futures = list(self._futures)
        _, not_done = wait(futures, timeout=timeout)
        with self._lock:
            failed, self._failed_writes = self._failed_writes, []
        if failed:
            raise failed[0]
        return not not_done

    # =========================================================================
    # SUBSCRIPTIONS / NETWORK MIRROR
    # =========================================================================

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """
        Call callback(field, value) after every change.

        Returns:
            Function that removes the subscription
        """
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def _notify_callbacks(self, field: str, value: Any) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(field, value)
            except Exception as e:
                logger.error(f"Error in state callback for '{field}': {e}", exc_info=True)

    def bind_network_monitor(self, monitor) -> None:
        """Mirror a NetworkMonitor's committed status into network_status."""
        if self._monitor is not None:
            self._monitor.unregister_callback(self._on_network_change)
        self._monitor = monitor
        self.set("network_status", monitor.status)
        monitor.register_callback(self._on_network_change)

    def _on_network_change(self, previous: NetworkState, current: NetworkState) -> None:
        self.set("network_status", current.status)

    def shutdown(self) -> None:
        """Finish pending writes and detach from the network monitor."""
        if self._monitor is not None:
            self._monitor.unregister_callback(self._on_network_change)
            self._monitor = None
        self._writer.shutdown(wait=True)

