# =============================================================================
# tutor_core/offline/network_monitor.py
# Connectivity Detection and Transition Events
# =============================================================================
"""
NetworkMonitor - single authority on online/offline state.

Features:
- Socket probes against well-known hosts (or a custom probe)
- Observations pushed by the host platform via report()
- Debouncing: a change is committed only once it has been observed
  continuously for `debounce_seconds`
- Exactly one callback event per committed transition
- Optional background monitoring thread
"""

from __future__ import annotations
import socket
import threading
import time
from datetime import datetime
from typing import Callable, List, Optional, Tuple
import logging

from tutor_core.config import OfflineConfig
from tutor_core.models import NetworkState, NetworkStatus

logger = logging.getLogger(__name__)

NetworkCallback = Callable[[NetworkState, NetworkState], None]


class NetworkMonitor:
    """
    Owner of NetworkState.

    Usage:
        monitor = NetworkMonitor(config)
        monitor.register_callback(on_change)
        monitor.initialize()          # probe once, start background checks
        if monitor.is_online:
            ...
    """

    _instance: Optional[NetworkMonitor] = None
    _lock = threading.Lock()

    def __init__(
        self,
        config: Optional[OfflineConfig] = None,
        initial_status: NetworkStatus = NetworkStatus.OFFLINE,
        probe: Optional[Callable[[], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or OfflineConfig()
        self._state = NetworkState(status=initial_status)
        self._probe = probe or self._check_internet
        self._clock = clock
        self._state_lock = threading.Lock()
        self._pending: Optional[NetworkStatus] = None
        self._pending_since = 0.0
        self._callbacks: List[NetworkCallback] = []
        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()
        self._initialized = False
        self.consecutive_failures = 0
        self.last_check: Optional[datetime] = None

    @classmethod
    def get_instance(cls, config: Optional[OfflineConfig] = None) -> NetworkMonitor:
        """Get or create the singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = NetworkMonitor(config)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        with cls._lock:
            if cls._instance is not None:
                cls._instance.stop_monitoring()
            cls._instance = None

    @property
    def state(self) -> NetworkState:
        """Current committed network state."""
        return self._state

    @property
    def status(self) -> NetworkStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == NetworkStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == NetworkStatus.OFFLINE

    def initialize(self, start_monitoring: bool = True) -> None:
        """
        Probe once and optionally start background monitoring.

        The first probe commits immediately; there is nothing to debounce
        against yet.
        """
        if self._initialized:
            return

        online = self._safe_probe()
        self._commit(NetworkStatus.ONLINE if online else NetworkStatus.OFFLINE)

        if start_monitoring:
            self.start_monitoring()

        self._initialized = True
        logger.info(f"NetworkMonitor initialized. Status: {self._state.status.value}")

    # =========================================================================
    # OBSERVATIONS
    # =========================================================================

    def report(self, online: bool) -> bool:
        """
        Feed one connectivity observation.

        Returns:
            True if the observation committed a transition
        """
        observed = NetworkStatus.ONLINE if online else NetworkStatus.OFFLINE
        with self._state_lock:
            if observed == self._state.status:
                if self._pending is not None:
                    logger.debug(f"Discarding flap to {self._pending.value}")
                self._pending = None
                return False

            now = self._clock()
            if self._pending != observed:
                self._pending = observed
                self._pending_since = now
            if now - self._pending_since < self._config.debounce_seconds:
                return False

            previous, current = self._swap_state(observed)

        self._notify_callbacks(previous, current)
        return True

    def check_connection(self) -> NetworkState:
        """
        Probe connectivity and report the result.

        Returns:
            Committed NetworkState after the observation
        """
        online = self._safe_probe()
        self.report(online)
        return self._state

    def _safe_probe(self) -> bool:
        self.last_check = datetime.now()
        try:
            online = bool(self._probe())
        except Exception as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False
        self.consecutive_failures = 0 if online else self.consecutive_failures + 1
        return online

    def _check_internet(self) -> bool:
        """
        Check internet connectivity by attempting to reach well-known hosts.

        Returns:
            True if any probe host accepts a connection
        """
        for host, port in self._config.probe_hosts:
            if self._probe_host(host, port):
                return True
        return False

    def _probe_host(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self._config.probe_timeout):
                return True
        except OSError:
            return False

    # =========================================================================
    # COMMITTING STATE
    # =========================================================================

    def _swap_state(self, status: NetworkStatus) -> Tuple[NetworkState, NetworkState]:
        # caller holds _state_lock
        previous = self._state
        self._state = NetworkState(status=status, last_changed_at=datetime.now())
        self._pending = None
        logger.info(f"Network status changed: {previous.status.value} -> {status.value}")
        return previous, self._state

    def _commit(self, status: NetworkStatus) -> bool:
        with self._state_lock:
            if status == self._state.status:
                self._pending = None
                return False
            previous, current = self._swap_state(status)
        self._notify_callbacks(previous, current)
        return True

    def force_offline(self) -> None:
        """Force offline mode (user preference or tests)."""
        if self._commit(NetworkStatus.OFFLINE):
            logger.info("Forced offline mode")

    def force_online(self) -> None:
        """Force online mode (platform reported connectivity, tests)."""
        if self._commit(NetworkStatus.ONLINE):
            logger.info("Forced online mode")

    # =========================================================================
    # BACKGROUND MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start background connection monitoring."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitoring_loop,
            daemon=True,
            name="NetworkMonitor",
        )
        self._monitor_thread.start()
        logger.debug("Network monitoring started")

    def stop_monitoring(self) -> None:
        """Stop background connection monitoring."""
        self._stop_monitoring.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None
        logger.debug("Network monitoring stopped")

    def _next_interval(self) -> float:
        # Re-check quickly while a transition is waiting out its debounce
        if self._pending is not None:
            return max(self._config.debounce_seconds, 0.05)
        if self.is_online:
            return self._config.check_interval_online
        return self._config.check_interval_offline

    def _monitoring_loop(self) -> None:
        """Background monitoring loop."""
        while not self._stop_monitoring.is_set():
            if self._stop_monitoring.wait(timeout=self._next_interval()):
                break
            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: NetworkCallback) -> None:
        """
        Register a callback for committed status changes.

        Args:
            callback: Called with (previous, current) NetworkState
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: NetworkCallback) -> None:
        """Remove a registered callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self, previous: NetworkState, current: NetworkState) -> None:
        for callback in list(self._callbacks):
            try:
                callback(previous, current)
            except Exception as e:
                logger.error(f"Error in network callback: {e}", exc_info=True)

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "last_changed": self._state.last_changed_at.isoformat(),
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "pending": self._pending.value if self._pending else None,
            "failures": self.consecutive_failures,
        }
