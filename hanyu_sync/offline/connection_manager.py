# =============================================================================
# hanyu_sync/offline/connection_manager.py
# Backend Reachability Tracking
# =============================================================================
"""
ConnectionManager - knows whether the learning backend is reachable.

Features:
- Socket probes against public resolvers and the configured Supabase host
- Pluggable probe so shells with their own network events can skip sockets
- report_connectivity() for "network regained / lost" platform events
- Daemon thread re-probing on a slower cadence while offline
- Listeners fired only when the status actually flips
"""

from __future__ import annotations
import socket
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlparse

from hanyu_sync.config import SyncSettings, load_settings
from hanyu_sync.logging import get_logger

logger = get_logger(__name__)

# (network_up, backend_up)
Probe = Callable[[], Tuple[bool, bool]]
Listener = Callable[["ConnectionState"], None]

RESOLVER_ENDPOINTS: Tuple[Tuple[str, int], ...] = (
    ("1.1.1.1", 53),
    ("8.8.8.8", 53),
)


class ConnectionStatus(Enum):
    ONLINE = "online"
    DEGRADED = "degraded"       # network up, Supabase host unreachable
    OFFLINE = "offline"
    UNKNOWN = "unknown"         # before the first probe


@dataclass
class ConnectionState:
    """Latest probe outcome."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    internet_available: bool = False
    supabase_available: bool = False
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None

    def as_dict(self) -> dict:
        def stamp(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "status": self.status.value,
            "is_online": self.status is ConnectionStatus.ONLINE,
            "internet": self.internet_available,
            "supabase": self.supabase_available,
            "last_check": stamp(self.last_check),
            "last_online": stamp(self.last_online),
            "failures": self.consecutive_failures,
            "error": self.error_message,
        }


def _status_for(network_up: bool, backend_up: bool) -> ConnectionStatus:
    if not network_up:
        return ConnectionStatus.OFFLINE
    return ConnectionStatus.ONLINE if backend_up else ConnectionStatus.DEGRADED


class ConnectionManager:
    """
    Reachability tracker feeding the sync orchestrator.

    Usage:
        manager = ConnectionManager(settings)
        manager.register_callback(on_change)
        manager.initialize()

    Args:
        settings: Supabase URL, probe timeout and re-check cadence
        probe: Returns (network_up, backend_up); socket checks when omitted
    """

    def __init__(self, settings: Optional[SyncSettings] = None, probe: Optional[Probe] = None):
        self.settings = settings or SyncSettings()
        self._probe = probe or self._socket_probe
        self._state = ConnectionState()
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._watcher: Optional[threading.Thread] = None
        self._halt = threading.Event()
        self._started = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status is ConnectionStatus.ONLINE

    def initialize(self, start_monitoring: bool = True) -> "ConnectionManager":
        """Probe once, then optionally keep watching in the background."""
        if not self._started:
            self.check_connection()
            if start_monitoring:
                self.start_monitoring()
            self._started = True
            logger.info(f"Connectivity tracking started ({self._state.status.value})")
        return self

    # =========================================================================
    # PROBING
    # =========================================================================

    def check_connection(self) -> ConnectionState:
        """Run the probe and record its outcome."""
        try:
            network_up, backend_up = self._probe()
        except Exception as e:
            logger.debug(f"Reachability probe raised: {e}")
            return self._record(False, False, str(e))
        return self._record(network_up, backend_up)

    def report_connectivity(self, internet_available: bool, supabase_available: Optional[bool] = None) -> ConnectionState:
        """Record a network event pushed by the host platform."""
        backend_up = internet_available if supabase_available is None else supabase_available
        return self._record(internet_available, backend_up)

    def force_offline(self) -> None:
        self.report_connectivity(False, False)
        logger.info("Connectivity forced offline")

    def _record(self, network_up: bool, backend_up: bool, error: Optional[str] = None) -> ConnectionState:
        now = datetime.now()
        new_status = _status_for(network_up, backend_up)
        with self._lock:
            state = self._state
            previous = state.status
            state.status = new_status
            state.last_check = now
            state.internet_available = network_up
            state.supabase_available = network_up and backend_up
            if new_status is ConnectionStatus.ONLINE:
                state.last_online = now
                state.consecutive_failures = 0
                state.error_message = None
            else:
                state.consecutive_failures += 1
                state.error_message = error

        if previous is not new_status:
            logger.info(f"Connectivity {previous.value} -> {new_status.value}")
            self._fire()
        return self._state

    def _socket_probe(self) -> Tuple[bool, bool]:
        if not any(self._reachable(host, port) for host, port in RESOLVER_ENDPOINTS):
            return False, False
        return True, self._backend_reachable()

    def _backend_reachable(self) -> bool:
        parsed = urlparse(self.settings.supabase_url or "")
        if not parsed.hostname:
            return False
        default_port = 80 if parsed.scheme == "http" else 443
        return self._reachable(parsed.hostname, parsed.port or default_port)

    def _reachable(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.settings.connection_timeout):
                return True
        except OSError:
            return False

    # =========================================================================
    # BACKGROUND WATCH
    # =========================================================================

    def start_monitoring(self) -> None:
        if self._watcher is not None and self._watcher.is_alive():
            return
        self._halt.clear()
        self._watcher = threading.Thread(target=self._watch, daemon=True, name="hanyu-connectivity")
        self._watcher.start()
        logger.debug("Connectivity watcher running")

    def stop_monitoring(self) -> None:
        self._halt.set()
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.join(timeout=5)
        logger.debug("Connectivity watcher stopped")

    def _watch(self) -> None:
        while True:
            if self.is_online:
                delay = self.settings.check_interval_online
            else:
                delay = self.settings.check_interval_offline
            if self._halt.wait(timeout=delay):
                return
            try:
                self.check_connection()
            except Exception as e:
                logger.error(f"Connectivity re-check failed: {e}")

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def register_callback(self, callback: Listener) -> None:
        """Call `callback(state)` whenever the status flips."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def unregister_callback(self, callback: Listener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _fire(self) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    def get_status_display(self) -> dict:
        return self._state.as_dict()


_connection_manager: Optional[ConnectionManager] = None
_singleton_lock = threading.Lock()


def get_connection_manager(settings: Optional[SyncSettings] = None) -> ConnectionManager:
    """Shared manager, probing and watching from first use."""
    global _connection_manager
    with _singleton_lock:
        if _connection_manager is None:
            _connection_manager = ConnectionManager(settings or load_settings()).initialize()
    return _connection_manager
