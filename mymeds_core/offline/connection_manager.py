# =============================================================================
# mymeds_core/offline/connection_manager.py
# Connectivity Detection and Monitoring
# =============================================================================
"""
ConnectionManager - reports reachability and transport class.

Features:
- ConnectivityProbe protocol consumed by the fetch coordinator
- TCP reachability check run off the event loop
- Pluggable transport resolver (wifi / cellular)
- Event callbacks for status changes
- Periodic monitoring as an asyncio task
- is_reachable(): monitored status for routine reads, fresh checks on demand
"""

from __future__ import annotations
import asyncio
import socket
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse
import logging

logger = logging.getLogger(__name__)


class ConnectionType(Enum):
    """Transport class reported by the probe."""
    NONE = "none"           # No connectivity
    CELLULAR = "cellular"   # Mobile data
    WIFI = "wifi"           # Wi-Fi / ethernet

    @property
    def is_online(self) -> bool:
        return self is not ConnectionType.NONE


class ConnectivityProbe(Protocol):
    """Anything that can tell the coordinator whether the remote is reachable."""

    async def check_connectivity(self) -> ConnectionType:
        ...


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    connection_type: ConnectionType = ConnectionType.NONE
    checked: bool = False
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None
    forced_offline: bool = False

    @property
    def is_online(self) -> bool:
        return self.connection_type.is_online


# Resolves the transport class once the host is known to be reachable
TransportResolver = Callable[[], ConnectionType]


class ConnectionManager:
    """
    Default ConnectivityProbe.

    Usage:
        manager = ConnectionManager(supabase_url=settings.supabase_url)
        if (await manager.check_connectivity()).is_online:
            # Use the remote
        else:
            # Serve cached data
    """

    DEFAULT_HOSTS: Tuple[Tuple[str, int], ...] = (
        ("8.8.8.8", 53),         # Google DNS
        ("1.1.1.1", 53),         # Cloudflare DNS
        ("208.67.222.222", 53),  # OpenDNS
    )

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        connection_timeout: float = 5.0,
        check_interval_online: float = 30.0,
        check_interval_offline: float = 10.0,
        transport_resolver: Optional[TransportResolver] = None,
        hosts: Optional[Sequence[Tuple[str, int]]] = None,
    ):
        self._state = ConnectionState()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._monitor_task: Optional[asyncio.Task] = None
        self._supabase_url = supabase_url
        self._transport_resolver = transport_resolver or (lambda: ConnectionType.WIFI)
        self._hosts = tuple(hosts) if hosts is not None else self.DEFAULT_HOSTS
        self.connection_timeout = connection_timeout
        self.check_interval_online = check_interval_online
        self.check_interval_offline = check_interval_offline

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection_type(self) -> ConnectionType:
        return self._state.connection_type

    @property
    def is_online(self) -> bool:
        """Last known status; call check_connectivity() for a fresh answer."""
        return self._state.is_online

    async def check_connectivity(self) -> ConnectionType:
        """
        Perform a connectivity check and update state.

        Returns:
            The transport class, NONE when nothing is reachable
        """
        if self._state.forced_offline:
            return ConnectionType.NONE

        old_type = self._state.connection_type
        was_checked = self._state.checked

        reachable = await asyncio.to_thread(self._check_reachability)

        self._state.checked = True
        self._state.last_check = datetime.now()
        if reachable:
            self._state.connection_type = self._transport_resolver()
            self._state.last_online = self._state.last_check
            self._state.consecutive_failures = 0
            self._state.error_message = None
        else:
            self._state.connection_type = ConnectionType.NONE
            self._state.consecutive_failures += 1

        if not was_checked or old_type != self._state.connection_type:
            logger.info(
                f"Connection status changed: {old_type.value} -> {self._state.connection_type.value}"
            )
            self._notify_callbacks()

        return self._state.connection_type

    async def last_known_connectivity(self) -> ConnectionType:
        """
        Monitored status while it is no older than the current check
        interval; a fresh check otherwise.
        """
        if self._state.forced_offline:
            return ConnectionType.NONE
        if self._state.checked and self._state.last_check is not None:
            interval = self.check_interval_online if self.is_online else self.check_interval_offline
            if (datetime.now() - self._state.last_check).total_seconds() <= interval:
                return self._state.connection_type
        return await self.check_connectivity()

    def _check_reachability(self) -> bool:
        """Internet reachable and, when configured, the Supabase host too."""
        if not any(self._can_connect(host, port) for host, port in self._hosts):
            return False

        if not self._supabase_url:
            return True

        parsed = urlparse(self._supabase_url)
        if not parsed.hostname:
            self._state.error_message = f"Invalid Supabase URL: {self._supabase_url}"
            return False
        return self._can_connect(parsed.hostname, parsed.port or 443)

    def _can_connect(self, host: str, port: int) -> bool:
        try:
            with socket.create_connection((host, port), timeout=self.connection_timeout):
                return True
        except OSError as e:
            self._state.error_message = str(e)
            logger.debug(f"Connectivity check to {host}:{port} failed: {e}")
            return False

    # =========================================================================
    # MONITORING
    # =========================================================================

    def start_monitoring(self) -> None:
        """Start periodic checks on the running event loop."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.get_running_loop().create_task(
            self._monitoring_loop(), name="ConnectionMonitor"
        )
        logger.debug("Connection monitoring started")

    async def stop_monitoring(self) -> None:
        if self._monitor_task is None:
            return
        self._monitor_task.cancel()
        try:
            await self._monitor_task
        except asyncio.CancelledError:
            pass
        self._monitor_task = None
        logger.debug("Connection monitoring stopped")

    async def _monitoring_loop(self) -> None:
        while True:
            interval = self.check_interval_online if self.is_online else self.check_interval_offline
            await asyncio.sleep(interval)
            try:
                await self.check_connectivity()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def force_offline(self, offline: bool = True) -> None:
        """Force offline mode (user preference or tests); False lifts it."""
        self._state.forced_offline = offline
        if offline:
            self._state.connection_type = ConnectionType.NONE
            self._notify_callbacks()
        else:
            self._state.checked = False
        logger.info(f"Forced offline mode {'enabled' if offline else 'disabled'}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "connection_type": self._state.connection_type.value,
            "is_online": self.is_online,
            "forced_offline": self._state.forced_offline,
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }


async def is_reachable(probe: ConnectivityProbe, fresh: bool = False, if_unknown: bool = True) -> bool:
    """
    Ask a probe whether the remote can be used.

    Args:
        probe: Any ConnectivityProbe
        fresh: Force a new check even when the probe keeps a monitored status
        if_unknown: Answer used when the probe itself fails
    """
    try:
        if not fresh and hasattr(probe, "last_known_connectivity"):
            connection_type = await probe.last_known_connectivity()
        else:
            connection_type = await probe.check_connectivity()
    except Exception as e:
        logger.warning(f"Connectivity probe failed, assuming {'online' if if_unknown else 'offline'}: {e}")
        return if_unknown
    return connection_type.is_online
