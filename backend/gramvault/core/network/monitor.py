"""
Network Monitor
===============

Tracks connectivity and transport kind. A transport change while still
connected opens a stabilization window during which writes are deferred.

Observations come from ``update()``; the optional probe loop feeds it by
periodically opening a TCP connection to the API host.
"""

import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from gramvault.core.client.errors import ConnectivityTimeout
from gramvault.core.config import settings

logger = structlog.get_logger()


class ConnectionKind(str, enum.Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    WIRED = "wired"
    OTHER = "other"
    NONE = "none"


@dataclass(frozen=True)
class NetworkState:
    connected: bool
    kind: ConnectionKind

    @property
    def header_value(self) -> str:
        """X-IG-Connection-Type value."""
        return "WIFI" if self.kind in (ConnectionKind.WIFI, ConnectionKind.WIRED) else "4G"

    @property
    def radio_type(self) -> str:
        return "cell-none" if self.kind == ConnectionKind.CELLULAR else "wifi-none"


Probe = Callable[[], Awaitable[NetworkState]]
Listener = Callable[[NetworkState, NetworkState], None]


class TcpProbe:
    """Connectivity probe: can we open a TCP connection to the API host?"""

    def __init__(
        self,
        host: str = settings.NETWORK_PROBE_HOST,
        port: int = settings.NETWORK_PROBE_PORT,
        kind: ConnectionKind = ConnectionKind(settings.DEFAULT_CONNECTION_KIND),
        timeout: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.kind = kind
        self.timeout = timeout

    async def __call__(self) -> NetworkState:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return NetworkState(connected=False, kind=ConnectionKind.NONE)
        writer.close()
        await writer.wait_closed()
        return NetworkState(connected=True, kind=self.kind)


class NetworkMonitor:
    """
    Connectivity state with a post-change stabilization window.

    Starts optimistic (connected over the default transport) until the
    first observation arrives.
    """

    def __init__(
        self,
        stabilization_seconds: float = settings.STABILIZATION_SECONDS,
        poll_interval: float = settings.CONNECTIVITY_POLL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stabilization_seconds = stabilization_seconds
        self.poll_interval = poll_interval
        self._clock = clock
        self._state = NetworkState(
            connected=True,
            kind=ConnectionKind(settings.DEFAULT_CONNECTION_KIND),
        )
        self._stable_at = 0.0
        self._last_kind = self._state.kind
        self._listeners: list[Listener] = []
        self._probe_task: Optional[asyncio.Task] = None

    # ==========================================================================
    # Queries
    # ==========================================================================

    def current_state(self) -> NetworkState:
        return self._state

    def is_connected(self) -> bool:
        return self._state.connected

    def is_stabilizing(self) -> bool:
        return self._clock() < self._stable_at

    # ==========================================================================
    # Observations
    # ==========================================================================

    def update(self, connected: bool, kind: ConnectionKind) -> None:
        """Feed a new observation."""
        previous = self._state
        current = NetworkState(connected=connected, kind=kind if connected else ConnectionKind.NONE)
        if current == previous:
            return

        if (
            connected
            and self._last_kind != ConnectionKind.NONE
            and self._last_kind != current.kind
        ):
            self._stable_at = self._clock() + self.stabilization_seconds
            logger.warning(
                "network_transport_changed",
                previous=self._last_kind.value,
                current=current.kind.value,
                stabilization_seconds=self.stabilization_seconds,
            )

        self._state = current
        if connected:
            self._last_kind = current.kind
        logger.info(
            "network_state",
            connected=current.connected,
            kind=current.kind.value,
        )
        for listener in list(self._listeners):
            listener(previous, current)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ==========================================================================
    # Waiting
    # ==========================================================================

    async def await_connectivity(
        self,
        timeout: float = settings.CONNECTIVITY_TIMEOUT_SECONDS,
    ) -> None:
        """
        Suspend until connected.

        Raises:
            ConnectivityTimeout: If still disconnected after ``timeout`` seconds
        """
        deadline = self._clock() + timeout
        while not self._state.connected:
            if self._clock() >= deadline:
                raise ConnectivityTimeout(f"Connection timeout after {int(timeout)}s")
            await asyncio.sleep(self.poll_interval)

    async def await_stability(self) -> None:
        """Suspend until the stabilization window (if any) has closed."""
        # A transport change during the sleep reopens the window
        while self.is_stabilizing():
            remaining = self._stable_at - self._clock()
            logger.info("network_awaiting_stability", seconds=round(remaining, 1))
            await asyncio.sleep(remaining)

    # ==========================================================================
    # Probe Loop
    # ==========================================================================

    def start(
        self,
        probe: Optional[Probe] = None,
        interval: float = settings.NETWORK_PROBE_INTERVAL_SECONDS,
    ) -> None:
        """Start a background loop feeding ``update()`` from ``probe``."""
        if self._probe_task and not self._probe_task.done():
            return
        self._probe_task = asyncio.create_task(self._probe_loop(probe or TcpProbe(), interval))

    async def stop(self) -> None:
        if self._probe_task is None:
            return
        self._probe_task.cancel()
        try:
            await self._probe_task
        except asyncio.CancelledError:
            pass
        self._probe_task = None

    async def _probe_loop(self, probe: Probe, interval: float) -> None:
        while True:
            try:
                state = await probe()
            except Exception:
                logger.exception("network_probe_failed")
            else:
                self.update(state.connected, state.kind)
            await asyncio.sleep(interval)
