"""Connectivity monitoring.

A background task probes a lightweight reachability endpoint on a fixed
interval, classifies the connection as fast, slow or offline, and schedules
one debounced drain of the offline queue whenever connectivity comes back.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from tempoguard.events import EventType, TelemetryRecorder, get_telemetry_recorder
from tempoguard.logging import get_logger
from tempoguard.offline_queue import DrainReport, OfflineQueue

logger = get_logger(__name__, component="connectivity")

DEFAULT_PROBE_URL = "https://www.google.com/generate_204"


class ConnectionClass(str, Enum):
    """Coarse connection quality."""

    FAST = "fast"
    SLOW = "slow"
    OFFLINE = "offline"


@dataclass
class NetworkStatus:
    """Latest view of the network."""

    is_online: bool = True
    connection_class: ConnectionClass = ConnectionClass.FAST
    latency_ms: Optional[float] = None
    last_checked_at: Optional[float] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def offline(cls, error: Optional[str] = None, latency_ms: Optional[float] = None) -> "NetworkStatus":
        return cls(
            is_online=False,
            connection_class=ConnectionClass.OFFLINE,
            latency_ms=latency_ms,
            last_checked_at=time.time(),
            error=error,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "is_online": self.is_online,
            "connection_class": self.connection_class.value,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "last_checked_at": self.last_checked_at,
            "error": self.error,
        }


class ConnectivityProbe:
    """Single time-bounded reachability check."""

    def __init__(
        self,
        url: str = DEFAULT_PROBE_URL,
        method: str = "HEAD",
        timeout_seconds: float = 5.0,
        slow_threshold_ms: float = 1000.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize probe.

        Args:
            url: Reachability endpoint.
            method: HTTP method for the probe request.
            timeout_seconds: Upper bound for the whole probe.
            slow_threshold_ms: Latency above which the connection is slow.
            transport: httpx transport override.
        """
        self.url = url
        self.method = method.upper()
        self.timeout_seconds = timeout_seconds
        self.slow_threshold_ms = slow_threshold_ms
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def check(self) -> NetworkStatus:
        """Probe the endpoint once.

        Any HTTP response counts as reachable. Transport errors and timeouts
        mean offline.
        """
        start_time = time.perf_counter()
        client = await self._get_client()

        try:
            response = await asyncio.wait_for(
                client.request(self.method, self.url),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.info("probe_timeout", url=self.url, timeout_seconds=self.timeout_seconds)
            return NetworkStatus.offline(f"Probe timeout after {self.timeout_seconds}s", latency_ms)
        except (httpx.HTTPError, OSError) as e:
            latency_ms = (time.perf_counter() - start_time) * 1000
            logger.info("probe_failed", url=self.url, error=str(e) or e.__class__.__name__)
            return NetworkStatus.offline(str(e) or e.__class__.__name__, latency_ms)

        latency_ms = (time.perf_counter() - start_time) * 1000
        connection_class = (
            ConnectionClass.SLOW if latency_ms > self.slow_threshold_ms else ConnectionClass.FAST
        )
        return NetworkStatus(
            is_online=True,
            connection_class=connection_class,
            latency_ms=latency_ms,
            last_checked_at=time.time(),
            metadata={"status_code": response.status_code},
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


StatusListener = Callable[[NetworkStatus, NetworkStatus], Any]


class ConnectivityMonitor:
    """Periodic connectivity checks with drain-on-reconnect.

    Example:
        >>> monitor = ConnectivityMonitor(ConnectivityProbe(), queue=queue)
        >>> await monitor.start()
        >>> monitor.status().is_online
        True
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        queue: Optional[OfflineQueue] = None,
        interval_seconds: float = 30.0,
        drain_debounce_seconds: float = 1.0,
        telemetry: Optional[TelemetryRecorder] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        """Initialize monitor.

        Args:
            probe: Reachability probe.
            queue: Offline queue drained when connectivity returns.
            interval_seconds: Seconds between probes.
            drain_debounce_seconds: Wait after reconnecting before draining.
            telemetry: Recorder for connectivity events.
            sleep: Coroutine function used for waits.
        """
        self.probe = probe
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.drain_debounce_seconds = drain_debounce_seconds
        self.telemetry = telemetry or get_telemetry_recorder()
        self._sleep = sleep or asyncio.sleep
        self._status = NetworkStatus()
        self._listeners: List[StatusListener] = []
        self._monitor_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None

    def status(self) -> NetworkStatus:
        """Latest known network status."""
        return self._status

    @property
    def is_online(self) -> bool:
        return self._status.is_online

    @property
    def is_running(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    @property
    def drain_task(self) -> Optional[asyncio.Task]:
        """The scheduled or running drain, if any."""
        return self._drain_task

    def add_listener(self, listener: StatusListener) -> None:
        """Call ``listener(previous, current)`` on every status change."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Start periodic probing."""
        if self._monitor_task is not None:
            logger.warning("connectivity_monitor_already_running")
            return

        self._monitor_task = asyncio.create_task(self._monitor_loop())
        logger.info(
            "connectivity_monitor_started",
            url=self.probe.url,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        """Stop probing and cancel any pending drain."""
        for task in (self._monitor_task, self._drain_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._monitor_task = None
        self._drain_task = None
        await self.probe.close()
        logger.info("connectivity_monitor_stopped")

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await self.check_now()
            except Exception as e:
                logger.error("connectivity_check_error", error=str(e), exc_info=True)
                self.update(NetworkStatus.offline(str(e) or e.__class__.__name__))
            await self._sleep(self.interval_seconds)

    async def check_now(self) -> NetworkStatus:
        """Probe immediately and apply the result."""
        status = await self.probe.check()
        self.update(status)
        return status

    def update(self, status: NetworkStatus) -> None:
        """Apply a new status, reporting changes and scheduling a drain on reconnect."""
        previous = self._status
        self._status = status

        if previous.is_online == status.is_online and previous.connection_class == status.connection_class:
            return

        logger.info(
            "connectivity_changed",
            is_online=status.is_online,
            connection_class=status.connection_class.value,
            previous=previous.connection_class.value,
            latency_ms=status.latency_ms,
        )
        self.telemetry.emit(
            EventType.CONNECTIVITY_CHANGED,
            operation="connectivity",
            domain="network",
            success=status.is_online,
            data={
                "is_online": status.is_online,
                "connection_class": status.connection_class.value,
                "previous": previous.connection_class.value,
                "latency_ms": status.latency_ms,
            },
        )

        for listener in list(self._listeners):
            try:
                listener(previous, status)
            except Exception as e:
                logger.error("connectivity_listener_error", error=str(e))

        if not previous.is_online and status.is_online:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self.queue is None:
            return
        if self._drain_task is not None and not self._drain_task.done():
            logger.debug("drain_already_scheduled")
            return
        self._drain_task = asyncio.ensure_future(self._debounced_drain())

    async def _debounced_drain(self) -> Optional[DrainReport]:
        await self._sleep(self.drain_debounce_seconds)
        if not self._status.is_online:
            logger.info("drain_skipped_offline")
            return None
        if len(self.queue) == 0:
            return None
        return await self.queue.drain()
