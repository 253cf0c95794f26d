"""Prometheus metrics for TempoGuard.

Exposes classification, retry, queue, state-store and connectivity metrics
via HTTP for Prometheus scraping. Label sets are bounded: domains and kinds
are enums, and operation names pass through a cardinality guard.
"""

from collections import defaultdict
from threading import Lock
from typing import Any, Dict, Optional, Set

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

from tempoguard.logging import get_logger

logger = get_logger(__name__, component="metrics")

DELAY_BUCKETS = (0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 30.0, 60.0, 120.0)
LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0)


class MetricsCollector:
    """Centralized metrics collector for TempoGuard.

    Singleton: Prometheus refuses duplicate metric names in one registry, so
    every caller shares the same instance.

    Example:
        >>> metrics = MetricsCollector()
        >>> metrics.record_classification(domain="network", kind="connection_timeout")
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __new__(cls, *args: Any, **kwargs: Any) -> "MetricsCollector":
        """Ensure singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, max_operations: int = 200) -> None:
        """Initialize metrics collector.

        Args:
            max_operations: Maximum distinct operation label values.
        """
        if self._initialized:
            return

        logger.info("initializing_metrics_collector", max_operations=max_operations)

        self.max_operations = max_operations
        self._operations: Dict[str, Set[str]] = defaultdict(set)
        self._operations_lock = Lock()

        from tempoguard import __version__

        self.system_info = Info("tempoguard_system", "TempoGuard system information")
        self.system_info.info({"version": __version__, "app": "tempoguard"})

        self.classifications_total = Counter(
            "tempoguard_classifications_total",
            "Classified failures by domain and kind",
            ["domain", "kind"],
        )
        self.retry_attempts_total = Counter(
            "tempoguard_retry_attempts_total",
            "Retry attempts scheduled by domain and operation",
            ["domain", "operation"],
        )
        self.operations_total = Counter(
            "tempoguard_operations_total",
            "Finished operations by domain and outcome",
            ["domain", "outcome"],
        )
        self.retry_delay = Histogram(
            "tempoguard_retry_delay_seconds",
            "Delay before each retry attempt",
            ["domain"],
            buckets=DELAY_BUCKETS,
        )
        self.offline_queue_size = Gauge(
            "tempoguard_offline_queue_size",
            "Operations waiting in the offline queue",
        )
        self.drain_results_total = Counter(
            "tempoguard_drain_results_total",
            "Offline queue drain attempts by result",
            ["result"],
        )
        self.preserved_states = Gauge(
            "tempoguard_preserved_states",
            "Preserved workflow/operation states held in memory",
        )
        self.network_online = Gauge(
            "tempoguard_network_online",
            "1 when the last connectivity probe succeeded",
        )
        self.probe_latency = Histogram(
            "tempoguard_probe_latency_seconds",
            "Connectivity probe latency",
            buckets=LATENCY_BUCKETS,
        )

        self._initialized = True
        logger.info("metrics_collector_initialized")

    def _bounded_operation(self, domain: str, operation: str) -> str:
        with self._operations_lock:
            seen = self._operations[domain]
            if operation in seen:
                return operation
            if len(seen) >= self.max_operations:
                return "other"
            seen.add(operation)
            return operation

    def record_classification(self, domain: str, kind: str) -> None:
        self.classifications_total.labels(domain=domain, kind=kind).inc()

    def record_retry(self, domain: str, operation: str, delay_ms: int) -> None:
        """Record a scheduled retry and its delay.

        Args:
            domain: Failure domain.
            operation: Operation name (bounded).
            delay_ms: Delay before the retry, in milliseconds.
        """
        operation = self._bounded_operation(domain, operation)
        self.retry_attempts_total.labels(domain=domain, operation=operation).inc()
        self.retry_delay.labels(domain=domain).observe(delay_ms / 1000.0)

    def record_outcome(self, domain: str, outcome: str) -> None:
        self.operations_total.labels(domain=domain, outcome=outcome).inc()

    def update_queue_size(self, size: int) -> None:
        self.offline_queue_size.set(size)

    def record_drain_result(self, result: str) -> None:
        self.drain_results_total.labels(result=result).inc()

    def update_preserved_states(self, count: int) -> None:
        self.preserved_states.set(count)

    def record_probe(self, online: bool, latency_ms: Optional[float]) -> None:
        self.network_online.set(1 if online else 0)
        if latency_ms is not None:
            self.probe_latency.observe(latency_ms / 1000.0)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get a summary of current metrics."""
        return {
            "collector": "prometheus",
            "registry": "default",
            "metrics_count": len(list(REGISTRY.collect())),
            "tracked_operations": {k: len(v) for k, v in self._operations.items()},
        }


def start_metrics_server(
    port: int = 9090,
    addr: str = "0.0.0.0",
) -> None:
    """Start the Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090).
        addr: Address to bind to (default: 0.0.0.0 for all interfaces).
    """
    logger.info("starting_metrics_server", port=port, addr=addr)
    try:
        start_http_server(port=port, addr=addr)
        logger.info("metrics_server_started", port=port, addr=addr)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.warning("metrics_server_already_running", port=port, addr=addr)
        else:
            logger.error("metrics_server_start_failed", port=port, addr=addr, error=str(e))
            raise


_global_metrics: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _global_metrics
    if _global_metrics is None:
        _global_metrics = MetricsCollector()
    return _global_metrics
