"""Pytest configuration and fixtures for TempoGuard tests.

Nothing here sleeps for real: executors, monitors and stores take an
injectable sleep and clock, and the fixtures below provide recording fakes.
"""

from typing import Any, Dict, List, Optional

import httpx
import pytest
from prometheus_client import REGISTRY

from tempoguard.events import BufferedEventSink, TelemetryRecorder


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def buffer() -> BufferedEventSink:
    """In-memory sink capturing every event of a test."""
    return BufferedEventSink()


@pytest.fixture
def telemetry(buffer: BufferedEventSink) -> TelemetryRecorder:
    return TelemetryRecorder([buffer])


@pytest.fixture
def http_error():
    """Factory for ``httpx.HTTPStatusError`` with a JSON body and headers."""

    def _make(
        status: int,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        url: str = "https://api.example.com/v1/resource",
    ) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", url)
        response = httpx.Response(status, json=body, headers=headers, request=request)
        return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)

    return _make


@pytest.fixture
def isolated_metrics_collector():
    """Provide a MetricsCollector with freshly registered metrics.

    Unregisters every ``tempoguard_`` collector from the default registry and
    resets the singleton so the next instance registers new metrics.
    """
    import tempoguard.metrics as metrics_module
    from tempoguard.metrics import MetricsCollector

    collectors_to_unregister = []
    for collector in list(REGISTRY._collector_to_names.keys()):
        names = REGISTRY._collector_to_names.get(collector, set())
        if any(name.startswith("tempoguard_") for name in names):
            collectors_to_unregister.append(collector)

    for collector in collectors_to_unregister:
        REGISTRY.unregister(collector)

    MetricsCollector._instance = None
    metrics_module._global_metrics = None

    collector = MetricsCollector()
    yield collector


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: unit tests that don't require external services")


def pytest_collection_modifyitems(config, items):
    """Mark everything under tests/unit as a unit test."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
