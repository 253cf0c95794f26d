"""Telemetry events for the resilience layer.

The executor, queue, state store and monitor report what they do through
``TelemetryRecorder.record``. Sinks decide where events go: structured
logs, Prometheus metrics, or an in-memory buffer. A failing sink is logged
and skipped; it never breaks the operation being reported on.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from tempoguard.logging import get_logger

logger = get_logger(__name__, component="events")


class EventType(str, Enum):
    """Kinds of resilience events."""

    CLASSIFICATION = "classification"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_EXHAUSTED = "retry_exhausted"
    OPERATION_SUCCEEDED = "operation_succeeded"
    FALLBACK_USED = "fallback_used"
    OPERATION_QUEUED = "operation_queued"
    DRAIN_ATTEMPT = "drain_attempt"
    DRAIN_DROPPED = "drain_dropped"
    STATE_SAVED = "state_saved"
    STATE_CLEARED = "state_cleared"
    CREDENTIAL_REFRESH = "credential_refresh"
    CONNECTIVITY_CHANGED = "connectivity_changed"


# Events logged above info level
_WARNING_EVENTS = {EventType.RETRY_EXHAUSTED, EventType.DRAIN_DROPPED}


@dataclass
class ResilienceEvent:
    """One reported step of the resilience layer."""

    event_type: EventType
    operation: str = ""
    domain: Optional[str] = None
    kind: Optional[str] = None
    attempt: Optional[int] = None
    success: Optional[bool] = None
    data: Dict[str, Any] = field(default_factory=dict)

    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        result: Dict[str, Any] = {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "operation": self.operation,
            "timestamp": self.timestamp,
            "data": self.data,
        }
        if self.domain is not None:
            result["domain"] = self.domain
        if self.kind is not None:
            result["kind"] = self.kind
        if self.attempt is not None:
            result["attempt"] = self.attempt
        if self.success is not None:
            result["success"] = self.success
        return result


class EventSink:
    """Base class for event sinks."""

    def record(self, event: ResilienceEvent) -> None:
        """Record an event.

        Args:
            event: Event to record.
        """
        raise NotImplementedError


class LogEventSink(EventSink):
    """Sink that writes events to structured logs."""

    def record(self, event: ResilienceEvent) -> None:
        log_method = logger.warning if event.event_type in _WARNING_EVENTS else logger.info
        payload = event.to_dict()
        payload.pop("event_type")
        payload.pop("timestamp")
        log_method(event.event_type.value, **payload)


class MetricEventSink(EventSink):
    """Sink that translates events into Prometheus metrics."""

    def __init__(self, collector=None):
        """Initialize metric sink.

        Args:
            collector: MetricsCollector to use (default: global collector).
        """
        if collector is None:
            from tempoguard.metrics import get_metrics_collector

            collector = get_metrics_collector()
        self.collector = collector

    def record(self, event: ResilienceEvent) -> None:
        domain = event.domain or "unknown"
        data = event.data
        etype = event.event_type

        if etype == EventType.CLASSIFICATION:
            self.collector.record_classification(domain=domain, kind=event.kind or "unknown")
        elif etype == EventType.RETRY_ATTEMPT:
            self.collector.record_retry(domain, event.operation or "unknown", data.get("delay_ms", 0))
        elif etype == EventType.OPERATION_SUCCEEDED:
            self.collector.record_outcome(domain, "success")
        elif etype == EventType.RETRY_EXHAUSTED:
            self.collector.record_outcome(domain, "failed")
        elif etype == EventType.FALLBACK_USED:
            self.collector.record_outcome(domain, "fallback")
        elif etype == EventType.OPERATION_QUEUED:
            self.collector.record_outcome(domain, "queued")
        elif etype == EventType.DRAIN_ATTEMPT:
            self.collector.record_drain_result("success" if event.success else "failure")
        elif etype == EventType.DRAIN_DROPPED:
            self.collector.record_drain_result("dropped")
        elif etype == EventType.CONNECTIVITY_CHANGED:
            self.collector.record_probe(bool(data.get("is_online")), data.get("latency_ms"))

        if "queue_size" in data:
            self.collector.update_queue_size(data["queue_size"])
        if "preserved_count" in data:
            self.collector.update_preserved_states(data["preserved_count"])


class BufferedEventSink(EventSink):
    """Sink that keeps the most recent events in memory.

    Useful for testing and for status endpoints.
    """

    def __init__(self, max_size: int = 1000):
        """Initialize buffered sink.

        Args:
            max_size: Maximum number of events to buffer.
        """
        self.events: List[ResilienceEvent] = []
        self.max_size = max_size

    def record(self, event: ResilienceEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_size:
            self.events = self.events[-self.max_size:]

    def get_events(
        self,
        event_type: Optional[EventType] = None,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ResilienceEvent]:
        """Get buffered events with optional filtering.

        Args:
            event_type: Filter by event type.
            operation: Filter by operation name.
            limit: Maximum number of events to return (most recent).

        Returns:
            List of matching events.
        """
        filtered = self.events
        if event_type:
            filtered = [e for e in filtered if e.event_type == event_type]
        if operation:
            filtered = [e for e in filtered if e.operation == operation]
        if limit:
            filtered = filtered[-limit:]
        return filtered

    def count(self, event_type: EventType) -> int:
        return len(self.get_events(event_type=event_type))

    def clear(self) -> None:
        """Clear all buffered events."""
        self.events.clear()


class TelemetryRecorder:
    """Fans events out to registered sinks."""

    def __init__(self, sinks: Optional[List[EventSink]] = None):
        self.sinks: List[EventSink] = list(sinks) if sinks is not None else []
        self._enabled = True

    def add_sink(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        if sink in self.sinks:
            self.sinks.remove(sink)

    def record(self, event: ResilienceEvent) -> None:
        """Deliver an event to every sink.

        Args:
            event: Event to record.
        """
        if not self._enabled:
            return

        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as e:
                logger.error(
                    "event_sink_error",
                    sink=sink.__class__.__name__,
                    event_type=event.event_type.value,
                    error=str(e),
                )

    def emit(self, event_type: EventType, operation: str = "", **fields: Any) -> ResilienceEvent:
        """Create and record an event.

        Args:
            event_type: Event type.
            operation: Operation name.
            **fields: Remaining ``ResilienceEvent`` fields.

        Returns:
            The recorded event.
        """
        event = ResilienceEvent(event_type=event_type, operation=operation, **fields)
        self.record(event)
        return event

    def disable(self) -> None:
        self._enabled = False

    def enable(self) -> None:
        self._enabled = True


_recorder: Optional[TelemetryRecorder] = None


def get_telemetry_recorder() -> TelemetryRecorder:
    """Get the global telemetry recorder (logs only by default)."""
    global _recorder
    if _recorder is None:
        _recorder = TelemetryRecorder([LogEventSink()])
    return _recorder
