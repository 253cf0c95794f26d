"""Tests for the Prometheus metrics collector."""

from prometheus_client import REGISTRY

from tempoguard.events import EventType, MetricEventSink, TelemetryRecorder
from tempoguard.metrics import MetricsCollector


class TestMetricsCollector:
    """Test metric recording."""

    def test_singleton(self, isolated_metrics_collector):
        assert MetricsCollector() is isolated_metrics_collector

    def test_classification_counter(self, isolated_metrics_collector):
        isolated_metrics_collector.record_classification(domain="network", kind="offline")
        isolated_metrics_collector.record_classification(domain="network", kind="offline")

        value = REGISTRY.get_sample_value(
            "tempoguard_classifications_total", {"domain": "network", "kind": "offline"}
        )
        assert value == 2.0

    def test_retry_delay_histogram(self, isolated_metrics_collector):
        isolated_metrics_collector.record_retry("ai_service", "agenda_generation", 1500)

        assert REGISTRY.get_sample_value(
            "tempoguard_retry_attempts_total", {"domain": "ai_service", "operation": "agenda_generation"}
        ) == 1.0
        assert REGISTRY.get_sample_value("tempoguard_retry_delay_seconds_count", {"domain": "ai_service"}) == 1.0
        assert REGISTRY.get_sample_value("tempoguard_retry_delay_seconds_sum", {"domain": "ai_service"}) == 1.5

    def test_operation_labels_bounded(self, isolated_metrics_collector):
        isolated_metrics_collector.max_operations = 2
        for name in ("a", "b", "c", "d"):
            isolated_metrics_collector.record_retry("network", name, 100)

        assert REGISTRY.get_sample_value(
            "tempoguard_retry_attempts_total", {"domain": "network", "operation": "other"}
        ) == 2.0

    def test_gauges(self, isolated_metrics_collector):
        isolated_metrics_collector.update_queue_size(7)
        isolated_metrics_collector.update_preserved_states(3)
        isolated_metrics_collector.record_probe(False, None)

        assert REGISTRY.get_sample_value("tempoguard_offline_queue_size") == 7.0
        assert REGISTRY.get_sample_value("tempoguard_preserved_states") == 3.0
        assert REGISTRY.get_sample_value("tempoguard_network_online") == 0.0

    def test_probe_latency(self, isolated_metrics_collector):
        isolated_metrics_collector.record_probe(True, 120.0)

        assert REGISTRY.get_sample_value("tempoguard_network_online") == 1.0
        assert REGISTRY.get_sample_value("tempoguard_probe_latency_seconds_count") == 1.0

    def test_events_flow_into_metrics(self, isolated_metrics_collector):
        recorder = TelemetryRecorder([MetricEventSink(isolated_metrics_collector)])

        recorder.emit(EventType.RETRY_EXHAUSTED, domain="calendar_api")
        recorder.emit(EventType.DRAIN_ATTEMPT, success=False)

        assert REGISTRY.get_sample_value(
            "tempoguard_operations_total", {"domain": "calendar_api", "outcome": "failed"}
        ) == 1.0
        assert REGISTRY.get_sample_value("tempoguard_drain_results_total", {"result": "failure"}) == 1.0

    def test_summary(self, isolated_metrics_collector):
        isolated_metrics_collector.record_retry("network", "sync", 100)

        summary = isolated_metrics_collector.get_metrics_summary()

        assert summary["collector"] == "prometheus"
        assert summary["tracked_operations"] == {"network": 1}
