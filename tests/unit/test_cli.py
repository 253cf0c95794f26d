"""Tests for the command line interface."""

import os

import pytest
from typer.testing import CliRunner

from tempoguard import __version__, cli
from tempoguard.connectivity import NetworkStatus

runner = CliRunner()


class FakeProbe:
    """Probe returning a fixed status."""

    result = NetworkStatus(is_online=True, latency_ms=12.0)
    created = []

    def __init__(self, url, method, timeout_seconds, slow_threshold_ms):
        FakeProbe.created.append({"url": url, "method": method, "timeout_seconds": timeout_seconds})

    async def check(self):
        return FakeProbe.result

    async def close(self):
        return None


@pytest.fixture
def fake_probe(monkeypatch):
    FakeProbe.created = []
    FakeProbe.result = NetworkStatus(is_online=True, latency_ms=12.0)
    monkeypatch.setattr(cli, "ConnectivityProbe", FakeProbe)
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
    return FakeProbe


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in [k for k in os.environ if k.startswith("TEMPOGUARD_")]:
        monkeypatch.delenv(key)


class TestCLI:
    """Test CLI commands."""

    def test_version(self):
        result = runner.invoke(cli.app, ["version"])

        assert result.exit_code == 0
        assert f"TempoGuard version {__version__}" in result.stdout

    def test_config_defaults(self):
        result = runner.invoke(cli.app, ["config"])

        assert result.exit_code == 0
        assert "Effective Configuration" in result.stdout
        assert "queue.max_size" in result.stdout

    def test_config_from_file(self, tmp_path):
        path = tmp_path / "tempoguard.yaml"
        path.write_text("queue:\n  max_size: 77\n")

        result = runner.invoke(cli.app, ["config", "--config", str(path)])

        assert result.exit_code == 0
        assert "77" in result.stdout

    def test_invalid_config_exits_with_error(self, tmp_path):
        path = tmp_path / "tempoguard.yaml"
        path.write_text("queue:\n  max_size: -5\n")

        result = runner.invoke(cli.app, ["config", "-c", str(path)])

        assert result.exit_code == 1
        assert "Invalid configuration" in result.stdout

    def test_probe_online(self, fake_probe):
        result = runner.invoke(cli.app, ["probe", "--url", "https://probe.test/", "--timeout", "2"])

        assert result.exit_code == 0
        assert "Network Status" in result.stdout
        assert fake_probe.created == [{"url": "https://probe.test/", "method": "HEAD", "timeout_seconds": 2.0}]

    def test_probe_offline_exits_with_error(self, fake_probe):
        fake_probe.result = NetworkStatus.offline("no route to host")

        result = runner.invoke(cli.app, ["probe"])

        assert result.exit_code == 1
        assert "no route to host" in result.stdout

    def test_monitor_without_connectivity(self, monkeypatch):
        started = []
        monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
        monkeypatch.setattr(cli, "start_metrics_server", lambda **kwargs: started.append(kwargs))
        monkeypatch.setenv("TEMPOGUARD_CONNECTIVITY__ENABLED", "false")
        monkeypatch.setenv("TEMPOGUARD_METRICS__PORT", "9311")

        result = runner.invoke(cli.app, ["monitor", "--duration", "0"])

        assert result.exit_code == 0
        assert started == [{"port": 9311, "addr": "0.0.0.0"}]
        assert "0 pending" in result.stdout

    def test_monitor_without_metrics(self, monkeypatch):
        started = []
        monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)
        monkeypatch.setattr(cli, "start_metrics_server", lambda **kwargs: started.append(kwargs))
        monkeypatch.setenv("TEMPOGUARD_CONNECTIVITY__ENABLED", "false")

        result = runner.invoke(cli.app, ["monitor", "--duration", "0", "--no-metrics"])

        assert result.exit_code == 0
        assert started == []
