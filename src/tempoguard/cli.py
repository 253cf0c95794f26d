"""TempoGuard Command Line Interface."""

import asyncio
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table

from tempoguard.config import load_config
from tempoguard.connectivity import ConnectivityProbe
from tempoguard.errors import ConfigurationError
from tempoguard.logging import configure_logging, get_logger
from tempoguard.manager import ResilienceManager
from tempoguard.metrics import start_metrics_server

app = typer.Typer(
    name="tempoguard",
    help="TempoGuard: resilient execution for calendar assistants",
    no_args_is_help=True,
)
console = Console()
logger = get_logger(__name__, component="cli")

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="YAML configuration file")


def _load(config_file: Optional[Path]):
    try:
        return load_config(config_file)
    except ConfigurationError as e:
        console.print(f"[red]✗ {e.message}[/red]")
        for error in e.details.get("errors", []):
            console.print(f"  • {error}")
        raise typer.Exit(1)


def _flatten(data: Dict[str, Any], prefix: str = "") -> Iterator[Tuple[str, Any]]:
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value:
            yield from _flatten(value, name)
        else:
            yield name, value


@app.command()
def version():
    """Show version information."""
    from tempoguard import __version__

    console.print(f"TempoGuard version {__version__}")


@app.command()
def probe(
    config_file: Optional[Path] = _CONFIG_OPTION,
    url: Optional[str] = typer.Option(None, "--url", "-u", help="Override the probe URL"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t", help="Probe timeout in seconds"),
):
    """Run one connectivity probe and print the network status."""
    config = _load(config_file)
    configure_logging(log_level=config.logging.level, log_format=config.logging.format)
    settings = config.connectivity

    async def _probe():
        checker = ConnectivityProbe(
            url=url or settings.probe_url,
            method=settings.probe_method,
            timeout_seconds=timeout or settings.timeout_seconds,
            slow_threshold_ms=settings.slow_threshold_ms,
        )
        try:
            return await checker.check()
        finally:
            await checker.close()

    status = asyncio.run(_probe())
    logger.info("probe_completed", is_online=status.is_online, latency_ms=status.latency_ms)

    table = Table(title="Network Status")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    colour = "green" if status.is_online else "red"
    table.add_row("online", f"[{colour}]{status.is_online}[/{colour}]")
    table.add_row("connection", status.connection_class.value)
    latency = f"{status.latency_ms:.1f} ms" if status.latency_ms is not None else "-"
    table.add_row("latency", latency)
    if status.error:
        table.add_row("error", status.error)
    console.print(table)

    if not status.is_online:
        raise typer.Exit(1)


@app.command()
def monitor(
    config_file: Optional[Path] = _CONFIG_OPTION,
    duration: float = typer.Option(60.0, "--duration", "-d", help="Seconds to run before exiting"),
    metrics: bool = typer.Option(True, "--metrics/--no-metrics", help="Expose Prometheus metrics"),
):
    """Watch connectivity and print every status change."""
    config = _load(config_file)
    configure_logging(log_level=config.logging.level, log_format=config.logging.format)

    if metrics and config.metrics.enabled:
        start_metrics_server(port=config.metrics.port, addr=config.metrics.addr)
        console.print(f"[dim]Metrics available at http://localhost:{config.metrics.port}/metrics[/dim]")

    def _report(previous, current):
        colour = "green" if current.is_online else "red"
        console.print(
            f"[{colour}]{previous.connection_class.value} → {current.connection_class.value}[/{colour}]"
        )

    async def _watch():
        manager = ResilienceManager(config)
        manager.monitor.add_listener(_report)
        await manager.start()
        try:
            await asyncio.sleep(duration)
        finally:
            await manager.stop()
        return manager.status()

    status = asyncio.run(_watch())
    console.print(
        f"Queue: {status['queue']['size']} pending, "
        f"{len(status['queue']['dropped'])} dropped; "
        f"preserved states: {status['preserved_states']}"
    )


@app.command(name="config")
def show_config(config_file: Optional[Path] = _CONFIG_OPTION):
    """Print the effective configuration."""
    config = _load(config_file)

    table = Table(title="Effective Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in _flatten(config.model_dump(mode="json")):
        if isinstance(value, list):
            value = ", ".join(str(item) for item in sorted(value))
        table.add_row(name, str(value))
    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
