"""Command-line interface for the proxy core manager.

This module provides the main command-line interface, handling:
- Starting the proxy core and showing its live status
- Inspecting controller settings of a configuration document
- Control-plane commands: version, delay probes, proxy switching, reload
- Exporting the core's recent log output

The CLI is built using Typer. Paths and timing can also be supplied through
``PROXY_CORE_*`` environment variables.

Example:
    # Run from command line:
    $ proxy-core-manager run ~/.config/mihomo/config.yaml --binary /usr/local/bin/mihomo
    $ proxy-core-manager delay ~/.config/mihomo/config.yaml "Tokyo-01"
"""

import signal
import threading
import time
from pathlib import Path

import pyperclip
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from proxy_core_manager import __version__
from proxy_core_manager.core.controller_config import load_controller_config
from proxy_core_manager.core.exceptions import ProxyCoreError
from proxy_core_manager.core.lib.control_plane import (
    DEFAULT_DELAY_TEST_URL,
    DEFAULT_DELAY_TIMEOUT_MS,
    ControlPlaneClient,
)
from proxy_core_manager.core.lib.log_export import export_logs
from proxy_core_manager.core.lib.models import ProcessState
from proxy_core_manager.core.lib.supervisor import CoreSupervisor
from proxy_core_manager.core.settings import APP_DIR, CoreSettings
from proxy_core_manager.core.utils.log_config import configure_logging
from proxy_core_manager.core.utils.prompt import CoreUI, create_core_ui
from proxy_core_manager.core.utils.utils import format_delay

console = Console()
app = typer.Typer(help="Supervise a proxy-core executable and drive its control-plane API")

STATE_POLL_INTERVAL = 0.5  # Seconds

ConfigArgument = typer.Argument(..., exists=True, dir_okay=False, help="Core configuration file")
DataDirOption = typer.Option(
    APP_DIR / "core", "--data-dir", envvar="PROXY_CORE_DATA_DIR", help="Core data directory"
)


@app.callback(invoke_without_command=True)
def version_callback():
    """Show version information."""
    console.print(f"[cyan]Proxy Core Manager v{__version__}[/cyan]")


def _client_for(config: Path) -> ControlPlaneClient:
    return ControlPlaneClient(load_controller_config(config))


def _supervise(
    supervisor: CoreSupervisor, config: Path, reload_requested: threading.Event
) -> ProcessState:
    """Block while the core runs, reloading CONFIG whenever a reload is requested."""
    while supervisor.state is ProcessState.RUNNING:
        if reload_requested.is_set():
            reload_requested.clear()
            supervisor.reload_config(config)
        time.sleep(STATE_POLL_INTERVAL)
    return supervisor.state


@app.command(name="run")
def run_core(
    config: Path = ConfigArgument,
    binary: Path = typer.Option(
        APP_DIR / "core" / "mihomo",
        "--binary",
        "-b",
        envvar="PROXY_CORE_BINARY",
        help="Path to the proxy-core executable",
    ),
    data_dir: Path = DataDirOption,
    grace_period: float = typer.Option(
        0.5, "--grace-period", envvar="PROXY_CORE_GRACE_PERIOD", help="Startup grace period in seconds"
    ),
    debug: bool = typer.Option(
        default=False,
        help="Enable debug logging",
    ),
):
    """Start the proxy core and show its live status until Ctrl+C."""
    settings = CoreSettings(binary_path=binary, data_dir=data_dir, grace_period=grace_period)
    configure_logging("DEBUG" if debug else "WARNING", core_log_file=settings.core_log_file)

    supervisor = CoreSupervisor(settings)
    ui = CoreUI(
        supervisor.controller.base_url,
        memory_source=lambda: (process.memory_rss() if (process := supervisor.process) else None),
    )
    supervisor.set_observer(ui)

    # The handler only flags the request; the loop below performs the reload
    reload_requested = threading.Event()
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, lambda *_: reload_requested.set())

    try:
        supervisor.start(config)
    except ProxyCoreError as e:
        console.print(f"[red]Error: {e}")
        supervisor.close()
        raise typer.Exit(code=1) from e

    ui.controller_url = supervisor.controller.base_url
    ui_thread = create_core_ui(ui)
    ui_thread.start()
    exit_code = 0
    try:
        if _supervise(supervisor, config, reload_requested) is ProcessState.FAILED:
            exit_code = 1
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
    finally:
        supervisor.close()
        ui.running = False
        ui_thread.join(timeout=2)

    if exit_code:
        console.print(f"[red]{ui.last_error or 'Core stopped unexpectedly'}")
        raise typer.Exit(code=exit_code)
    console.print("[yellow]Proxy core stopped")


@app.command(name="controller")
def show_controller(config: Path = ConfigArgument):
    """Show the control-plane settings extracted from a configuration."""
    controller = load_controller_config(config)
    table = Table(title="Controller Settings")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Host", controller.host)
    table.add_row("Port", str(controller.port))
    table.add_row("Secret", controller.masked_secret() or "<none>")
    table.add_row("API", controller.base_url)
    console.print(table)


@app.command(name="version")
def core_version(config: Path = ConfigArgument):
    """Query the version of the running core."""
    with _client_for(config) as client:
        version = client.get_version()
    if version is None:
        console.print("[red]Control-plane API unreachable")
        raise typer.Exit(code=1)
    console.print(f"[green]{version}")


@app.command(name="delay")
def probe_delay(
    config: Path = ConfigArgument,
    proxies: list[str] | None = typer.Argument(None, help="Proxy names to probe"),
    group: str | None = typer.Option(None, "--group", "-g", help="Probe every member of a group"),
    url: str = typer.Option(DEFAULT_DELAY_TEST_URL, "--url", help="Probe URL"),
    timeout: int = typer.Option(DEFAULT_DELAY_TIMEOUT_MS, "--timeout", help="Probe timeout in ms"),
):
    """Measure latency through proxies, or through every member of a group."""
    if not proxies and group is None:
        console.print("[red]Name at least one proxy or a --group")
        raise typer.Exit(code=2)

    with _client_for(config) as client:
        if group is not None:
            delays = client.test_group_delay(group, url=url, timeout_ms=timeout)
            if not delays:
                console.print(f"[red]Group delay test failed for {group}")
                raise typer.Exit(code=1)
        else:
            delays = {}
        if proxies:
            delays.update(client.test_delays(proxies, url=url, timeout_ms=timeout))

    table = Table(title="Delay Test")
    table.add_column("Proxy", style="cyan")
    table.add_column("Delay", style="green")
    for name, delay in delays.items():
        table.add_row(name, format_delay(delay) if delay >= 0 else f"[red]{format_delay(delay)}")
    console.print(table)


@app.command(name="switch")
def switch_proxy(
    config: Path = ConfigArgument,
    group: str = typer.Argument(..., help="Selector group"),
    name: str = typer.Argument(..., help="Proxy to select"),
):
    """Select a proxy inside a selector group."""
    with _client_for(config) as client:
        switched = client.switch_proxy(group, name)
    if not switched:
        console.print(f"[red]Could not switch {group} to {name}")
        raise typer.Exit(code=1)
    console.print(f"[green]{group} -> {name}")


@app.command(name="reload")
def reload_config(config: Path = ConfigArgument):
    """Ask the running core to apply a configuration file."""
    with _client_for(config) as client:
        applied = client.apply_config(config.resolve(), force=True)
    if not applied:
        console.print("[red]Config reload failed")
        raise typer.Exit(code=1)
    console.print(f"[green]Config reloaded: {config}")


@app.command(name="connections")
def show_connections(config: Path = ConfigArgument):
    """Show the number of connections currently open in the core."""
    with _client_for(config) as client:
        table = client.get_connections()
    if table is None:
        console.print("[red]Control-plane API unreachable")
        raise typer.Exit(code=1)
    console.print(f"[green]{len(table.get('connections') or [])} active connections")


@app.command(name="export-logs")
def export_core_logs(
    data_dir: Path = DataDirOption,
    dest: Path = typer.Option(Path("."), "--dest", help="Directory receiving the export"),
):
    """Export the most recent core log output."""
    settings = CoreSettings(data_dir=data_dir)
    export_path = export_logs(settings.core_log_file, dest)
    if export_path is None:
        console.print("[red]Log export failed")
        raise typer.Exit(code=1)
    console.print(f"[green]Logs exported to {export_path}")

    try:
        pyperclip.copy(str(export_path))
        console.print("[bold green]Export path copied to clipboard")
    except pyperclip.PyperclipException as e:
        console.print(f"[yellow]Could not copy to clipboard: {e}")


if __name__ == "__main__":
    app()
