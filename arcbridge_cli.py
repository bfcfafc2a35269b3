#!/usr/bin/env python3
"""Arc Bridge CLI - drive a Monome Arc as a four-knob parameter controller.

The bridge takes over the Arc's Lua console, prints every encoder movement as
a parameter change, and keeps the LED rings in sync with parameter values.

Examples:
    # Connect to a known port and run until Ctrl+C
    python arcbridge_cli.py run --port /dev/ttyACM0

    # Use a config file (YAML or JSON) and show the raw serial traffic
    python arcbridge_cli.py run --config arc.yaml --trace

    # Dry run against the in-memory device
    python arcbridge_cli.py run --mock

    # List serial ports and show what would be sent on connect
    python arcbridge_cli.py ports
    python arcbridge_cli.py init-script
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from serial.tools import list_ports

# Ensure the arcbridge package is importable
if __name__ == "__main__":
    import os
    sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from arcbridge import __version__
from arcbridge.bridge import (
    ArcBridge,
    BridgeConfig,
    EventBus,
    HardwareConnected,
    HardwareConnectionError,
    HardwareDisconnected,
    ParameterChanged,
    load_config,
)
from arcbridge.errors import ConfigError
from arcbridge.protocols import ProtocolCodec
from arcbridge.transports import MockTransport, SerialTransport

MOCK_HANDLE = "mock://arc"

app = typer.Typer(
    name="arcbridge",
    help="Arc Bridge - Monome Arc control surface bridge",
    add_completion=False,
)
console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, console=console)],
    )


def _load(config: Optional[str]) -> BridgeConfig:
    if config is None:
        return BridgeConfig()
    try:
        return load_config(config)
    except FileNotFoundError:
        console.print(f"[red]Error: config file not found: {config}[/red]")
        raise typer.Exit(1)
    except ConfigError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)


@app.command()
def run(
    port: Optional[List[str]] = typer.Option(
        None,
        "--port",
        "-p",
        help="Authorized serial port (e.g. /dev/ttyACM0, COM4); can be repeated",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML or JSON configuration file",
    ),
    baud: Optional[int] = typer.Option(
        None,
        "--baud",
        "-b",
        help="Baud rate (default: 115200)",
    ),
    no_auto_connect: bool = typer.Option(
        False,
        "--no-auto-connect",
        help="Do not connect on startup or reconnect after a lost link",
    ),
    mock: bool = typer.Option(
        False,
        "--mock",
        help="Use the in-memory mock device instead of a serial port",
    ),
    trace: bool = typer.Option(
        False,
        "--trace",
        help="Print raw bytes received from the device",
    ),
    stats_interval: float = typer.Option(
        60.0,
        "--stats-interval",
        help="Seconds between stats lines",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging",
    ),
) -> None:
    """Run the bridge until interrupted.

    Encoder movements are printed as parameter changes. With auto-connect
    (the default) the first authorized port is opened after a short startup
    delay, and a lost link is retried once after three seconds.
    """
    setup_logging(verbose)

    cfg = _load(config)
    ports = list(port) if port else None
    if mock and not (ports or cfg.ports):
        ports = [MOCK_HANDLE]
    try:
        cfg = cfg.merged(
            ports=ports,
            baudrate=baud,
            auto_connect=False if no_auto_connect else None,
        )
    except ConfigError as exc:
        console.print(f"[red]Error: {exc}[/red]")
        raise typer.Exit(1)

    if not cfg.ports:
        console.print("[yellow]No authorized ports configured; use --port or a config file[/yellow]")

    # Display configuration
    table = Table(title="Arc Bridge Configuration", show_header=True)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="yellow")
    table.add_row("Ports", ", ".join(cfg.ports) or "-")
    table.add_row("Baud rate", str(cfg.baudrate))
    table.add_row("Auto-connect", "yes" if cfg.auto_connect else "no")
    for ring, (name, value) in enumerate(zip(cfg.channel_names, cfg.initial_values), start=1):
        table.add_row(f"Ring {ring}", f"{name} = {value:.2f}")
    console.print(table)
    console.print()

    transport = MockTransport(handles=cfg.ports) if mock else SerialTransport(write_timeout=cfg.write_timeout)
    bus = EventBus()
    bridge = ArcBridge(transport, bus, config=cfg)

    bus.subscribe(
        HardwareConnected,
        lambda e: console.print(
            f"[green]Arc connected{' (auto)' if e.auto_connect else ''}[/green]"
        ),
    )
    bus.subscribe(HardwareDisconnected, lambda e: console.print("[yellow]Arc disconnected[/yellow]"))
    bus.subscribe(HardwareConnectionError, lambda e: console.print(f"[red]Connection error: {e.message}[/red]"))
    bus.subscribe(
        ParameterChanged,
        lambda e: console.print(
            f"[dim]Ring {e.channel_index + 1}[/dim] {e.parameter_name:<12} {e.value:.3f} "
            f"[dim]({e.delta:+.2f})[/dim]"
        ),
    )
    if trace:
        bridge.add_raw_hook(lambda data: console.print(f"[dim]RX {data!r}[/dim]"))

    console.print(Panel.fit("[bold green]Starting Arc bridge...[/bold green]"))

    async def _run():
        # Handle graceful shutdown
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def signal_handler():
            console.print("\n[yellow]Shutting down...[/yellow]")
            stop_event.set()

        try:
            loop.add_signal_handler(signal.SIGINT, signal_handler)
            loop.add_signal_handler(signal.SIGTERM, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

        try:
            await bridge.start()
            console.print("[bold green]Bridge running. Press Ctrl+C to stop.[/bold green]")

            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=stats_interval)
                except asyncio.TimeoutError:
                    stats = bridge.get_stats()
                    console.print(
                        f"[dim]Stats: {stats['state']}, {stats['encoder_events']} encoder events, "
                        f"{stats['led_sent']} LED updates ({stats['led_coalesced']} coalesced), "
                        f"{stats['reconnect_attempts']} reconnects[/dim]"
                    )
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted[/yellow]")
        finally:
            await bridge.stop()
            console.print("[green]Bridge stopped.[/green]")

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass


@app.command("ports")
def list_serial_ports(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Mark ports authorized in this config file"),
) -> None:
    """List serial ports visible to this host."""
    authorized = set(_load(config).ports) if config else set()
    found = list_ports.comports()
    if not found:
        console.print("No serial ports found")
        raise typer.Exit()
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Device")
    table.add_column("Description")
    table.add_column("Authorized")
    for p in found:
        table.add_row(p.device, p.description or "", "yes" if p.device in authorized else "")
    console.print(table)


@app.command("init-script")
def init_script(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Take initial values from this config file"),
) -> None:
    """Print the command sequence sent to the Arc when taking control."""
    cfg = _load(config)
    codec = ProtocolCodec()
    for command in codec.encode_init(cfg.initial_values):
        console.print(command, markup=False, highlight=False, soft_wrap=True)


@app.command()
def info() -> None:
    """Display bridge capabilities and usage information."""
    console.print(
        Panel.fit(
            f"[bold]Arc Bridge {__version__}[/bold]\n\n"
            "Connects a Monome Arc over USB serial, replaces its running script\n"
            "with a small Lua handler, and maps the four rings to parameters.\n\n"
            "[bold]Wire protocol:[/bold]\n"
            "  • Device → host: ENC:<ring>:<delta>:<value> (115200 baud)\n"
            "  • Host → device: Lua statements terminated by CRLF\n\n"
            "[bold]Behaviour:[/bold]\n"
            "  • LED updates limited to one per ring every 50 ms, latest value wins\n"
            "  • Changes under 0.02 are not redrawn\n"
            "  • A lost link is retried once after 3 s using an authorized port\n"
            "  • A user disconnect disables automatic reconnects\n",
            title="About",
        )
    )


if __name__ == "__main__":
    app()
