"""Main CLI entry point for wa-hub.

This module provides the Typer application used to run the hub and to
inspect its configuration and persisted state.

Usage:
    wahub run --engine mypackage.engine:create_session
    wahub instances
    wahub system
    wahub --config wahub.toml config
"""

from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from wahub.config import WaHubConfig, load_config
from wahub.engine import load_engine_factory
from wahub.logging import get_logger, setup_logging
from wahub.orchestrator.registry import InstanceRegistry
from wahub.storage import InstanceStore
from wahub.system import build_system_report

app = typer.Typer(
    name="wahub",
    help="wa-hub: multi-tenant messaging session orchestrator",
    no_args_is_help=True,
)

console = Console()


class AppContext:
    """Application context shared across CLI commands.

    Attributes:
        config: Loaded wa-hub configuration
    """

    def __init__(self, config: WaHubConfig):
        self.config = config


_app_context: AppContext | None = None


def get_app_context() -> AppContext:
    """Get the shared application context.

    Raises:
        RuntimeError: If context has not been initialized
    """
    if _app_context is None:
        raise RuntimeError("Application context not initialized. Call initialize_context first.")
    return _app_context


def initialize_context(config: WaHubConfig) -> AppContext:
    global _app_context
    _app_context = AppContext(config)
    return _app_context


@app.command()
def run(
    engine: Annotated[
        Optional[str],
        typer.Option(
            "--engine",
            "-e",
            help="Engine factory as 'module:callable' (overrides engine.factory)",
        ),
    ] = None,
    live: Annotated[
        bool,
        typer.Option("--live/--no-live", help="Show a live instance table"),
    ] = True,
) -> None:
    """Run the hub until interrupted.

    Persisted instances are restored one at a time, then the tick loop
    drives every watchdog, poll and send until SIGINT or SIGTERM.
    """
    ctx = get_app_context()
    factory_path = engine or ctx.config.engine.factory
    if not factory_path:
        console.print("[red]No engine factory configured.[/red] Use --engine or engine.factory")
        raise typer.Exit(code=1)

    try:
        factory = load_engine_factory(factory_path)
    except ValueError as e:
        console.print(f"[red]Invalid engine factory:[/red] {e}")
        raise typer.Exit(code=1)

    build_system_report()

    console.print()
    console.print(
        Panel(
            f"[bold cyan]wa-hub[/bold cyan]\n\n"
            f"[bold]Engine:[/bold] {factory_path}\n"
            f"[bold]Instances file:[/bold] {ctx.config.storage.instances_path}\n"
            f"[bold]Restore concurrency:[/bold] {ctx.config.restore.restore_concurrency}\n"
            f"[bold]Tick interval:[/bold] {ctx.config.watchdog.tick_interval_seconds}s",
            title="Starting hub",
            border_style="cyan",
        )
    )

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        console.print()
        console.print("[yellow]Shutdown signal received. Stopping hub...[/yellow]")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    async def run_hub() -> None:
        registry = InstanceRegistry(ctx.config, factory)
        try:
            restored = await registry.start()
            console.print(f"[bold green]Hub running[/bold green] ({restored} instances queued for restore)")
            console.print("[dim]Press Ctrl+C to stop[/dim]")
            console.print()

            if live:
                with Live(generate_status_table(registry), refresh_per_second=1) as view:
                    while not shutdown_event.is_set():
                        await asyncio.sleep(0.5)
                        view.update(generate_status_table(registry))
            else:
                while not shutdown_event.is_set():
                    await asyncio.sleep(0.5)
        finally:
            await registry.stop()
            console.print()
            console.print("[green]Hub stopped[/green]")

    try:
        asyncio.run(run_hub())
    except Exception as e:
        console.print(f"[red]Fatal error:[/red] {e}")
        raise typer.Exit(code=1)


def generate_status_table(registry: InstanceRegistry) -> Table:
    """Build a status table of every live instance.

    Args:
        registry: Registry to read statuses from

    Returns:
        Rich Table with one row per instance
    """
    table = Table(title=f"Instances (mode: {registry.system_mode().value})")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Queue", justify="right")
    table.add_column("Restarts", justify="right")
    table.add_column("Last error")

    for status in registry.list_statuses():
        table.add_row(
            status.id,
            status.name,
            status.state.value,
            str(status.queue_size),
            str(status.restart_count),
            status.last_error.kind.value if status.last_error else "-",
        )
    return table


@app.command()
def instances() -> None:
    """List persisted instances."""
    ctx = get_app_context()
    descriptors = InstanceStore(ctx.config.storage.instances_path).load()

    if not descriptors:
        console.print("[dim]No instances persisted.[/dim]")
        return

    table = Table(title="Persisted Instances")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Webhook")
    table.add_column("Events")
    table.add_column("Created")

    for descriptor in descriptors:
        table.add_row(
            descriptor.id,
            descriptor.name,
            descriptor.webhook_url or "-",
            ", ".join(descriptor.webhook_events) or "all",
            descriptor.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command()
def system() -> None:
    """Show host resources relevant to browser sessions."""
    report = build_system_report()

    table = Table(title="System", show_header=False)
    table.add_column("Field", style="bold cyan")
    table.add_column("Value")
    table.add_row("Free memory", f"{report.free_memory_mb:.0f} MB")
    table.add_row("Total memory", f"{report.total_memory_mb:.0f} MB")
    table.add_row(
        "Shared memory",
        f"{report.shm_mb:.0f} MB" if report.shm_mb is not None else "-",
    )
    table.add_row("Container", "yes" if report.in_container else "no")
    console.print(table)

    for warning in report.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@app.command("config")
def show_config() -> None:
    """Print the resolved configuration as JSON."""
    ctx = get_app_context()
    payload = ctx.config.model_dump(mode="json")
    webhook = payload.get("webhook", {})
    for key in ("secret", "auth_token", "protection_bypass"):
        if webhook.get(key):
            webhook[key] = "***"
    console.print_json(json.dumps(payload))


@app.callback()
def main_callback(
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to configuration file (TOML format)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Configure global options and initialize application context.

    Args:
        config_path: Optional path to TOML configuration file
        verbose: Enable debug-level logging
    """
    try:
        config = load_config(config_path)
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/red] {e}")
        raise typer.Exit(code=1)

    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    setup_logging(logging_config)

    initialize_context(config)

    if verbose:
        get_logger(__name__).debug("debug_logging_enabled")


if __name__ == "__main__":
    app()
