"""
Stagewise - Main CLI Application

Command-line interface for bootstrapping and inspecting a server.
"""
import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import StartupOptions, parse_overrides
from core.bootstrap import BootstrapOrchestrator, wait_for_shutdown_signal
from core.builtin import StatusService, create_default_orchestrator
from core.context import BootstrapContext, build_context
from core.errors import BootstrapFailure, ConfigError
from db.migration_store import create_migration_store

# Initialize app
app = typer.Typer(
    name="stagewise",
    help="Stagewise - staged server bootstrap",
    add_completion=False
)

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("stagewise.cli")


def _startup_options(
    data_dir: Optional[Path],
    log_dir: Optional[Path],
    config_dir: Optional[Path],
    cache_dir: Optional[Path],
    web_dir: Optional[Path],
    no_web_client: bool,
    published_server_url: Optional[str],
    binary_path: Optional[str],
    overrides: Optional[List[str]],
) -> StartupOptions:
    return StartupOptions(
        data_dir=data_dir,
        log_dir=log_dir,
        config_dir=config_dir,
        cache_dir=cache_dir,
        web_dir=web_dir,
        no_web_client=no_web_client,
        published_server_url=published_server_url,
        binary_path=binary_path,
        settings=parse_overrides(overrides or []),
    )


def _load_context(options_factory) -> BootstrapContext:
    """Load .env, then resolve the context; config errors exit with status 2."""
    load_dotenv()
    try:
        return build_context(options_factory())
    except ConfigError as e:
        err_console.print(f"[red]Configuration error: {e.message}[/red]")
        raise typer.Exit(2)


DataDirOption = typer.Option(None, "--data-dir", "-d", help="Program data directory")
LogDirOption = typer.Option(None, "--log-dir", help="Log directory (default: <data-dir>/logs)")
ConfigDirOption = typer.Option(None, "--config-dir", help="Config directory (default: <data-dir>/config)")
CacheDirOption = typer.Option(None, "--cache-dir", help="Cache directory (default: <data-dir>/cache)")
WebDirOption = typer.Option(None, "--web-dir", help="Web client directory (default: <data-dir>/web)")
NoWebClientOption = typer.Option(False, "--no-web-client", help="Do not host the web client")
PublishedUrlOption = typer.Option(None, "--published-server-url", help="URL advertised to clients")
BinaryPathOption = typer.Option(None, "--binary-path", help="Path to the required external binary")
SetOption = typer.Option(None, "--set", "-s", help="Configuration override, key=value (repeatable)")


@app.command()
def serve(
    data_dir: Optional[Path] = DataDirOption,
    log_dir: Optional[Path] = LogDirOption,
    config_dir: Optional[Path] = ConfigDirOption,
    cache_dir: Optional[Path] = CacheDirOption,
    web_dir: Optional[Path] = WebDirOption,
    no_web_client: bool = NoWebClientOption,
    published_server_url: Optional[str] = PublishedUrlOption,
    binary_path: Optional[str] = BinaryPathOption,
    overrides: Optional[List[str]] = SetOption,
    once: bool = typer.Option(False, "--once", help="Shut down as soon as startup completes"),
):
    """Bootstrap the server and run until interrupted."""
    context = _load_context(lambda: _startup_options(
        data_dir, log_dir, config_dir, cache_dir, web_dir,
        no_web_client, published_server_url, binary_path, overrides,
    ))
    orchestrator = create_default_orchestrator()

    try:
        asyncio.run(_serve(orchestrator, context, once))
    except BootstrapFailure:
        # Already reported to stderr by the orchestrator
        raise typer.Exit(1)


async def _serve(orchestrator: BootstrapOrchestrator, context: BootstrapContext, once: bool) -> None:
    graph = await orchestrator.run(context)
    try:
        snapshot = graph.resolve(StatusService).snapshot()
        console.print(Panel.fit(
            f"[bold green]Server {snapshot['server_id']} ready[/bold green] on port {snapshot['port']}",
            border_style="green"
        ))
        if not once:
            await wait_for_shutdown_signal(graph)
    finally:
        report = await orchestrator.shutdown()
        for error in report.errors:
            err_console.print(f"[yellow]Teardown: {error.message}[/yellow]")


@app.command()
def config(
    data_dir: Optional[Path] = DataDirOption,
    config_dir: Optional[Path] = ConfigDirOption,
    overrides: Optional[List[str]] = SetOption,
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
):
    """Show the resolved configuration."""
    context = _load_context(lambda: _startup_options(
        data_dir, None, config_dir, None, None, False, None, None, overrides,
    ))
    values = dict(sorted(context.configuration.items()))

    if as_json:
        console.print_json(json.dumps({"paths": context.paths.to_dict(), "configuration": values}))
        return

    paths = Table(title="Paths")
    paths.add_column("Name", style="cyan")
    paths.add_column("Path")
    for name, path in context.paths.to_dict().items():
        paths.add_row(name, path)
    console.print(paths)

    table = Table(title="Configuration")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for key, value in values.items():
        table.add_row(key, value)
    console.print(table)


@app.command()
def migrations(
    data_dir: Optional[Path] = DataDirOption,
    config_dir: Optional[Path] = ConfigDirOption,
    overrides: Optional[List[str]] = SetOption,
):
    """List applied migrations."""
    context = _load_context(lambda: _startup_options(
        data_dir, None, config_dir, None, None, False, None, None, overrides,
    ))
    if not context.paths.program_data.exists():
        console.print("[yellow]No migrations applied (program data directory does not exist)[/yellow]")
        return

    records = asyncio.run(_load_records(context))

    table = Table(title="Applied Migrations")
    table.add_column("Stage", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Applied at")
    for record in records:
        table.add_row(record.stage.value, record.name, record.applied_at.isoformat())

    console.print(table)
    console.print(f"\n{len(records)} migration(s) applied")


async def _load_records(context: BootstrapContext) -> list:
    store = create_migration_store(context.configuration, context.paths)
    await store.initialize()
    try:
        return await store.records()
    finally:
        await store.close()


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
