"""
CLI entry point for diu.

Commands:
    daemon start    Start the ingestion daemon (background or --foreground)
    daemon stop     Stop the running daemon
    daemon status   Show whether the daemon runs and its health
    query           List recorded executions
    packages        List package usage
    stats           Show usage statistics
    scan            Record packages that are already installed
    backup          Write a backup of the storage file
    restore         Replace the storage file with a backup
    cleanup         Remove old executions
    config show     Print the effective configuration
    config init     Write a default configuration file

Architecture Note:
    The CLI is thin. Read commands open the store read-only, so they are
    safe while the daemon runs; commands that rewrite the document refuse
    to run while the daemon owns it.
"""

import json
import os
import re
import signal
import subprocess
import sys
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Annotated, Optional

import httpx
import typer
import yaml
from rich.console import Console
from rich.table import Table

from diu import __version__
from diu.daemon.core import create_daemon
from diu.daemon.pidfile import is_running, pid_alive, read_pid, remove_pid_file
from diu.errors import DiuError
from diu.log import setup_logging
from diu.parsers.registry import build_registry
from diu.schema import Config, QueryFilters, default_config_path, load_config, save_config
from diu.store.json_store import JSONStore

app = typer.Typer(
    name="diu",
    help="Track how you use your package managers and developer tools.",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()

DURATION_PATTERN = re.compile(r"^(\d+)([hdwm])$")
DURATION_UNITS = {"h": timedelta(hours=1), "d": timedelta(days=1), "w": timedelta(weeks=1), "m": timedelta(days=30)}
STARTUP_WAIT_SECONDS = 5.0


def parse_duration(value: str) -> timedelta:
    """
    Parse durations like "24h", "7d", "2w" or "3m" (30-day months).

    Raises:
        typer.BadParameter: If the value doesn't match
    """
    match = DURATION_PATTERN.match(value.strip().lower())
    if match is None:
        msg = f"Invalid duration {value!r}, expected e.g. 24h, 7d, 2w, 3m"
        raise typer.BadParameter(msg)
    return int(match.group(1)) * DURATION_UNITS[match.group(2)]


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]diu[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to the config file. Defaults to $DIU_CONFIG or ~/.config/diu/config.yaml.",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            help="Enable debug logging.",
        ),
    ] = False,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    diu (Do I Use) - record and audit package manager usage.
    """
    path = config_path or default_config_path()
    try:
        config = load_config(path)
    except DiuError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e

    setup_logging("debug" if verbose else config.daemon.log_level)
    ctx.obj = {"config": config, "config_path": path}


def _config(ctx: typer.Context) -> Config:
    return ctx.obj["config"]


def _open_store(config: Config, read_only: bool = True) -> JSONStore:
    try:
        return JSONStore(config.storage_file, read_only=read_only)
    except DiuError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from e


def _refuse_while_running(config: Config, action: str) -> None:
    if is_running(config.daemon.pid_file):
        console.print(f"[red]The daemon is running. Stop it before you {action}.[/red]")
        console.print("[dim]diu daemon stop[/dim]")
        raise typer.Exit(code=1)


def _backup_before(store: JSONStore, config: Config, action: str) -> None:
    """Snapshot the document before a destructive command when storage.backup_enabled."""
    if not config.storage.backup_enabled:
        return
    try:
        path = store.backup()
    except DiuError as e:
        console.print(f"[red]Backup before {action} failed: {e}[/red]")
        raise typer.Exit(code=1) from e
    console.print(f"[dim]Backup written to {path}[/dim]")


def _format_time(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


# =============================================================================
# Daemon Subcommand Group
# =============================================================================

daemon_app = typer.Typer(
    name="daemon",
    help="Control the ingestion daemon.",
    no_args_is_help=True,
)
app.add_typer(daemon_app, name="daemon")


@daemon_app.command("start")
def daemon_start(
    ctx: typer.Context,
    foreground: Annotated[
        bool,
        typer.Option(
            "--foreground",
            "-f",
            help="Run in the foreground instead of detaching.",
        ),
    ] = False,
) -> None:
    """
    Start the ingestion daemon.

    Example:
        $ diu daemon start
        $ diu daemon start --foreground
    """
    config = _config(ctx)
    pid = read_pid(config.daemon.pid_file)
    if pid is not None and pid_alive(pid):
        console.print(f"[yellow]diu daemon already running (pid {pid})[/yellow]")
        raise typer.Exit(code=1)

    if foreground:
        setup_logging(config.daemon.log_level, config.log_path)
        try:
            daemon = create_daemon(config)
            daemon.start()
        except DiuError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from e
        daemon.serve_forever()
        return

    command = [
        sys.executable, "-m", "diu",
        "--config", str(ctx.obj["config_path"]),
        "daemon", "start", "--foreground",
    ]
    subprocess.Popen(
        command,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )

    deadline = time.monotonic() + STARTUP_WAIT_SECONDS
    while time.monotonic() < deadline:
        pid = read_pid(config.daemon.pid_file)
        if pid is not None and pid_alive(pid):
            console.print(f"[green]diu daemon started (pid {pid})[/green]")
            return
        time.sleep(0.1)

    console.print("[red]diu daemon did not start. Try 'diu daemon start --foreground'.[/red]")
    raise typer.Exit(code=1)


@daemon_app.command("stop")
def daemon_stop(ctx: typer.Context) -> None:
    """
    Stop the running daemon (SIGTERM, then wait for it to exit).
    """
    config = _config(ctx)
    pid_file = config.daemon.pid_file
    pid = read_pid(pid_file)
    if pid is None or not pid_alive(pid):
        if pid is not None:
            remove_pid_file(pid_file)
        console.print("[dim]diu daemon is not running.[/dim]")
        return

    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + config.daemon.shutdown_timeout_seconds + 5
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            console.print(f"[green]diu daemon stopped (pid {pid})[/green]")
            return
        time.sleep(0.1)

    console.print(f"[red]diu daemon (pid {pid}) did not stop in time.[/red]")
    raise typer.Exit(code=1)


@daemon_app.command("status")
def daemon_status(ctx: typer.Context) -> None:
    """
    Show whether the daemon runs and, when the API is enabled, its health.
    """
    config = _config(ctx)
    pid = read_pid(config.daemon.pid_file)
    if pid is None or not pid_alive(pid):
        console.print("[yellow]diu daemon is not running[/yellow]")
        raise typer.Exit(code=1)

    console.print(f"[green]diu daemon running[/green] (pid {pid})")
    if not config.api.enabled:
        return

    url = f"http://{config.api.host}:{config.api.port}/api/v1/health"
    try:
        response = httpx.get(url, timeout=2.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        console.print(f"[yellow]API not reachable at {url}: {e}[/yellow]")
        return

    health = response.json()
    console.print(f"  Status:   {health.get('status')}")
    console.print(f"  Version:  {health.get('version')}")
    console.print(f"  Uptime:   {health.get('uptime')}")
    console.print(f"  Monitors: {health.get('monitors_active')}")


# =============================================================================
# Read Commands
# =============================================================================


@app.command()
def query(
    ctx: typer.Context,
    tool: Annotated[
        Optional[str],
        typer.Option("--tool", "-t", help="Only executions of this tool."),
    ] = None,
    package: Annotated[
        Optional[str],
        typer.Option("--package", "-p", help="Only executions that touched this package."),
    ] = None,
    last: Annotated[
        Optional[str],
        typer.Option("--last", help="Only the last period, e.g. 24h or 7d."),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of executions to show (0 for all)."),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output JSON instead of a table."),
    ] = False,
) -> None:
    """
    List recorded executions, newest first.

    Example:
        $ diu query --tool npm --last 7d
    """
    since = datetime.now(UTC) - parse_duration(last) if last else None
    filters = QueryFilters(tool=tool, package=package, since=since, limit=limit)
    with _open_store(_config(ctx)) as store:
        records = store.query(filters)

    if json_output:
        print(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    if not records:
        console.print("[dim]No executions found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Time")
    table.add_column("Tool", style="cyan")
    table.add_column("Command")
    table.add_column("Packages")
    table.add_column("Exit", justify="right")

    for record in records:
        exit_display = str(record.exit_code) if record.exit_code == 0 else f"[red]{record.exit_code}[/red]"
        table.add_row(
            _format_time(record.timestamp),
            record.tool,
            record.command,
            ", ".join(record.packages_affected),
            exit_display,
        )

    console.print(table)


@app.command()
def packages(
    ctx: typer.Context,
    tool: Annotated[
        Optional[str],
        typer.Option("--tool", "-t", help="Only packages of this tool."),
    ] = None,
    unused: Annotated[
        Optional[str],
        typer.Option("--unused", help="Only packages not used within this period, e.g. 90d."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output JSON instead of a table."),
    ] = False,
) -> None:
    """
    List packages with their usage counts.

    Example:
        $ diu packages --unused 90d
    """
    with _open_store(_config(ctx)) as store:
        results = store.get_packages(tool)

    if unused:
        cutoff = datetime.now(UTC) - parse_duration(unused)
        results = [p for p in results if p.last_used < cutoff]

    if json_output:
        print(json.dumps([p.model_dump(mode="json") for p in results], indent=2))
        return

    if not results:
        console.print("[dim]No packages found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Tool", style="cyan")
    table.add_column("Package")
    table.add_column("Version")
    table.add_column("Uses", justify="right")
    table.add_column("Last used")

    for p in results:
        table.add_row(p.tool, p.name, p.version, str(p.usage_count), _format_time(p.last_used))

    console.print(table)


@app.command()
def stats(ctx: typer.Context) -> None:
    """
    Show usage statistics.
    """
    with _open_store(_config(ctx)) as store:
        store.recompute_most_active_day()
        statistics = store.statistics()

    console.print(f"[bold]Total executions:[/bold] {statistics.total_executions}")
    console.print(f"[bold]Most active day:[/bold]  {statistics.most_active_day or '-'}")
    if not statistics.execution_frequency:
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Tool", style="cyan")
    table.add_column("Executions", justify="right")
    for tool in statistics.tools_used:
        table.add_row(tool, str(statistics.execution_frequency.get(tool, 0)))
    console.print(table)


# =============================================================================
# Maintenance Commands
# =============================================================================


@app.command()
def scan(ctx: typer.Context) -> None:
    """
    Record packages that are already installed, without counting a use.

    Example:
        $ diu scan
    """
    config = _config(ctx)
    _refuse_while_running(config, "scan")

    registry = build_registry(config)
    with _open_store(config, read_only=False) as store:
        for parser in registry:
            installed = parser.installed_packages()
            try:
                added = store.record_installed(*installed)
            except DiuError as e:
                console.print(f"[red]{e}[/red]")
                raise typer.Exit(code=1) from e
            console.print(f"  {parser.name}: {len(installed)} installed, {added} new")


@app.command()
def backup(ctx: typer.Context) -> None:
    """
    Write a timestamped backup next to the storage file.
    """
    with _open_store(_config(ctx)) as store:
        try:
            path = store.backup()
        except DiuError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from e
    console.print(f"[green]Backup written to {path}[/green]")


@app.command()
def restore(
    ctx: typer.Context,
    backup_path: Annotated[
        Path,
        typer.Argument(help="Backup file created by 'diu backup'."),
    ],
) -> None:
    """
    Replace the storage file with the content of a backup.
    """
    config = _config(ctx)
    _refuse_while_running(config, "restore")
    with _open_store(config, read_only=False) as store:
        _backup_before(store, config, "restore")
        try:
            store.restore(backup_path)
        except DiuError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from e
    console.print(f"[green]Restored from {backup_path}[/green]")


@app.command()
def cleanup(
    ctx: typer.Context,
    days: Annotated[
        Optional[int],
        typer.Option("--days", help="Remove executions older than this many days (default: storage.retention_days)."),
    ] = None,
) -> None:
    """
    Remove executions older than the retention period.
    """
    config = _config(ctx)
    _refuse_while_running(config, "clean up")
    retention = days if days is not None else config.storage.retention_days
    cutoff = datetime.now(UTC) - timedelta(days=retention)
    with _open_store(config, read_only=False) as store:
        _backup_before(store, config, "cleanup")
        removed = store.cleanup(cutoff)
    console.print(f"Removed {removed} executions older than {retention} days")


# =============================================================================
# Config Subcommand Group
# =============================================================================

config_app = typer.Typer(
    name="config",
    help="Inspect and create the configuration file.",
    no_args_is_help=True,
)
app.add_typer(config_app, name="config")


@config_app.command("show")
def config_show(ctx: typer.Context) -> None:
    """
    Print the effective configuration as YAML.
    """
    console.print(f"[dim]# {ctx.obj['config_path']}[/dim]")
    print(yaml.safe_dump(_config(ctx).model_dump(mode="json"), sort_keys=False), end="")


@config_app.command("init")
def config_init(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing file."),
    ] = False,
) -> None:
    """
    Write the default configuration to the config path.
    """
    path: Path = ctx.obj["config_path"]
    if path.exists() and not force:
        console.print(f"[yellow]{path} already exists (use --force to overwrite)[/yellow]")
        raise typer.Exit(code=1)
    save_config(Config(), path)
    console.print(f"[green]Wrote {path}[/green]")


if __name__ == "__main__":
    app()
