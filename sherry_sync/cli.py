"""
CLI commands for sherry-sync.

Provides the `sherry` command-line interface to run the daemon, inspect
synchronization status and manage watched directories and credentials.
"""

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from config.loader import ConfigurationLoader
from core.models.config import DaemonSettings
from core.sync.errors import ConfigurationError, SyncError
from core.transport.auth import FileAuthorizationProvider, read_auth_records
from core.transport.base import Credentials
from core.transport.http import HttpTransportClient
from sherry_sync import __version__

console = Console()


def _settings(ctx: click.Context) -> DaemonSettings:
    return ctx.obj["settings"]


@click.group()
@click.version_option(version=__version__, prog_name="sherry")
@click.option(
    '--config-dir',
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help='Configuration directory (default: ~/.sherry or $SHERRY_CONFIG_DIR)'
)
@click.pass_context
def main(ctx: click.Context, config_dir: Optional[Path]):
    """
    sherry directory synchronization.

    Keep local directories synchronized with a sherry server.
    """
    overrides = {"config_dir": config_dir} if config_dir else {}
    ctx.ensure_object(dict)
    ctx.obj["settings"] = DaemonSettings(**overrides)


@main.command()
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']), default=None,
              help='Override the log level')
@click.option('--polling', is_flag=True, help='Use the polling observer instead of native notifications')
@click.pass_context
def run(ctx: click.Context, log_level: Optional[str], polling: bool):
    """Run the synchronization daemon in the foreground."""
    from sherry_sync.daemon import main as daemon_main

    settings = _settings(ctx)
    updates: Dict[str, Any] = {}
    if log_level:
        updates["log_level"] = log_level
    if polling:
        updates["use_polling"] = True
    if updates:
        settings = settings.model_copy(update=updates)

    console.print(f"[blue]🚀 Starting sherry daemon ({settings.config_dir})[/blue]")
    try:
        asyncio.run(daemon_main(settings))
    except KeyboardInterrupt:
        console.print("\n[yellow]🔌 sherry daemon shutting down...[/yellow]")
    except SyncError as e:
        console.print(f"[red]❌ Daemon failed: {e}[/red]")
        sys.exit(1)


def _load_status(settings: DaemonSettings) -> Optional[Dict[str, Any]]:
    if not settings.status_file.exists():
        return None
    try:
        with open(settings.status_file, encoding='utf-8') as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return None


def _load_fingerprint_summary(settings: DaemonSettings, directory_id: str) -> Dict[str, Any]:
    hashes_file = settings.hashes_dir / f"{directory_id}.json"
    if not hashes_file.exists():
        return {}
    try:
        with open(hashes_file, encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return {"corrupt": True}
    return {
        "files": len(data.get("fingerprints", {})),
        "last_synced_at": data.get("last_synced_at"),
    }


def _format_time(value: Optional[str]) -> str:
    if not value:
        return "never"
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


@main.command()
@click.option('--verbose', '-v', is_flag=True, help='Show detailed status information')
@click.pass_context
def status(ctx: click.Context, verbose: bool):
    """Show watched directories and their synchronization state."""
    settings = _settings(ctx)
    loader = ConfigurationLoader(settings.config_dir)

    try:
        config = loader.load()
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    daemon_status = _load_status(settings)
    running = bool(daemon_status and daemon_status.get("running"))
    live = daemon_status.get("directories", {}) if running else {}

    table = Table(title="sherry Status")
    table.add_column("Directory", style="cyan", no_wrap=True)
    table.add_column("Local Path", style="white")
    table.add_column("Source", style="white")
    table.add_column("State", style="white")
    table.add_column("Files", justify="right")
    table.add_column("Last Sync", style="dim")
    if verbose:
        table.add_column("Pending", justify="right")
        table.add_column("Last Error", style="dim")

    for directory_id, directory in loader.directory_definitions(config).items():
        summary = _load_fingerprint_summary(settings, directory_id)
        entry = live.get(directory_id)

        if entry is None:
            state = "[dim]stopped[/dim]"
        elif entry.get("failed"):
            state = "[red]❌ failed[/red]"
        else:
            state = f"[green]{entry['reconciler']['state']}[/green]"

        files = "[red]corrupt[/red]" if summary.get("corrupt") else str(summary.get("files", 0))
        row = [
            directory_id,
            str(directory.root),
            f"{directory.remote_id} ({directory.source.access.value})",
            state,
            files,
            _format_time(summary.get("last_synced_at")),
        ]
        if verbose:
            reconciler = entry["reconciler"] if entry else {}
            pending = reconciler.get("pending_operations", 0) + reconciler.get("in_flight_operations", 0)
            row.extend([str(pending), (entry or {}).get("last_error") or ""])
        table.add_row(*row)

    console.print(table)
    if running:
        console.print(f"[green]✅ Daemon running (pid {daemon_status.get('pid')}, "
                      f"updated {_format_time(daemon_status.get('updated_at'))})[/green]")
    else:
        console.print("[yellow]⚠️  Daemon is not running. Start it with [bold]sherry run[/bold][/yellow]")

    if verbose:
        users = sorted(read_auth_records(settings.config_dir))
        console.print(f"[dim]API: {config.api_url}[/dim]")
        console.print(f"[dim]Stored credentials: {', '.join(users) if users else 'none'}[/dim]")


@main.command()
@click.argument('source_id')
@click.argument('local_path', type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option('--user', 'user_id', required=True, help='User id whose credentials sync this directory')
@click.option('--read-only', is_flag=True, help='Register a new source with read access only')
@click.pass_context
def add(ctx: click.Context, source_id: str, local_path: Path, user_id: str, read_only: bool):
    """Watch LOCAL_PATH and synchronize it with sherry SOURCE_ID."""
    settings = _settings(ctx)
    loader = ConfigurationLoader(settings.config_dir)
    try:
        loader.initialize()
        watcher = loader.add_watcher(
            source_id, local_path, user_id,
            rules={"access": "read"} if read_only else None
        )
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✅ Watching {watcher.local_path} as {watcher.watcher_id}[/green]")
    console.print("[dim]A running daemon picks up the change automatically[/dim]")


@main.command()
@click.argument('watcher_id')
@click.pass_context
def remove(ctx: click.Context, watcher_id: str):
    """Stop watching a directory (its sync state is kept)."""
    settings = _settings(ctx)
    loader = ConfigurationLoader(settings.config_dir)
    try:
        removed = loader.remove_watcher(watcher_id)
    except ConfigurationError as e:
        console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    if not removed:
        console.print(f"[yellow]⚠️  No watched directory with id {watcher_id}[/yellow]")
        sys.exit(1)
    console.print(f"[green]✅ Removed {watcher_id}[/green]")


@main.command()
@click.option('--user', 'user_id', required=True, help='User id the credentials belong to')
@click.option('--email', required=True, help='Account email')
@click.option('--nickname', default="", help='Display name')
@click.option('--refresh-token', prompt=True, hide_input=True, help='Refresh token issued by the server')
@click.option('--verify/--no-verify', default=True, help='Exchange the token once to check it')
@click.pass_context
def login(ctx: click.Context, user_id: str, email: str, nickname: str, refresh_token: str, verify: bool):
    """Store credentials used by the daemon for a user."""
    settings = _settings(ctx)
    credentials = Credentials(email=email, nickname=nickname, refresh_token=refresh_token)
    provider = FileAuthorizationProvider(settings.config_dir, user_id)

    try:
        provider.store_credentials(credentials)
        if verify:
            config = ConfigurationLoader(settings.config_dir).initialize()
            client = HttpTransportClient(config.api_url, authorization=provider,
                                         timeout=settings.request_timeout_s)
            provider.bind(client.authenticate)
            provider.reauthorize()
    except SyncError as e:
        console.print(f"[red]❌ Login failed: {e}[/red]")
        sys.exit(1)

    console.print(f"[green]✅ Credentials stored for {user_id}[/green]")


if __name__ == "__main__":
    main()
