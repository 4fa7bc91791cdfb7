"""CLI entry point for treesync."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Annotated

import typer
import yaml
from rich import print as rprint
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from treesync.config import TreeSyncConfig, load_config
from treesync.config.loader import DEFAULT_CONFIG_TEMPLATE
from treesync.errors import NotFoundError, TreeSyncError
from treesync.logging_setup import setup_logging
from treesync.merkle import diff, diff_to_dict, normalize_path
from treesync.storage import collect_garbage
from treesync.storage.gc import DEFAULT_MIN_AGE
from treesync.sync import SyncCoordinator, SyncReport, create_coordinator
from treesync.watch import WorkspaceWatcher

app = typer.Typer(
    name="treesync",
    help="Hash-tree file synchronization between devices.",
)

config_app = typer.Typer(help="Manage treesync configuration.")
app.add_typer(config_app, name="config")

# Global state
_config: TreeSyncConfig | None = None


def _get_config() -> TreeSyncConfig:
    if _config is None:
        return load_config()
    return _config


@app.callback()
def main(
    config: Annotated[
        str | None, typer.Option("--config", "-c", help="Path to treesync.yaml")
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    """Global options."""
    global _config
    try:
        _config = load_config(config)
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    setup_logging("debug" if verbose else _config.log_level, _config.log_format)


def _open(restore: bool = True) -> SyncCoordinator:
    try:
        return create_coordinator(_get_config(), restore=restore)
    except (TreeSyncError, OSError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _short(h: str | None) -> str:
    return h[:12] if h else "-"


def _display_report(report: SyncReport) -> None:
    if report.skipped:
        rprint(f"[green]Already in sync.[/green] root {_short(report.root_hash)}")
        return

    table = Table(title=f"Sync cycle {report.cycle} ({report.duration:.2f}s)")
    table.add_column("action", style="cyan")
    table.add_column("path")
    table.add_column("detail", style="dim")
    for path in report.downloaded:
        table.add_row("download", path, "")
    for path in report.uploaded:
        table.add_row("upload", path, "")
    for path in report.reused:
        table.add_row("upload", path, "reused stored object")
    for path in report.deleted_local:
        table.add_row("delete local", path, "")
    for path in report.deleted_remote:
        table.add_row("delete remote", path, "")
    for c in report.conflicts:
        table.add_row("[yellow]conflict[/yellow]", c.path, f"{c.winner} wins; copy: {c.conflict_copy or '-'}")
    for f in report.failed:
        table.add_row(f"[red]{f.operation} failed[/red]", f.path, f.error)
    for path in report.deferred:
        table.add_row("deferred", path, "retried next cycle")
    if table.row_count:
        rprint(table)
    else:
        rprint("[dim]No file changes.[/dim]")

    if report.error:
        rprint(f"[red]Cycle failed:[/red] {report.error}")
    else:
        rprint(f"[green]Synced.[/green] remote v{report.remote_version}, root {_short(report.root_hash)}")


@app.command()
def init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing treesync.yaml"),
) -> None:
    """Create treesync.yaml (if missing) and index the workspace."""
    global _config
    target = Path("treesync.yaml")
    if not target.exists() or force:
        target.write_text(DEFAULT_CONFIG_TEMPLATE)
        rprint(f"[green]Created[/green] {target}")
        _config = load_config(str(target))

    coordinator = _open()
    coordinator.save_state()
    tree = coordinator.local.snapshot()
    rprint(
        Panel(
            f"[bold]Device:[/bold] {coordinator.device_id}\n"
            f"[bold]Workspace:[/bold] {coordinator.workspace.root}\n"
            f"[bold]Files:[/bold] {len(tree)}\n"
            f"[bold]Root hash:[/bold] {tree.root_hash}",
            title="treesync initialized",
            border_style="green",
        )
    )


@config_app.command("show")
def config_show() -> None:
    """Show current resolved configuration."""
    cfg = _get_config()
    rprint(Syntax(yaml.dump(cfg.model_dump(), default_flow_style=False), "yaml"))


@config_app.command("init")
def config_init(
    force: bool = typer.Option(False, "--force", help="Overwrite existing config"),
) -> None:
    """Create default treesync.yaml in current directory."""
    target = Path("treesync.yaml")
    if target.exists() and not force:
        rprint("[yellow]treesync.yaml already exists.[/yellow] Use --force to overwrite.")
        raise typer.Exit(1)
    target.write_text(DEFAULT_CONFIG_TEMPLATE)
    rprint(f"[green]Created[/green] {target}")


@app.command()
def scan(
    as_json: bool = typer.Option(False, "--json", help="Print the tree as JSON"),
) -> None:
    """Re-index the workspace and save the local tree."""
    coordinator = _open()
    coordinator.save_state()
    tree = coordinator.local.snapshot()

    if as_json:
        typer.echo(tree.to_json())
        return

    table = Table(title=f"Local tree v{tree.version} ({len(tree)} files)")
    table.add_column("path", style="cyan")
    table.add_column("size", justify="right")
    table.add_column("hash", style="dim")
    table.add_column("stored", justify="center")
    for path in tree.paths():
        entry = tree.entries[path]
        table.add_row(path, str(entry.size), _short(entry.content_hash), "✓" if entry.is_uploaded else "")
    rprint(table)
    rprint(f"Root hash: [bold]{tree.root_hash}[/bold]")


@app.command()
def status() -> None:
    """Show the device's sync state and pending uploads."""
    coordinator = _open()
    tree = coordinator.local.snapshot()
    base = coordinator.base
    in_sync = tree.root_hash == base.root_hash
    rprint(
        Panel(
            f"[bold]Device:[/bold] {coordinator.device_id}\n"
            f"[bold]Workspace:[/bold] {coordinator.workspace.root}\n"
            f"[bold]Files:[/bold] {len(tree)}\n"
            f"[bold]Local root:[/bold] {_short(tree.root_hash)}\n"
            f"[bold]Last synced root:[/bold] {_short(base.root_hash)} (remote v{base.version})\n"
            f"[bold]Local changes:[/bold] {'none' if in_sync else len(diff(base, tree))}",
            title="treesync status",
            border_style="green" if in_sync else "yellow",
        )
    )

    pending = coordinator.tracker.pending_entries()
    if not pending:
        rprint("[green]No pending uploads.[/green]")
        return
    table = Table(title=f"Pending uploads ({len(pending)})")
    table.add_column("path", style="cyan")
    table.add_column("hash", style="dim")
    table.add_column("attempts", justify="right")
    for p in pending:
        table.add_row(p.path, _short(p.content_hash), str(p.attempts))
    rprint(table)


@app.command()
def sync() -> None:
    """Run one reconciliation cycle."""
    coordinator = _open()
    report = asyncio.run(coordinator.sync_once())
    _display_report(report)
    if report.error:
        raise typer.Exit(1)


@app.command()
def watch() -> None:
    """Watch the workspace and sync continuously until interrupted."""
    cfg = _get_config()
    coordinator = _open()
    watcher = WorkspaceWatcher(coordinator.workspace, debounce_seconds=cfg.sync.debounce_seconds)

    async def _run() -> None:
        watcher.start()
        cycles = asyncio.create_task(coordinator.run_forever())
        feed = asyncio.create_task(asyncio.to_thread(coordinator.indexer.consume, watcher.events()))
        try:
            await cycles
        finally:
            coordinator.stop()
            watcher.stop()
            await feed

    rprint(f"[bold]Watching[/bold] {coordinator.workspace.root} (Ctrl+C to stop)")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        rprint("[yellow]Stopped.[/yellow]")


@app.command("diff")
def diff_cmd(
    as_json: bool = typer.Option(False, "--json", help="Print the diff as JSON"),
) -> None:
    """Show how the local tree differs from the authoritative tree."""
    cfg = _get_config()
    coordinator = _open()
    remote = asyncio.run(coordinator.remote.get_remote_tree(cfg.device_id))
    changes = diff(remote, coordinator.local.snapshot())

    if as_json:
        typer.echo(json.dumps(diff_to_dict(changes), indent=2))
        return
    if not changes.has_changes:
        rprint(f"[green]No differences.[/green] root {_short(remote.root_hash)}")
        return

    table = Table(title=f"Local vs remote v{remote.version}")
    table.add_column("", width=1)
    table.add_column("path", style="cyan")
    table.add_column("hash", style="dim")
    for e in changes.added:
        table.add_row("[green]+[/green]", e.path, _short(e.content_hash))
    for m in changes.modified:
        table.add_row("[yellow]~[/yellow]", m.path, f"{_short(m.old_hash)} -> {_short(m.new_hash)}")
    for e in changes.removed_entries:
        table.add_row("[red]-[/red]", e.path, _short(e.content_hash))
    rprint(table)


@app.command()
def url(
    path: str = typer.Argument(..., help="Workspace-relative file path"),
    ttl: int | None = typer.Option(None, "--ttl", help="Seconds the URL stays valid"),
) -> None:
    """Print a time-limited access URL for a synced file."""
    cfg = _get_config()
    coordinator = _open(restore=False)
    try:
        rel = normalize_path(path)
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    remote = asyncio.run(coordinator.remote.get_remote_tree(cfg.device_id))
    entry = remote.get(rel)
    if entry is None or entry.remote_key is None:
        rprint(f"[red]Error:[/red] {rel} is not in the remote tree")
        raise typer.Exit(1)

    try:
        descriptor = asyncio.run(
            coordinator.resolver.access_descriptor_for(entry.remote_key, ttl or cfg.remote.access_ttl)
        )
    except (NotFoundError, ValueError) as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    typer.echo(descriptor.url)
    rprint(f"[dim]expires {descriptor.expires_at.isoformat()}[/dim]")


@app.command()
def gc(
    dry_run: bool = typer.Option(False, "--dry-run", help="List orphans without deleting"),
    min_age: float = typer.Option(
        DEFAULT_MIN_AGE, "--min-age", min=0, help="Keep unreferenced objects younger than this (seconds)"
    ),
) -> None:
    """Delete stored objects that neither the remote tree nor this device references."""
    cfg = _get_config()
    coordinator = _open()
    remote = asyncio.run(coordinator.remote.get_remote_tree(cfg.device_id))
    orphans = asyncio.run(
        collect_garbage(
            remote,
            coordinator.store,
            keep=(coordinator.local.snapshot(), coordinator.base),
            min_age=min_age,
            dry_run=dry_run,
        )
    )
    if not orphans:
        rprint("[green]No unreferenced objects.[/green]")
        return
    verb = "Would delete" if dry_run else "Deleted"
    rprint(f"{verb} {len(orphans)} unreferenced object(s):")
    for key in orphans:
        rprint(f"  - {key}")
