"""Terminal output formatting with rich."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from pathlib import Path

    from lore_knowledge._config import SyncSource
    from lore_knowledge.daemon import DaemonStatus
    from lore_knowledge.orchestrator import SyncRunResult

# Global console instance - auto-detects TTY
console = Console()

MAX_LISTED_TITLES = 10


def print_error(message: str) -> None:
    """Print error message in red."""
    console.print(f"[red]Error:[/red] {message}", highlight=False)


def print_success(message: str) -> None:
    """Print success message in green."""
    console.print(f"[green]{message}[/green]", highlight=False)


def print_warning(message: str) -> None:
    """Print warning message in yellow."""
    console.print(f"[yellow]{message}[/yellow]", highlight=False)


def print_header(title: str) -> None:
    console.print()
    console.print(f"[bold]{title}[/bold]")
    console.print("=" * len(title))


def print_sync_result(result: SyncRunResult) -> None:
    """Print a human-readable summary of a sync run.

    Args:
        result: Outcome returned by ``SyncOrchestrator.run``.
    """
    if result.git_pulled:
        print_success("✓ Pulled latest changes from git")
    if result.git_error:
        print_warning(f"⚠ Git: {result.git_error}")
        from lore_knowledge.git_sync import get_git_error_hint

        hint = get_git_error_hint(result.git_error)
        if hint:
            console.print(f"  [dim]{hint}[/dim]", highlight=False)

    discovery = result.discovery
    if discovery:
        console.print("\n[bold]Discovery:[/bold]")
        console.print(f"  Sources scanned: {discovery['sources_scanned']}")
        console.print(f"  Files found: {discovery['total_files']}")
        console.print(f"  New files: {discovery['new_files']}")
        if discovery.get("edited_files"):
            console.print(f"  Edited files: {discovery['edited_files']}")
        console.print(f"  Already indexed: {discovery['existing_files']}")
        if discovery["errors"]:
            console.print(f"  [yellow]Errors: {discovery['errors']}[/yellow]")

    processing = result.processing
    if processing:
        console.print(f"\n[bold]Processed {processing['processed']} file(s):[/bold]")
        titles = processing["titles"]
        for title in titles[:MAX_LISTED_TITLES]:
            console.print(f"  • {title}", highlight=False)
        if len(titles) > MAX_LISTED_TITLES:
            console.print(f"  [dim]... and {len(titles) - MAX_LISTED_TITLES} more[/dim]")
        if processing["errors"]:
            print_warning(f"  ⚠ {processing['errors']} file(s) failed to process")
            for error in result.file_errors[:MAX_LISTED_TITLES]:
                console.print(f"    [dim]{error}[/dim]", highlight=False)

    if result.sources_found or result.sources_indexed:
        console.print("\n[bold]Disk scan:[/bold]")
        console.print(f"  Bundles on disk: {result.sources_found}")
        console.print(f"  Newly indexed: {result.sources_indexed}")
        console.print(f"  Already indexed: {result.already_indexed}")

    if result.reconciled:
        console.print(f"\nReconciled {result.reconciled} source(s) missing local content")

    if result.git_pushed:
        print_success("\n✓ Pushed changes to git")


def create_sources_table(sources: list[SyncSource], title: str = "Sync Sources") -> Table:
    """Create a table listing configured sync sources.

    Args:
        sources: Sources to list.
        title: Table title.

    Returns:
        Rich Table ready to print.
    """
    table = Table(title=title)
    table.add_column("", width=1)
    table.add_column("Name", style="bold")
    table.add_column("Path")
    table.add_column("Glob", style="dim")
    table.add_column("Project", style="magenta")
    for source in sources:
        marker = Text("✓", style="green") if source.enabled else Text("○", style="dim")
        name = Text(source.name) if source.enabled else Text(f"{source.name} (disabled)", style="dim")
        table.add_row(marker, name, source.path, source.glob, source.project)
    return table


def print_daemon_status(
    pid: int | None, status: DaemonStatus | None, log_file: Path
) -> None:
    """Print the daemon liveness and last-sync summary."""
    from lore_knowledge.daemon import format_ago, format_uptime, seconds_since

    print_header("Lore Sync Status")
    if pid is None:
        console.print("Daemon: [red]NOT RUNNING[/red]")
        console.print()
        console.print("Start with: [bold]lore sync start[/bold]")
        return

    console.print(f"Daemon: [green]RUNNING[/green] (PID: {pid})")
    if status is not None:
        uptime = seconds_since(status.started_at)
        if uptime is not None:
            console.print(f"Uptime: {format_uptime(uptime)}")
        elapsed = seconds_since(status.last_sync) if status.last_sync else None
        if elapsed is None:
            console.print("Last sync: [dim](not yet synced)[/dim]")
        else:
            console.print(f"Last sync: {format_ago(elapsed)}")
            last = status.last_sync_result or {}
            console.print(f"  Files scanned: {last.get('files_scanned', 0)}")
            console.print(f"  Files processed: {last.get('files_processed', 0)}")
            if last.get("errors"):
                console.print(f"  [yellow]Errors: {last['errors']}[/yellow]")
    console.print()
    console.print(f"Log file: {log_file}", highlight=False)
    console.print("View logs: [bold]lore sync logs[/bold]")
