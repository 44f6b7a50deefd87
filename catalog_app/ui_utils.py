# catalog_app/ui_utils.py
import sys
from typing import Any, Iterable, List, Optional

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from .enums import ScanEventKind
from .models import (
    DuplicateGroup, LibraryFolder, MediaFile, QueueStats, ScanEvent, ScanOutcome
)

ConsoleClass = Console
ConfirmClass = Confirm
TextClass = Text
ProgressClass = Progress

DEFAULT_PROGRESS_COLUMNS = (
    TextColumn("[progress.description]{task.description}"),
    BarColumn(),
    MofNCompleteColumn(),
    TimeElapsedColumn(),
    TextColumn("[cyan]{task.fields[item_name]}"),
)


def make_console(quiet: bool = False) -> Console:
    return Console(quiet=quiet, highlight=False)


def print_stderr_message(console_obj: Console, message: Any, is_quiet: bool):
    """Prints to stderr even in quiet mode; styled unless quiet."""
    if is_quiet:
        plain_message = message.plain if hasattr(message, 'plain') else str(message)
        print(plain_message, file=sys.stderr)
        return
    Console(file=sys.stderr, width=console_obj.width).print(message)


def _human_size(num_bytes: Optional[int]) -> str:
    if num_bytes is None:
        return "-"
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} TB"


def folders_table(folders: Iterable[LibraryFolder]) -> Table:
    table = Table(title="Library Folders", show_lines=False)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name", style="cyan")
    table.add_column("Path")
    table.add_column("Added", style="dim")
    for folder in folders:
        table.add_row(folder.id, folder.display_name, folder.path, folder.created_at)
    return table


def files_table(files: Iterable[MediaFile], title: str = "Catalog") -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Title", style="cyan")
    table.add_column("Kind")
    table.add_column("Size", justify="right")
    table.add_column("Source")
    table.add_column("Flags")
    for f in files:
        flags: List[str] = []
        if f.is_favorite: flags.append("★")
        if f.is_hidden: flags.append("hidden")
        source = str(f.metadata_source) if f.metadata_source else Text("incomplete", style="yellow")
        table.add_row(f.id, f.display_title, str(f.media_kind), _human_size(f.file_size_bytes), source, " ".join(flags))
    return table


def duplicates_table(groups: Iterable[DuplicateGroup]) -> Table:
    table = Table(title="Possible Duplicates")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("File ID", style="dim")
    table.add_column("Path")
    for group in groups:
        for idx, f in enumerate(group.files):
            table.add_row(group.normalized_name if idx == 0 else "", _human_size(group.file_size_bytes) if idx == 0 else "", f.id, f.full_path)
    return table


def outcome_text(outcome: ScanOutcome) -> Text:
    return Text.assemble(
        ("Done: ", "bold"),
        (f"+{outcome.new}", "green"), " new, ",
        (f"~{outcome.updated}", "blue"), " updated, ",
        (f"-{outcome.removed}", "red"), " removed",
    )


def queue_stats_text(stats: QueueStats) -> Text:
    state = Text("running", style="green") if stats.running else Text("idle", style="dim")
    return Text.assemble(
        "Enrichment ", state, ": ",
        f"{stats.processed}/{stats.total} processed, ",
        (f"{stats.succeeded} ok", "green"), ", ",
        (f"{stats.failed} failed", "red" if stats.failed else "dim"),
        (f", {stats.skipped} skipped" if stats.skipped else ""),
    )


def scan_event_printer(console: Console, verbose: bool = False):
    """Returns a progress callback that narrates scan events on the console."""
    def _on_event(event: ScanEvent):
        if event.kind == ScanEventKind.START:
            console.print(f"[bold]Scanning[/bold] {event.path}")
        elif event.kind == ScanEventKind.FILE:
            if verbose:
                console.print(f"  [dim]{event.path}[/dim]")
        elif event.kind == ScanEventKind.LOG:
            console.print(f"  [blue]{event.message}[/blue]")
        elif event.kind == ScanEventKind.ERROR:
            console.print(f"  [yellow]{event.message}[/yellow]")
        elif event.kind == ScanEventKind.DONE:
            console.print(f"[bold]Finished[/bold] {event.path or ''}")
    return _on_event
