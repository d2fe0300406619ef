"""
Live terminal view of an ingestion run, drawn with rich.

`localrag ingest` feeds the orchestrator's progress messages into
ConsoleProgress.update(); "Processing <name> (i/n)" messages move the
file bar, anything else becomes the phase line.
"""

import re
import time
from typing import Callable, List, Optional

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.text import Text

from ..logging_config import restore_stderr_logging, suppress_stderr_logging
from .rag_types import IngestReport

_PROCESSING = re.compile(r'^Processing (.+) \((\d+)/(\d+)\)$')
_FINAL_PHASES = ("Cleaning", "Complete")
_MAX_NAME = 60


def _shorten(name: str) -> str:
    if len(name) <= _MAX_NAME:
        return name
    return "..." + name[-(_MAX_NAME - 3):]


class ConsoleProgress:
    """Phase line, file bar and summary panel for one collection."""

    def __init__(self, collection: str, console: Optional[Console] = None):
        self.collection = collection
        self.console = console or Console(stderr=True)
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=self.console,
            expand=False,
        )
        self._bar = None
        self._bar_total = 0
        self._phase = "Starting..."
        self._current_file = ""
        self._view: Optional[Live] = None
        self._began = time.time()

    def start(self):
        """Begin drawing; stderr log output is held back until stop()."""
        self._began = time.time()
        suppress_stderr_logging()
        self._view = Live(self._render(), console=self.console, refresh_per_second=10)
        self._view.start()

    def stop(self, report: Optional[IngestReport] = None, error: Optional[str] = None):
        """Tear down the live view and print either the counts or the error."""
        if self._view is not None:
            self._view.stop()
            self._view = None
        restore_stderr_logging()

        took = f"  Time: {time.time() - self._began:.1f}s"
        self.console.print()
        if report is None or error is not None:
            body = "\n".join([
                "[bold red]Ingestion failed[/bold red]",
                "",
                f"  {escape(error or 'unknown error')}",
                took,
            ])
            self.console.print(Panel(body, title="[bold]Error[/bold]", border_style="red"))
            return

        lines = [
            "[bold green]Ingestion complete[/bold green]",
            "",
            f"  Files scanned: {report.files_scanned}",
            f"  Processed: {report.processed}",
            f"  Skipped (unchanged): {report.skipped}",
            f"  Renamed: {report.renamed}",
            f"  Orphans purged: {report.orphaned}",
            f"  Errors: {report.errored}",
            f"  Chunks embedded: {report.chunks_embedded:,}",
            took,
        ]
        self.console.print(Panel(
            "\n".join(lines),
            title=f"[bold]{escape(self.collection)}[/bold]",
            border_style="yellow" if report.errored else "green",
        ))

    def update(self, message: str):
        """Consume one orchestrator progress message."""
        found = _PROCESSING.match(message)
        if found is None:
            if self._bar is not None and message.startswith(_FINAL_PHASES):
                self._progress.update(
                    self._bar, completed=self._bar_total, description="[green]Files done"
                )
                self._current_file = ""
            self._phase = message
        else:
            name, position, total = found.group(1), int(found.group(2)), int(found.group(3))
            if self._bar is None:
                self._bar = self._progress.add_task("[cyan]Files", total=total)
                self._phase = "Embedding files"
            # position counts the file being worked on, not a finished one
            self._progress.update(self._bar, completed=position - 1, total=total)
            self._bar_total = total
            self._current_file = name

        if self._view is not None:
            self._view.update(self._render())

    def _render(self) -> RenderableType:
        parts: List[RenderableType] = [
            Panel(
                f"[bold white]localrag[/bold white] - ingesting into "
                f"[bold]{escape(self.collection)}[/bold]",
                border_style="blue",
                padding=(0, 1),
            ),
            Text(f"  {self._phase}", style="bold"),
            self._progress,
        ]
        if self._current_file:
            parts.append(Text(f"  → {_shorten(self._current_file)}", style="dim"))
        return Group(*parts)


def create_progress_callback(progress: ConsoleProgress) -> Callable[[str], None]:
    """Adapt a ConsoleProgress to the orchestrator's progress_callback signature."""
    return progress.update
