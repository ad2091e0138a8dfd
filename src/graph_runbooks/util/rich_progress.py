from __future__ import annotations

from typing import Any, Dict, Optional, Sequence

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table


class RunProgress:
    """
    Console progress for the per-entity lookup phase of a runbook.
    Disabled runs are silent no-ops so callers never branch on it.
    """

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled)
        self._console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        self._task: Optional[int] = None
        self._started = False
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> RunProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start_lookups(self, description: str, total: Optional[int]) -> None:
        if not self._enabled or not self._progress:
            return
        if self._task is None:
            self._task = self._progress.add_task(description, total=total)
        else:
            self._progress.reset(self._task, total=total, completed=0, description=description)

    def advance(self, *, count: int = 1) -> None:
        if not self._enabled or not self._progress or self._task is None:
            return
        self._progress.update(self._task, advance=count)


def render_run_summary_table(
    *,
    enabled: bool,
    runbook: str,
    status: str,
    summary: Dict[str, Any],
    recipients: Sequence[str],
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    table = Table(title="Run Summary", show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Runbook", runbook)
    table.add_row("Status", status)
    for key, value in summary.items():
        table.add_row(str(key), str(value))
    table.add_row("Recipients", ", ".join(recipients) or "-")
    (console or Console()).print(table)
