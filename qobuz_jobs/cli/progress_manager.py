"""
Manages a Rich Live display of running jobs, fed by their progress channels.
"""

import asyncio
import logging
from datetime import datetime

import typer
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TextColumn
from rich.table import Table
from rich.text import Text

from qobuz_jobs.core.download_manager import Job
from qobuz_jobs.exceptions import DurationAnomaly
from qobuz_jobs.models.config import get_quality_info
from qobuz_jobs.models.job import EventKind, JobOutcome, JobState, ProgressEvent
from qobuz_jobs.utils.formatting import format_duration, format_title

log = logging.getLogger("qobuz_jobs")

MODE_LABELS = {
    "client_archive": "local",
    "client_server_upload": "upload",
    "server_native": "server",
}


class ProgressManager:
    """One progress row per job plus a small session summary."""

    def __init__(self, console: Console):
        self.console = console
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>5.1f}%",
            "•",
            TextColumn("[dim]{task.fields[status]}[/dim]"),
            console=console,
            transient=False,
        )
        self._live: Live | None = None
        self._prompt_lock = asyncio.Lock()
        self._tasks: dict[int, TaskID] = {}
        self._stats = {
            "completed": 0,
            "failed": 0,
            "cancelled": 0,
            "warnings": 0,
            "start_time": None,
        }

    def _describe(self, job: Job) -> str:
        title = format_title(job.item)
        if len(title) > 45:
            title = title[:42] + "..."
        quality = get_quality_info(job.settings.output_quality)
        color = quality.get("color", "white")
        mode = MODE_LABELS.get(job.mode.value, job.mode.value)
        return (
            f"{title} [{color}]{quality['short']} → {job.settings.output_codec}[/{color}] "
            f"[dim]({mode})[/dim]"
        )

    def track_job(self, job: Job) -> None:
        """Adds a row for ``job`` and keeps it in sync with the job's channel."""
        task_id = self.progress.add_task(
            self._describe(job), total=100, status="Queued"
        )
        self._tasks[id(job)] = task_id

        def on_event(event: ProgressEvent) -> None:
            if event.kind is EventKind.WARNING:
                self._stats["warnings"] += 1
                self.console.print(f"[yellow]⚠ {event.message}[/yellow]")
                return
            self.progress.update(
                task_id, completed=event.percent, status=event.message[:60]
            )
            self._refresh()

        job.progress.subscribe(on_event)

    def record_outcome(self, job: Job, outcome: JobOutcome) -> None:
        task_id = self._tasks.get(id(job))
        if outcome.status is JobState.COMPLETED:
            self._stats["completed"] += 1
            status = "[green]Done[/green]"
        elif outcome.status is JobState.CANCELLED:
            self._stats["cancelled"] += 1
            status = "[yellow]Cancelled[/yellow]"
        else:
            self._stats["failed"] += 1
            status = "[red]Failed[/red]"
        if task_id is not None:
            self.progress.update(task_id, status=status)
            self.progress.stop_task(task_id)
        self._refresh()

    def get_statistics(self) -> dict:
        return self._stats.copy()

    async def confirm_anomaly(self, anomaly: DurationAnomaly) -> bool:
        """
        Asks whether to keep a short file. Jobs run concurrently, so prompts
        are taken one at a time with the live display paused.
        """
        async with self._prompt_lock:
            if self._live:
                self._live.stop()
            try:
                return await asyncio.to_thread(
                    typer.confirm, f"{anomaly}\nDownload anyway?", default=False
                )
            finally:
                if self._live:
                    self._live.start()

    def _summary(self) -> Panel:
        elapsed = 0.0
        if self._stats["start_time"]:
            elapsed = (datetime.now() - self._stats["start_time"]).total_seconds()
        table = Table.grid(padding=(0, 2))
        table.add_column(style="bold cyan", justify="right")
        table.add_column(style="white")
        table.add_column(style="bold cyan", justify="right")
        table.add_column(style="white")
        table.add_row(
            "Completed:",
            f"[green]{self._stats['completed']}[/green]",
            "Failed:",
            f"[red]{self._stats['failed']}[/red]",
        )
        table.add_row(
            "Cancelled:",
            f"[yellow]{self._stats['cancelled']}[/yellow]",
            "Elapsed:",
            format_duration(elapsed),
        )
        return Panel(table, title="[bold]📊 Session[/bold]", border_style="blue")

    def _render(self) -> Group:
        header = Text("🎵 Qobuz Jobs", style="bold cyan")
        return Group(
            Panel(header, border_style="cyan"),
            self._summary(),
            Panel(self.progress, title="[bold]📥 Jobs[/bold]", border_style="green"),
        )

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._render())

    async def __aenter__(self):
        self._stats["start_time"] = datetime.now()
        self._live = Live(
            self._render(),
            console=self.console,
            refresh_per_second=12,
            vertical_overflow="visible",
        )
        self._live.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._live:
            await asyncio.sleep(0.2)
            self._live.stop()
            self._live = None
