"""
Renders live transfer progress for the CLI from lifecycle state changes.
"""

import asyncio

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from model_depot.models.artifact import ArtifactDescriptor, DownloadStatus, StateChange


class ProgressManager:
    """
    One progress bar per artifact, fed by `StateChange` events.

    Pass `on_state_change` to `ArtifactStore.subscribe()`; changes for keys
    without a bar are ignored.
    """

    def __init__(self, console: Console):
        self.console = console

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}", justify="left"),
            BarColumn(bar_width=30),
            "[progress.percentage]{task.percentage:>3.0f}%",
            "•",
            DownloadColumn(),
            "•",
            TransferSpeedColumn(),
            "•",
            TimeRemainingColumn(),
            console=console,
            transient=False,
        )
        self._tasks: dict[str, tuple[TaskID, int]] = {}

    def add_artifact_task(self, descriptor: ArtifactDescriptor) -> TaskID:
        description = descriptor.display_name
        if len(description) > 40:
            description = description[:37] + "..."
        total = descriptor.expected_size_bytes
        task_id = self.progress.add_task(
            f"{description} [dim]({descriptor.family})[/dim]", total=total, start=True
        )
        self._tasks[descriptor.key] = (task_id, total)
        return task_id

    def on_state_change(self, change: StateChange) -> None:
        entry = self._tasks.get(change.key)
        if entry is None:
            return
        task_id, total = entry
        self.progress.update(task_id, completed=int(change.progress * total))

        if change.status is DownloadStatus.INSTALLED:
            self.progress.update(task_id, completed=total)
        if change.status in (
            DownloadStatus.INSTALLED,
            DownloadStatus.FAILED,
            DownloadStatus.PAUSED,
        ):
            self.progress.stop_task(task_id)

    async def __aenter__(self):
        self.progress.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await asyncio.sleep(0.1)
        self.progress.stop()
