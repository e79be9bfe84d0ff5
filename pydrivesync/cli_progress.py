"""CLI progress display for sync transfers.

This module provides a Rich-based progress display fed by the
``TransferProgressInfo`` events of the transfer executor.
"""

import threading
from typing import Optional

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TransferSpeedColumn,
)

from .sync.progress import TransferProgressEvent, TransferProgressInfo


class TransferProgressDisplay:
    """Rich-based progress display for transfers.

    Every transfer in flight gets its own bar, labelled with its relative
    path. Bars disappear once the transfer completes; failed transfers are
    marked and left visible. Events arrive from worker threads, so every
    update happens under a lock.
    """

    def __init__(self) -> None:
        """Initialize the progress display."""
        self._progress: Optional[Progress] = None
        self._tasks: dict[str, TaskID] = {}
        self._lock = threading.Lock()
        self.completed = 0
        self.failed = 0

    def _description(self, info: TransferProgressInfo) -> str:
        arrow = "↑" if info.action == "upload" else "↓"
        return f"{arrow} {info.relative_path}"

    def callback(self, info: TransferProgressInfo) -> None:
        """Handle a progress event from the executor.

        Args:
            info: Progress information
        """
        with self._lock:
            if self._progress is None:
                return

            task_id = self._tasks.get(info.relative_path)
            if info.event == TransferProgressEvent.TRANSFER_START:
                if task_id is None:
                    self._tasks[info.relative_path] = self._progress.add_task(
                        self._description(info),
                        total=info.total_size,
                        completed=info.bytes_transferred,
                    )
                else:
                    # A retry starts over from the first byte
                    self._progress.reset(task_id, total=info.total_size)
                return

            if task_id is None:
                return

            if info.event == TransferProgressEvent.TRANSFER_PROGRESS:
                self._progress.update(task_id, completed=info.bytes_transferred)

            elif info.event == TransferProgressEvent.TRANSFER_COMPLETE:
                self.completed += 1
                self._progress.remove_task(task_id)
                del self._tasks[info.relative_path]

            elif info.event == TransferProgressEvent.TRANSFER_FAILED:
                self.failed += 1
                self._progress.update(
                    task_id,
                    description=f"[red]✗ {info.relative_path}",
                    completed=info.bytes_transferred,
                )
                self._progress.stop_task(task_id)
                del self._tasks[info.relative_path]

    def __enter__(self) -> "TransferProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeElapsedColumn(),
            refresh_per_second=4,
        )
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        with self._lock:
            progress = self._progress
            self._progress = None
            self._tasks.clear()
        if progress is not None:
            progress.__exit__(exc_type, exc_val, exc_tb)
