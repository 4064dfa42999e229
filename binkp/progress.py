"""
Transfer display for interactive runs.

    tracker = ProgressTracker(peer_name="1:153/149")
    tracker.start()
    with tracker.file("0000abcd.pkt", 4096, SEND) as fp:
        fp.advance(4096)
    tracker.stop()
    print(tracker.summary())

Sessions only call file(); the CLI owns start()/stop(). Both trackers count
completed files and bytes per direction, so summary() works with --quiet.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Union

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

SEND = "↑"
RECEIVE = "↓"


@dataclass
class Transferred:
    files: int = 0
    bytes: int = 0


class FileBytes:
    """Handed to the session for one file; counts bytes as they move."""

    def __init__(self, size: int, completed: int = 0) -> None:
        self.size = size
        self.completed = completed
        self.moved = 0

    @property
    def done(self) -> bool:
        return self.completed >= self.size

    def advance(self, n: int) -> None:
        self.completed += n
        self.moved += n


class _BarBytes(FileBytes):
    def __init__(self, progress: Progress, task_id: TaskID, size: int, completed: int) -> None:
        super().__init__(size, completed)
        self._progress = progress
        self._task_id = task_id

    def advance(self, n: int) -> None:
        super().advance(n)
        self._progress.advance(self._task_id, n)


class NullProgress:
    """Counts transfers without drawing anything (servers, tests, --quiet)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.totals = {SEND: Transferred(), RECEIVE: Transferred()}

    def start(self) -> None: ...
    def stop(self) -> None: ...

    @contextmanager
    def file(
        self,
        filename: str,
        size: int,
        direction: str = SEND,
        completed: int = 0,
        peer: str = "",
    ) -> Generator[FileBytes, None, None]:
        fb = self._open(filename, size, direction, completed, peer)
        try:
            yield fb
        finally:
            self._close(fb, direction)

    def summary(self) -> str:
        sent, received = self.totals[SEND], self.totals[RECEIVE]
        return (f"{sent.files} file(s) sent, {sent.bytes} bytes; "
                f"{received.files} file(s) received, {received.bytes} bytes")

    def _open(self, filename: str, size: int, direction: str,
              completed: int, peer: str) -> FileBytes:
        return FileBytes(size, completed)

    def _close(self, fb: FileBytes, direction: str) -> None:
        with self._lock:
            total = self.totals[direction]
            total.bytes += fb.moved
            if fb.done:
                total.files += 1


class ProgressTracker(NullProgress):
    """One rich bar per file in flight; several sessions may share it."""

    def __init__(self, peer_name: str = "", console: Console | None = None) -> None:
        super().__init__()
        self.peer_name = peer_name
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold cyan]{task.fields[direction]}[/] [bold]{task.fields[peer]}[/]"),
            BarColumn(bar_width=None),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TextColumn("[dim]{task.fields[filename]}"),
            console=console or Console(stderr=True),
            expand=True,
        )

    def start(self) -> None:
        self._progress.start()

    def stop(self) -> None:
        self._progress.stop()

    def _open(self, filename: str, size: int, direction: str,
              completed: int, peer: str) -> FileBytes:
        task_id = self._progress.add_task(
            "transfer",
            total=max(size, 1),
            completed=completed,
            filename=filename,
            direction=direction,
            peer=peer or self.peer_name,
        )
        return _BarBytes(self._progress, task_id, size, completed)

    def _close(self, fb: FileBytes, direction: str) -> None:
        super()._close(fb, direction)
        if isinstance(fb, _BarBytes):
            self._progress.remove_task(fb._task_id)


AnyProgress = Union[ProgressTracker, NullProgress]
