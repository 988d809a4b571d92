"""Rich progress display for batch uploads.

Two tiers:

* **Staging** -- files whose bytes have been sent into a closed session
* **Commit** -- files confirmed by the batch commit, with the current
  round number in the status column
"""

from __future__ import annotations

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)


class TransferProgressTracker:
    """Two-tier Rich progress tracker for :class:`BatchUploadCoordinator`.

    Usage::

        with TransferProgressTracker(total_files=42) as tracker:
            await BatchUploadCoordinator(rpc, config, progress=tracker).upload_all(files)
    """

    def __init__(self, total_files: int) -> None:
        self._total_files = total_files
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )
        self._stage_task: TaskID | None = None
        self._commit_task: TaskID | None = None
        self._stats: dict[str, int] = {
            "staged": 0,
            "committed": 0,
            "failed": 0,
            "rounds": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._stage_task = self._progress.add_task(
            "[blue]Staging", total=self._total_files, status=""
        )
        self._commit_task = self._progress.add_task(
            "[green]Commit", total=self._total_files, status="waiting"
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> TransferProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def file_staged(self, path: str) -> None:
        self._stats["staged"] += 1
        if self._stage_task is not None:
            self._progress.advance(self._stage_task, 1)
            self._progress.update(self._stage_task, status=_truncate_path(path))

    def file_failed(self, path: str, error: str) -> None:
        self._stats["failed"] += 1
        if self._stage_task is not None:
            self._progress.update(
                self._stage_task,
                status=f"[red]FAIL[/red] {_truncate_path(path)}",
            )

    def commit_round(self, round_number: int, pending: int) -> None:
        self._stats["rounds"] = round_number
        if self._commit_task is not None:
            self._progress.update(
                self._commit_task,
                status=f"round {round_number}, {pending} pending",
            )

    def file_committed(self, path: str) -> None:
        self._stats["committed"] += 1
        if self._commit_task is not None:
            self._progress.advance(self._commit_task, 1)

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the current statistics."""
        return dict(self._stats)


def _truncate_path(path: str, max_len: int = 40) -> str:
    """Shorten a path for display, keeping its tail."""
    if len(path) <= max_len:
        return path
    return "..." + path[-(max_len - 3) :]
