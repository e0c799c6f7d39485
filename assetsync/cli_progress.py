"""CLI progress display for export and upload commands.

Rich-based progress bars fed by the progress callbacks of the export
orchestrator and the upload service.
"""

from typing import Optional

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .export.orchestrator import ExportProgress
from .sync.progress import UploadProgress
from .utils import format_size


class PipelineProgressDisplay:
    """Single-task progress bar driven by percent-complete callbacks.

    Example:
        with PipelineProgressDisplay("Uploading") as display:
            await pipeline.upload_exported_files(
                progress_callback=display.on_upload_progress
            )
    """

    def __init__(self, description: str = "Working") -> None:
        self.description = description
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def _update(self, percent: float, detail: str) -> None:
        if self._progress is None or self._task is None:
            return
        self._progress.update(self._task, completed=min(percent, 100.0), detail=detail)

    def on_upload_progress(self, info: UploadProgress) -> None:
        detail = f"{info.current_file_index}/{info.total_files} files"
        if info.total_bytes:
            detail += (
                f", {format_size(info.bytes_uploaded)}/{format_size(info.total_bytes)}"
            )
        if info.current_file:
            detail += f" {info.current_file}"
        self._update(info.percent_complete, detail)

    def on_export_progress(self, info: ExportProgress) -> None:
        mark = "" if info.success else " (failed)"
        detail = f"{info.current_item}/{info.total_items} {info.item_name}{mark}"
        self._update(info.percent_complete, detail)

    def __enter__(self) -> "PipelineProgressDisplay":
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("[cyan]{task.fields[detail]}"),
            TimeElapsedColumn(),
            refresh_per_second=4,
        )
        self._progress.__enter__()
        self._task = self._progress.add_task(self.description, total=100.0, detail="")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._progress is not None:
            if self._task is not None:
                self._progress.update(self._task, description=f"{self.description} done")
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._task = None
