"""Progress reporting for upload batches."""

from dataclasses import dataclass
from typing import Callable, Optional


@dataclass
class UploadProgress:
    """Progress snapshot sent after each completed file."""

    percent_complete: float
    current_file: str
    current_file_index: int
    total_files: int
    bytes_uploaded: int = 0
    total_bytes: int = 0
    status: str = ""
    """Outcome of the file that just completed ("uploaded", "skipped", "failed")"""


ProgressCallback = Callable[[UploadProgress], None]


def scaled(
    callback: Optional[ProgressCallback], start: float, end: float
) -> Optional[ProgressCallback]:
    """Wrap a callback so that 0-100 maps onto ``start``-``end``.

    Used by callers composing several phases into one progress bar.
    """
    if callback is None:
        return None

    def _scaled(progress: UploadProgress) -> None:
        span = end - start
        callback(
            UploadProgress(
                percent_complete=start + progress.percent_complete * span / 100.0,
                current_file=progress.current_file,
                current_file_index=progress.current_file_index,
                total_files=progress.total_files,
                bytes_uploaded=progress.bytes_uploaded,
                total_bytes=progress.total_bytes,
                status=progress.status,
            )
        )

    return _scaled
