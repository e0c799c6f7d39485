"""Upload and reconciliation engine for exported pipeline artifacts."""

from .comparator import UploadAction, UploadComparator, UploadDecision
from .paths import (
    UploadItem,
    build_remote_path,
    build_upload_items,
    content_dir_for,
    mapping_path_for,
    mapping_remote_path,
    server_root_for,
    server_root_from_content,
)
from .progress import ProgressCallback, UploadProgress
from .reconcile import (
    DeletionSyncResult,
    ReconciliationEngine,
    ServerSyncResult,
    StatusUpdates,
    correlate_upload_results,
    normalize_remote_path,
)
from .scanner import DirectoryScanner, LocalFile
from .uploader import BatchUploadResult, FileUploadResult, UploadService

__all__ = [
    "UploadService",
    "UploadItem",
    "FileUploadResult",
    "BatchUploadResult",
    "UploadAction",
    "UploadComparator",
    "UploadDecision",
    "UploadProgress",
    "ProgressCallback",
    "DirectoryScanner",
    "LocalFile",
    "ReconciliationEngine",
    "DeletionSyncResult",
    "ServerSyncResult",
    "StatusUpdates",
    "correlate_upload_results",
    "normalize_remote_path",
    "build_remote_path",
    "build_upload_items",
    "content_dir_for",
    "mapping_path_for",
    "mapping_remote_path",
    "server_root_for",
    "server_root_from_content",
]
