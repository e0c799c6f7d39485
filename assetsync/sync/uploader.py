"""Content-addressable upload service for Backblaze B2.

Every file is hashed (SHA-1) before transfer. When the bucket already holds
an object with the same key and hash, the transfer is skipped, so
re-uploading an unchanged export costs one listing call per file.
"""

import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from ..api import B2Client, B2File, UploadTarget
from ..config import B2Settings
from ..exceptions import AssetSyncError, AuthError, PersistenceError, TransientIOError
from ..ledger import UploadLedger
from ..models import RecordStatus, ResourceType, UploadRecord
from ..utils import compute_file_sha1, guess_content_type, utc_now
from .comparator import UploadAction, UploadComparator
from .paths import UploadItem
from .progress import ProgressCallback, UploadProgress
from .scanner import DirectoryScanner

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class FileUploadResult:
    """Terminal outcome of one file in an upload call."""

    local_path: str
    remote_path: str
    success: bool = False
    skipped: bool = False
    cancelled: bool = False
    content_hash: str = ""
    content_length: int = 0
    cdn_url: str = ""
    file_id: Optional[str] = None
    error_message: Optional[str] = None
    attempts: int = 0
    resource_id: Optional[int] = None
    resource_type: Optional[ResourceType] = None

    @property
    def status(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.skipped:
            return "skipped"
        return "uploaded" if self.success else "failed"


@dataclass
class BatchUploadResult:
    """Summary of an upload batch."""

    success_count: int = 0
    skipped_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    duration: float = 0.0
    """Wall-clock seconds"""

    total_bytes: int = 0
    """Bytes actually transferred"""

    results: list[FileUploadResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.results)

    @property
    def has_errors(self) -> bool:
        return self.failed_count > 0

    def add(self, result: FileUploadResult) -> None:
        self.results.append(result)
        if result.cancelled:
            self.cancelled_count += 1
        elif result.skipped:
            self.skipped_count += 1
        elif result.success:
            self.success_count += 1
            self.total_bytes += result.content_length
        else:
            self.failed_count += 1
            self.errors.append(f"{result.remote_path}: {result.error_message}")


class UploadService:
    """Uploads pipeline artifacts to a B2 bucket and records them in the ledger.

    Example:
        service = UploadService(settings, ledger=ledger, project_name="proj")
        await service.authorize()
        result = await service.upload_batch(items)
        await service.close()
    """

    def __init__(
        self,
        settings: B2Settings,
        ledger: Optional[UploadLedger] = None,
        client: Optional[B2Client] = None,
        project_name: Optional[str] = None,
    ):
        """Initialize the service.

        Args:
            settings: Bucket credentials and transfer settings
            ledger: Ledger receiving a record per completed transfer or skip
            client: B2 client (created from settings when omitted)
            project_name: Stored on ledger records
        """
        self.settings = settings
        self.ledger = ledger
        self.client = client or B2Client(timeout=settings.timeout)
        self.project_name = project_name
        self.comparator = UploadComparator(settings.skip_existing_files)
        self._bucket_id: Optional[str] = settings.bucket_id
        self._idle_targets: list[UploadTarget] = []

    @property
    def is_authorized(self) -> bool:
        return self.client.is_authorized and self._bucket_id is not None

    async def close(self) -> None:
        self._idle_targets.clear()
        await self.client.close()

    async def __aenter__(self) -> "UploadService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================
    # Authorization
    # =========================

    async def authorize(self, settings: Optional[B2Settings] = None) -> None:
        """Authorize against B2 and resolve the bucket ID.

        Args:
            settings: Replacement settings (defaults to the service settings)

        Raises:
            ConfigurationError: If a credential is missing (no network call made)
            AuthError: If authorization or bucket lookup fails
        """
        if settings is not None:
            self.settings = settings
            self.comparator = UploadComparator(settings.skip_existing_files)
            self._bucket_id = settings.bucket_id
        self.settings.validate()

        auth = await self.client.authorize(
            self.settings.key_id, self.settings.application_key
        )
        self._idle_targets.clear()
        if not self._bucket_id:
            if auth.allowed_bucket_id:
                self._bucket_id = auth.allowed_bucket_id
            else:
                try:
                    self._bucket_id = await self.client.find_bucket_id(
                        self.settings.bucket_name
                    )
                except AssetSyncError as e:
                    raise AuthError(
                        f"Cannot resolve bucket '{self.settings.bucket_name}': {e}"
                    ) from e
        logger.info(f"Authorized for bucket {self.settings.bucket_name}")

    def _require_bucket(self) -> str:
        if not self.is_authorized or self._bucket_id is None:
            raise AuthError("Upload service is not authorized. Call authorize() first.")
        return self._bucket_id

    async def _acquire_target(self, bucket_id: str) -> UploadTarget:
        if self._idle_targets:
            return self._idle_targets.pop()
        return await self.client.get_upload_url(bucket_id)

    # =========================
    # Single file
    # =========================

    async def upload_file(
        self,
        local_path: PathLike,
        remote_path: str,
        content_type: Optional[str] = None,
    ) -> FileUploadResult:
        """Upload one file, skipping the transfer if the bucket has it already.

        Raises:
            AuthError: If the service is not authorized
        """
        self._require_bucket()
        item = UploadItem(
            local_path=Path(local_path),
            remote_path=remote_path,
            content_type=content_type,
        )
        return await self._upload_item(item)

    async def _upload_item(
        self, item: UploadItem, cancel_event: Optional[asyncio.Event] = None
    ) -> FileUploadResult:
        bucket_id = self._require_bucket()
        result = FileUploadResult(
            local_path=str(item.local_path),
            remote_path=item.remote_path,
            resource_id=item.resource_id,
            resource_type=item.resource_type,
        )

        try:
            content_hash = await asyncio.to_thread(compute_file_sha1, item.local_path)
            data = await asyncio.to_thread(item.local_path.read_bytes)
        except OSError as e:
            result.error_message = f"Cannot read local file: {e}"
            logger.error(f"Upload failed for {item.local_path}: {result.error_message}")
            return result

        result.content_hash = content_hash
        result.content_length = len(data)
        full_name = self.settings.build_full_path(item.remote_path)
        result.cdn_url = self.settings.build_cdn_url(item.remote_path)
        content_type = item.content_type or guess_content_type(item.local_path)
        max_attempts = max(1, self.settings.max_attempts)

        remote_file: Optional[B2File] = None
        for attempt in range(1, max_attempts + 1):
            if attempt > 1 and cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                result.error_message = "Cancelled"
                return result
            result.attempts = attempt
            target: Optional[UploadTarget] = None
            try:
                if self.settings.skip_existing_files:
                    remote_file = await self.client.get_file_info(bucket_id, full_name)
                decision = self.comparator.decide(content_hash, remote_file)
                if decision.action == UploadAction.SKIP:
                    logger.debug(f"Skipping {item.remote_path}: {decision.reason}")
                    result.success = True
                    result.skipped = True
                    result.file_id = remote_file.file_id if remote_file else None
                    break

                target = await self._acquire_target(bucket_id)
                uploaded = await self.client.upload_bytes(
                    target, full_name, data, content_hash, content_type
                )
                self._idle_targets.append(target)
                result.success = True
                result.file_id = uploaded.file_id
                logger.debug(f"Uploaded {item.remote_path} ({len(data)} bytes)")
                break
            except TransientIOError as e:
                # The upload URL may be stale; get a fresh one next time
                result.error_message = str(e)
                if attempt < max_attempts:
                    logger.warning(
                        f"Transient error uploading {item.remote_path} "
                        f"(attempt {attempt}/{max_attempts}): {e}"
                    )
                    await asyncio.sleep(self.settings.retry_delay)
                    continue
                logger.error(
                    f"Upload failed for {item.remote_path} after "
                    f"{max_attempts} attempts: {e}"
                )
            except AssetSyncError as e:
                if target is not None:
                    self._idle_targets.append(target)
                result.error_message = str(e)
                logger.error(f"Upload failed for {item.remote_path}: {e}")
                break
            except Exception as e:
                result.error_message = f"Unexpected error: {e}"
                logger.exception(f"Upload failed for {item.remote_path}: {e}")
                break

        if result.success:
            result.error_message = None
        self._record(result, remote_file)
        return result

    def _record(self, result: FileUploadResult, remote_file: Optional[B2File]) -> None:
        """Write the ledger entry for a finished file."""
        if self.ledger is None:
            return
        try:
            existing = self.ledger.query(result.remote_path)
            now = utc_now()
            if result.success:
                if (
                    result.skipped
                    and existing is not None
                    and existing.status == RecordStatus.UPLOADED
                    and existing.content_hash == result.content_hash
                ):
                    existing.verified_at = now
                    existing.local_path = result.local_path
                    if result.resource_id is not None:
                        existing.resource_id = result.resource_id
                        existing.resource_type = result.resource_type
                    self.ledger.save_upload(existing)
                    return
                uploaded_at = now
                if result.skipped and remote_file and remote_file.upload_timestamp:
                    uploaded_at = remote_file.upload_timestamp
                self.ledger.save_upload(
                    UploadRecord(
                        local_path=result.local_path,
                        remote_path=result.remote_path,
                        content_hash=result.content_hash,
                        content_length=result.content_length,
                        uploaded_at=uploaded_at,
                        cdn_url=result.cdn_url,
                        status=RecordStatus.UPLOADED,
                        file_id=result.file_id,
                        project_name=self.project_name,
                        resource_id=result.resource_id,
                        resource_type=result.resource_type,
                        verified_at=now,
                    )
                )
            elif existing is None:
                # Keep the last good record when there is one
                self.ledger.save_upload(
                    UploadRecord(
                        local_path=result.local_path,
                        remote_path=result.remote_path,
                        content_hash=result.content_hash,
                        content_length=result.content_length,
                        status=RecordStatus.FAILED,
                        project_name=self.project_name,
                        resource_id=result.resource_id,
                        resource_type=result.resource_type,
                        error_message=result.error_message,
                    )
                )
        except PersistenceError as e:
            logger.error(f"Ledger write failed for {result.remote_path}: {e}")
            if result.success:
                result.success = False
                result.skipped = False
                result.error_message = f"Uploaded but not recorded: {e}"

    # =========================
    # Batches
    # =========================

    async def upload_batch(
        self,
        items: Iterable[Union[UploadItem, tuple[PathLike, str]]],
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchUploadResult:
        """Upload an explicit list of files with bounded concurrency.

        Each file resolves to exactly one outcome: uploaded, skipped, failed
        or cancelled. A failing file never aborts the batch.

        Args:
            items: Upload items or (local path, remote path) pairs
            progress_callback: Called after each completed file
            cancel_event: When set, files not yet started are cancelled

        Returns:
            BatchUploadResult with per-file results in input order

        Raises:
            AuthError: If the service is not authorized
        """
        self._require_bucket()
        upload_items = [_as_item(item) for item in items]
        total_files = len(upload_items)
        start = time.monotonic()
        batch = BatchUploadResult()

        if total_files == 0:
            return batch

        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_uploads))
        completed = 0
        bytes_done = 0
        total_bytes = sum(_file_size(item.local_path) for item in upload_items)

        async def run(item: UploadItem) -> FileUploadResult:
            nonlocal completed, bytes_done
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    result = FileUploadResult(
                        local_path=str(item.local_path),
                        remote_path=item.remote_path,
                        cancelled=True,
                        error_message="Cancelled",
                        resource_id=item.resource_id,
                        resource_type=item.resource_type,
                    )
                else:
                    result = await self._upload_item(item, cancel_event)

            completed += 1
            bytes_done += result.content_length
            if progress_callback is not None:
                progress_callback(
                    UploadProgress(
                        percent_complete=completed * 100.0 / total_files,
                        current_file=item.remote_path,
                        current_file_index=completed,
                        total_files=total_files,
                        bytes_uploaded=bytes_done,
                        total_bytes=total_bytes,
                        status=result.status,
                    )
                )
            return result

        results = await asyncio.gather(*(run(item) for item in upload_items))
        for result in results:
            batch.add(result)
        batch.duration = time.monotonic() - start

        logger.info(
            f"Upload batch finished: {batch.success_count} uploaded, "
            f"{batch.skipped_count} skipped, {batch.failed_count} failed, "
            f"{batch.cancelled_count} cancelled in {batch.duration:.1f}s"
        )
        return batch

    async def upload_directory(
        self,
        root: PathLike,
        project_prefix: str,
        pattern: str = "*",
        recursive: bool = True,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchUploadResult:
        """Sweep a directory and upload every matching file.

        Meant for full re-syncs only. After an export, upload the exact file
        list with :meth:`upload_batch` instead.

        Args:
            root: Directory to sweep (usually the project's server root)
            project_prefix: Key prefix, e.g. the project name
            pattern: Glob matched against file names
            recursive: Whether to include subdirectories
        """
        self._require_bucket()
        scanner = DirectoryScanner(pattern=pattern, recursive=recursive)
        files = await asyncio.to_thread(scanner.scan, Path(root))
        prefix = project_prefix.strip("/")
        items = [
            UploadItem(
                local_path=f.path,
                remote_path=f"{prefix}/{f.relative_path}" if prefix else f.relative_path,
            )
            for f in files
        ]
        logger.info(f"Directory sweep of {root} found {len(items)} files")
        return await self.upload_batch(items, progress_callback, cancel_event)

    # =========================
    # Remote management
    # =========================

    async def delete_file(self, remote_path: str) -> bool:
        """Delete the latest version of a remote object.

        Returns:
            True if an object was deleted, False if it was absent or the
            delete failed
        """
        bucket_id = self._require_bucket()
        full_name = self.settings.build_full_path(remote_path)
        try:
            info = await self.client.get_file_info(bucket_id, full_name)
            if info is None:
                logger.warning(f"Remote file not found: {full_name}")
                return False
            await self.client.delete_file_version(info.file_name, info.file_id)
        except AssetSyncError as e:
            logger.error(f"Failed to delete {full_name}: {e}")
            return False

        logger.info(f"Deleted remote file {full_name}")
        if self.ledger is not None:
            try:
                self.ledger.mark_deleted(remote_path)
            except PersistenceError as e:
                logger.error(f"Ledger update failed for deleted {remote_path}: {e}")
        return True

    async def list_files(self, prefix: str = "") -> list[B2File]:
        """List every object under a prefix (relative to the bucket path prefix).

        Raises:
            AssetSyncError: If any page of the listing fails
        """
        bucket_id = self._require_bucket()
        full_prefix = self.settings.build_full_path(prefix) if prefix else ""
        if not full_prefix and self.settings.path_prefix:
            full_prefix = self.settings.path_prefix.rstrip("/") + "/"
        return await self.client.list_all_file_names(bucket_id, prefix=full_prefix)


def _as_item(item: Union[UploadItem, tuple[PathLike, str]]) -> UploadItem:
    if isinstance(item, UploadItem):
        return item
    local_path, remote_path = item
    return UploadItem(local_path=Path(local_path), remote_path=remote_path)


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0
