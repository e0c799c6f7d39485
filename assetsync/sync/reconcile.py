"""Reconcile resource upload status with what the bucket actually holds.

Listings and deletions can only demote resources. Promotion to Uploaded
happens only through :func:`correlate_upload_results` after a successful
upload.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Optional

from ..catalog import AssetCatalog, UploadStatusUpdate
from ..exceptions import PersistenceError
from ..ledger import UploadLedger
from ..mapping import (
    MappingDocument,
    lookup_remote_path,
    normalize_relative_path,
    remote_to_relative,
)
from ..models import RecordStatus, ResourceType
from .uploader import FileUploadResult

logger = logging.getLogger(__name__)

ASSETS_MARKER = "assets/"


def normalize_remote_path(path: Optional[str]) -> str:
    """Reduce a URL or object key to a comparable path.

    The result starts at the first ``assets/`` (case-insensitive) when there
    is one, is lower-cased and uses forward slashes. Applying it twice gives
    the same result.

    Examples:
        >>> normalize_remote_path("https://cdn.example.com/proj/Assets/Content/A.glb")
        'assets/content/a.glb'
        >>> normalize_remote_path("\\\\proj\\\\mapping.json")
        'proj/mapping.json'
    """
    if not path:
        return ""
    normalized = path.replace("\\", "/").lower()
    index = normalized.find(ASSETS_MARKER)
    if index >= 0:
        return normalized[index:]
    return normalized.lstrip("/")


@dataclass
class DeletionSyncResult:
    has_deleted_paths: bool = False
    deleted_path_count: int = 0
    reset_count: int = 0
    ledger_records_marked: int = 0


@dataclass
class ServerSyncResult:
    server_was_empty: bool = False
    verified_count: int = 0
    not_found_count: int = 0
    reset_count: int = 0
    skipped: bool = False
    """True when an empty but incomplete listing was ignored"""


@dataclass
class StatusUpdates:
    """Resource promotions derived from an upload batch."""

    updates: list[UploadStatusUpdate] = field(default_factory=list)
    unmatched_paths: list[str] = field(default_factory=list)
    """Successful uploads that belong to no resource (LOD-less extras, chunks)"""

    def __len__(self) -> int:
        return len(self.updates)


def correlate_upload_results(
    results: Iterable[FileUploadResult],
    mapping: MappingDocument,
    project_name: Optional[str],
) -> StatusUpdates:
    """Match successful uploads to resource IDs through the mapping document.

    Skipped files count as successful: their bytes are on the server.
    """
    index = mapping.build_reverse_index()
    primary_paths = {
        normalize_relative_path(entry.path) for entry in mapping.models.values()
    }
    status_updates = StatusUpdates()
    chosen: dict[tuple, tuple[UploadStatusUpdate, bool]] = {}

    for result in results:
        if not result.success or not result.content_hash or not result.cdn_url:
            continue
        match = lookup_remote_path(index, result.remote_path, project_name)
        if match is None:
            status_updates.unmatched_paths.append(result.remote_path)
            continue
        resource_id, resource_type = match
        result.resource_id = resource_id
        result.resource_type = resource_type
        is_primary = (
            resource_type != ResourceType.MODEL
            or remote_to_relative(result.remote_path, project_name) in primary_paths
        )
        key = (resource_type, resource_id)
        # A model's LOD files map to the model; the main file wins
        if key in chosen and (chosen[key][1] or not is_primary):
            continue
        chosen[key] = (
            UploadStatusUpdate(
                resource_type=resource_type,
                resource_id=resource_id,
                content_hash=result.content_hash,
                cdn_url=result.cdn_url,
            ),
            is_primary,
        )
    status_updates.updates = [update for update, _ in chosen.values()]
    return status_updates


class ReconciliationEngine:
    """Repairs drift between the catalog, the ledger and the bucket."""

    def __init__(self, catalog: AssetCatalog, ledger: Optional[UploadLedger] = None):
        self.catalog = catalog
        self.ledger = ledger

    def on_explicit_deletion(self, deleted_paths: Iterable[str]) -> DeletionSyncResult:
        """Reset every resource whose remote URL points at a deleted path.

        Matching ledger records are kept but flagged as deleted.
        """
        raw_paths = [p for p in deleted_paths if p]
        deleted = {normalize_remote_path(p) for p in raw_paths}
        deleted.discard("")
        result = DeletionSyncResult(
            has_deleted_paths=bool(deleted), deleted_path_count=len(deleted)
        )
        if not deleted:
            return result

        for resource in list(self.catalog.all_resources()):
            if not resource.remote_url:
                continue
            if normalize_remote_path(resource.remote_url) in deleted:
                if self.catalog.reset_upload_status(resource):
                    result.reset_count += 1
                    logger.info(
                        f"Reset upload status of {resource.display_name}: "
                        "remote file deleted"
                    )

        result.ledger_records_marked = self._mark_ledger_deleted(raw_paths, deleted)
        return result

    def _mark_ledger_deleted(self, raw_paths: list[str], deleted: set[str]) -> int:
        """Flag ledger rows for the deleted keys.

        The ledger is shared by all projects, so a row matches on its exact
        key, or on its relative path only when it belongs to this catalog's
        project.
        """
        if self.ledger is None:
            return 0
        exact = {p.strip().lstrip("/").lower() for p in raw_paths}
        project = self.catalog.project_name
        marked = 0
        try:
            for record in self.ledger.get_all():
                if record.status == RecordStatus.DELETED:
                    continue
                same_project = bool(project) and record.project_name == project
                if record.remote_path.lower() in exact or (
                    same_project and normalize_remote_path(record.remote_path) in deleted
                ):
                    if self.ledger.mark_deleted(record.remote_path):
                        marked += 1
        except PersistenceError as e:
            logger.error(f"Could not flag deleted files in ledger: {e}")
        return marked

    def on_server_listing_refreshed(
        self, server_paths: Iterable[str], listing_complete: bool = True
    ) -> ServerSyncResult:
        """Verify every Uploaded resource against a bucket listing.

        An empty listing resets every Uploaded resource, but only when the
        listing is known to be complete.

        Args:
            server_paths: Object keys or URLs currently on the server
            listing_complete: False if the listing may be partial

        Returns:
            ServerSyncResult with verified / not found / reset counts
        """
        normalized = {normalize_remote_path(p) for p in server_paths if p}
        normalized.discard("")
        uploaded = self.catalog.uploaded_resources()
        result = ServerSyncResult(server_was_empty=not normalized)

        if not normalized:
            if not listing_complete:
                logger.warning(
                    "Server listing is empty but incomplete; keeping upload statuses"
                )
                result.skipped = True
                return result
            for resource in uploaded:
                if self.catalog.reset_upload_status(resource):
                    result.reset_count += 1
            logger.info(
                f"Server is empty: reset upload status of {result.reset_count} resources"
            )
            return result

        for resource in uploaded:
            path = normalize_remote_path(resource.remote_url)
            if path and path in normalized:
                result.verified_count += 1
                continue
            result.not_found_count += 1
            if self.catalog.reset_upload_status(resource):
                result.reset_count += 1
            logger.info(f"{resource.display_name} not found on server: {path}")

        logger.info(
            f"Server sync: {result.verified_count} verified, "
            f"{result.not_found_count} not found"
        )
        return result
