"""Pipeline commands: export, mark, upload, delete and refresh.

:class:`AssetPipeline` is the coordinating context. Export and upload run
asynchronously, but every resource status change is applied here, after
the batch returns, through the catalog.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from .catalog import AssetCatalog
from .config import B2Settings
from .exceptions import ConfigurationError, ParseError
from .export import ExportOptions, ExportOrchestrator, ExportSummary, ExportTools
from .export.orchestrator import ExportProgressCallback
from .ledger import UploadLedger
from .mapping import MappingDocument, lookup_remote_path
from .models import Resource
from .resolver import resolve_from_materials, resolve_from_models, textures_for_materials
from .sync import (
    BatchUploadResult,
    DeletionSyncResult,
    FileUploadResult,
    ProgressCallback,
    ReconciliationEngine,
    ServerSyncResult,
    UploadProgress,
    UploadService,
    build_upload_items,
    correlate_upload_results,
    mapping_remote_path,
)
from .sync.progress import scaled
from .utils import format_duration

logger = logging.getLogger(__name__)

CONTENT_PHASE_END = 90.0
MAX_REPORTED_ERRORS = 5


@dataclass
class UploadReport:
    """Outcome of an upload command, content and mapping phases combined."""

    batch: BatchUploadResult = field(default_factory=BatchUploadResult)
    mapping_result: Optional[FileUploadResult] = None
    updated_resources: int = 0
    unmatched_paths: list[str] = field(default_factory=list)
    missing_files: list[Path] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        mapping_ok = self.mapping_result is None or self.mapping_result.success
        return not self.batch.has_errors and mapping_ok and not self.errors

    def message(self) -> str:
        """Human-readable summary with at most five error lines."""
        lines = [
            f"Uploaded: {self.batch.success_count}",
            f"Skipped (unchanged): {self.batch.skipped_count}",
            f"Failed: {self.batch.failed_count}",
        ]
        if self.batch.cancelled_count:
            lines.append(f"Cancelled: {self.batch.cancelled_count}")
        if self.missing_files:
            lines.append(f"Missing locally: {len(self.missing_files)}")
        lines.append(f"Duration: {format_duration(self.batch.duration)}")
        if self.mapping_result is not None:
            lines.append(
                "Mapping: uploaded"
                if self.mapping_result.success
                else f"Mapping: failed ({self.mapping_result.error_message})"
            )
        if self.updated_resources:
            lines.append(f"Resources marked uploaded: {self.updated_resources}")

        errors = self.batch.errors + self.errors
        if errors:
            lines.append("")
            lines.append("Errors:")
            lines.extend(f"  {e}" for e in errors[:MAX_REPORTED_ERRORS])
            if len(errors) > MAX_REPORTED_ERRORS:
                lines.append(f"  ... and {len(errors) - MAX_REPORTED_ERRORS} more")
        return "\n".join(lines)


class AssetPipeline:
    """Runs pipeline commands against one project's catalog."""

    def __init__(
        self,
        catalog: AssetCatalog,
        settings: Optional[B2Settings] = None,
        projects_folder: Optional[Union[str, Path]] = None,
        ledger: Optional[UploadLedger] = None,
        tools: Optional[ExportTools] = None,
        upload_service: Optional[UploadService] = None,
    ):
        """Initialize the pipeline.

        Args:
            catalog: Resources of the project
            settings: Bucket settings; needed by upload, delete and refresh
            projects_folder: Root folder of local export output
            ledger: Upload ledger shared with the upload service
            tools: External tools; needed by export
            upload_service: Pre-built service (created from settings when omitted)
        """
        self.catalog = catalog
        self.settings = settings
        self.projects_folder = Path(projects_folder) if projects_folder else None
        self.ledger = ledger
        self.tools = tools
        self._service = upload_service
        self.reconciler = ReconciliationEngine(catalog, ledger)
        self.last_exported_files: list[Path] = []

    @property
    def project_name(self) -> str:
        return self.catalog.project_name

    def _require_projects_folder(self) -> Path:
        if self.projects_folder is None:
            raise ConfigurationError(
                "Projects folder is not configured. Run 'assetsync init' first."
            )
        if not self.project_name:
            raise ConfigurationError("Catalog has no project name")
        return self.projects_folder

    def export_options(self, **overrides) -> ExportOptions:
        options = ExportOptions(
            project_name=self.project_name,
            output_root=self._require_projects_folder(),
            **overrides,
        )
        options.validate()
        return options

    async def _get_service(self) -> UploadService:
        if self._service is None:
            if self.settings is None:
                raise ConfigurationError("B2 settings are not configured")
            self._service = UploadService(
                self.settings, ledger=self.ledger, project_name=self.project_name
            )
        if not self._service.is_authorized:
            await self._service.authorize()
        return self._service

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()

    # =========================
    # Marking
    # =========================

    def mark_related(self) -> int:
        """Mark everything related to the currently marked resources.

        Marked models pull in their materials and textures; marked materials
        pull in their models and textures.

        Returns:
            Number of resources newly marked
        """
        models, materials, _ = self.catalog.marked_for_export()
        folders = self.catalog.folder_paths
        related_materials, related_textures = resolve_from_models(
            models, self.catalog.materials, self.catalog.textures, folders
        )
        related_models = resolve_from_materials(materials, self.catalog.models, folders)
        related_textures |= textures_for_materials(materials, self.catalog.textures)

        to_mark: list[Resource] = [
            *related_models,
            *related_materials,
            *related_textures,
        ]
        changed = self.catalog.set_export_flag(to_mark, True)
        logger.info(f"Marked {changed} related resources for export")
        return changed

    def clear_marks(self) -> int:
        changed = self.catalog.clear_export_marks()
        logger.info(f"Cleared export marks on {changed} resources")
        return changed

    # =========================
    # Export
    # =========================

    async def export_selected(
        self,
        options: Optional[ExportOptions] = None,
        progress_callback: Optional[ExportProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExportSummary:
        """Export every resource marked for export.

        The produced files are remembered for :meth:`upload_exported_files`.

        Raises:
            ConfigurationError: If the output folder or tools are missing
        """
        if self.tools is None:
            raise ConfigurationError("Export tools are not configured")
        options = options or self.export_options()
        models, materials, textures = self.catalog.marked_for_export()

        orchestrator = ExportOrchestrator(
            self.tools,
            all_materials=self.catalog.materials,
            all_textures=self.catalog.textures,
            folder_paths=self.catalog.folder_paths,
        )
        summary = await orchestrator.run(
            models, materials, textures, options, progress_callback, cancel_event
        )

        for result in summary.results:
            if not result.success:
                continue
            self.catalog.mark_processed(result.resource_type, result.resource_id)
        self.last_exported_files = list(summary.exported_files)
        return summary

    # =========================
    # Upload
    # =========================

    async def upload_exported_files(
        self,
        files: Optional[Iterable[Union[str, Path]]] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadReport:
        """Upload the exact files of an export run, then the mapping document.

        Args:
            files: Files to upload (defaults to the last export's files)
            progress_callback: Receives 0-90% for content, 90-100% for mapping
            cancel_event: Set to stop scheduling further files

        Raises:
            ConfigurationError: If settings or the projects folder are missing
            AuthError: If B2 authorization fails
        """
        options = self.export_options()
        file_list = list(files) if files is not None else list(self.last_exported_files)
        report = UploadReport()
        mapping_path = options.mapping_path
        file_list = [f for f in file_list if Path(f).resolve() != mapping_path.resolve()]

        items = build_upload_items(
            file_list,
            options.server_root,
            self.project_name,
            on_missing_file=report.missing_files.append,
        )
        if not items and not mapping_path.is_file():
            logger.info("Nothing to upload")
            return report

        service = await self._get_service()
        report.batch = await service.upload_batch(
            items,
            scaled(progress_callback, 0.0, CONTENT_PHASE_END),
            cancel_event,
        )
        await self._finish_upload(
            service, report, mapping_path, progress_callback, cancel_event
        )
        return report

    async def upload_full_directory(
        self,
        pattern: str = "*",
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> UploadReport:
        """Re-sync the whole server folder of the project.

        Raises:
            ConfigurationError: If settings or the projects folder are missing
            AuthError: If B2 authorization fails
        """
        options = self.export_options()
        server_root = options.server_root
        if not server_root.is_dir():
            raise ConfigurationError(f"Export folder does not exist: {server_root}")

        service = await self._get_service()
        report = UploadReport()
        report.batch = await service.upload_directory(
            server_root,
            self.project_name,
            pattern=pattern,
            progress_callback=scaled(progress_callback, 0.0, CONTENT_PHASE_END),
            cancel_event=cancel_event,
        )
        # The sweep already included mapping.json; only correlate
        await self._finish_upload(
            service,
            report,
            options.mapping_path,
            progress_callback,
            cancel_event,
            upload_mapping=False,
        )
        return report

    async def _finish_upload(
        self,
        service: UploadService,
        report: UploadReport,
        mapping_path: Path,
        progress_callback: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
        upload_mapping: bool = True,
    ) -> None:
        cancelled = cancel_event is not None and cancel_event.is_set()
        if upload_mapping and mapping_path.is_file() and not cancelled:
            report.mapping_result = await service.upload_file(
                mapping_path, mapping_remote_path(self.project_name)
            )
        if progress_callback is not None:
            progress_callback(
                UploadProgress(
                    percent_complete=100.0,
                    current_file=mapping_path.name,
                    current_file_index=report.batch.total_files,
                    total_files=report.batch.total_files,
                    status=report.mapping_result.status if report.mapping_result else "",
                )
            )

        if not mapping_path.is_file():
            logger.warning(f"No mapping document at {mapping_path}; statuses unchanged")
            return
        try:
            mapping = MappingDocument.load(mapping_path)
        except ParseError as e:
            report.errors.append(f"mapping.json: {e}")
            logger.error(f"Cannot correlate uploads: {e}")
            return

        updates = correlate_upload_results(
            report.batch.results, mapping, self.project_name
        )
        report.updated_resources = self.catalog.apply_upload_statuses(updates.updates)
        report.unmatched_paths = updates.unmatched_paths
        self._mark_failed_resources(report.batch.results, mapping)

    def _mark_failed_resources(
        self, results: Iterable[FileUploadResult], mapping: MappingDocument
    ) -> None:
        index = mapping.build_reverse_index()
        for result in results:
            if result.success or result.cancelled:
                continue
            match = lookup_remote_path(index, result.remote_path, self.project_name)
            if match is None:
                continue
            resource = self.catalog.get(match[1], match[0])
            # A previous good upload stays valid
            if resource is not None and not resource.is_uploaded:
                self.catalog.mark_upload_error(resource)

    # =========================
    # Remote management
    # =========================

    async def delete_remote_file(self, remote_path: str) -> DeletionSyncResult:
        """Delete one object and demote the resources that pointed at it.

        Raises:
            AuthError: If B2 authorization fails
        """
        service = await self._get_service()
        deleted = await service.delete_file(remote_path)
        if not deleted:
            return DeletionSyncResult()
        return self.reconciler.on_explicit_deletion([remote_path])

    async def refresh_remote_listing(self) -> ServerSyncResult:
        """List the project's objects and verify every Uploaded resource.

        Raises:
            AuthError: If B2 authorization fails
            AssetSyncError: If the listing fails; statuses are left untouched
        """
        service = await self._get_service()
        prefix = f"{self.project_name.strip('/')}/" if self.project_name else ""
        files = await service.list_files(prefix)
        return self.reconciler.on_server_listing_refreshed(
            [f.file_name for f in files], listing_complete=True
        )
