"""Batch export of selected resources with per-item failure isolation."""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from ..mapping import LodEntry, MappingDocument, ModelEntry
from ..models import (
    MaterialResource,
    ModelResource,
    Resource,
    ResourceType,
    TextureResource,
)
from ..resolver import resolve_from_models, textures_for_materials
from .options import ExportOptions
from .pipeline import ExportResult, ModelExportPipeline
from .tools import ExportTools

logger = logging.getLogger(__name__)


@dataclass
class ExportProgress:
    """Progress after one item finished."""

    percent_complete: float
    current_item: int
    total_items: int
    item_name: str
    success: bool


ExportProgressCallback = Callable[[ExportProgress], None]


@dataclass
class ExportPlan:
    """The three disjoint item sets of an export run, in processing order."""

    models: list[ModelResource] = field(default_factory=list)
    materials: list[MaterialResource] = field(default_factory=list)
    textures: list[TextureResource] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.models) + len(self.materials) + len(self.textures)


@dataclass
class ExportSummary:
    """Aggregated outcome of an export run."""

    total_items: int = 0
    success_count: int = 0
    fail_count: int = 0
    exported_files: list[Path] = field(default_factory=list)
    mapping_path: Optional[Path] = None
    failures: list[tuple[str, str]] = field(default_factory=list)
    """(resource name, error message) per failed item"""

    results: list[ExportResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def has_errors(self) -> bool:
        return self.fail_count > 0


def plan_export(
    models: Iterable[ModelResource],
    materials: Iterable[MaterialResource],
    textures: Iterable[TextureResource],
    all_materials: Iterable[MaterialResource],
    all_textures: Iterable[TextureResource],
    folder_paths: Mapping[int, str],
) -> ExportPlan:
    """Split a selection into models, standalone materials and standalone textures.

    A selected material is standalone unless one of the selected models
    already pulls it in. A selected texture is standalone unless any
    exported material references it.
    """
    models = list(models)
    all_materials = list(all_materials)
    all_textures = list(all_textures)

    covered_materials, _ = resolve_from_models(
        models, all_materials, all_textures, folder_paths
    )
    standalone_materials = [m for m in materials if m not in covered_materials]

    exported_materials = covered_materials | set(standalone_materials)
    referenced = textures_for_materials(exported_materials, all_textures)
    standalone_textures = [t for t in textures if t not in referenced]

    return ExportPlan(
        models=models,
        materials=_dedupe(standalone_materials),
        textures=_dedupe(standalone_textures),
    )


def _dedupe(resources: list) -> list:
    seen: set[Resource] = set()
    unique = []
    for resource in resources:
        if resource not in seen:
            seen.add(resource)
            unique.append(resource)
    return unique


def _relative_to(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


class ExportOrchestrator:
    """Runs the export of a selection and writes the mapping document."""

    def __init__(
        self,
        tools: ExportTools,
        all_materials: Optional[Iterable[MaterialResource]] = None,
        all_textures: Optional[Iterable[TextureResource]] = None,
        folder_paths: Optional[Mapping[int, str]] = None,
    ):
        self.tools = tools
        self.all_materials = list(all_materials or [])
        self.all_textures = list(all_textures or [])
        self.folder_paths = dict(folder_paths or {})

    async def run(
        self,
        models: Iterable[ModelResource],
        materials: Iterable[MaterialResource],
        textures: Iterable[TextureResource],
        options: ExportOptions,
        progress_callback: Optional[ExportProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ExportSummary:
        """Export models, then standalone materials, then standalone textures.

        A failing item is logged and counted; the run continues with the
        next one. Cancellation stops before the next item starts.

        Args:
            models: Selected models
            materials: Selected materials
            textures: Selected textures
            options: Export options
            progress_callback: Called after every item
            cancel_event: Set to stop the run between items

        Returns:
            ExportSummary with counts, produced files and the mapping path

        Raises:
            ConfigurationError: If the output location is not configured
        """
        options.validate()
        materials = list(materials)
        textures = list(textures)
        all_materials = self.all_materials or materials
        all_textures = self.all_textures or textures

        plan = plan_export(
            models, materials, textures, all_materials, all_textures, self.folder_paths
        )
        summary = ExportSummary(total_items=plan.total_items)
        if plan.total_items == 0:
            logger.info("Nothing selected for export")
            return summary

        logger.info(
            f"Exporting {len(plan.models)} models, {len(plan.materials)} materials, "
            f"{len(plan.textures)} textures to {options.content_dir}"
        )

        pipeline = ModelExportPipeline(options, self.tools, self.folder_paths)
        materials_pipeline = ModelExportPipeline(
            options.materials_only(), self.tools, self.folder_paths
        )
        jobs: list[tuple[Resource, Callable]] = []
        for model in plan.models:
            jobs.append(
                (model, lambda m=model: pipeline.export_model(m, all_materials, all_textures))
            )
        for material in plan.materials:
            jobs.append(
                (
                    material,
                    lambda m=material: materials_pipeline.export_material(m, all_textures),
                )
            )
        for texture in plan.textures:
            jobs.append((texture, lambda t=texture: pipeline.export_texture(t)))

        mapping = MappingDocument()
        seen_files: set[Path] = set()
        for index, (resource, job) in enumerate(jobs, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Export cancelled before {resource.display_name}")
                summary.cancelled = True
                break

            result: Optional[ExportResult] = None
            try:
                result = await job()
                if result.success:
                    summary.success_count += 1
                    for path in result.produced_files:
                        if path not in seen_files:
                            seen_files.add(path)
                            summary.exported_files.append(path)
                    self._add_to_mapping(mapping, result, options.server_root)
                else:
                    summary.fail_count += 1
                    summary.failures.append(
                        (resource.display_name, result.error_message or "unknown error")
                    )
                    logger.error(
                        f"Export failed for {resource.display_name}: {result.error_message}"
                    )
            except Exception as e:
                summary.fail_count += 1
                summary.failures.append((resource.display_name, str(e)))
                logger.exception(f"Export failed for {resource.display_name}: {e}")

            if result is not None:
                summary.results.append(result)
            if progress_callback:
                progress_callback(
                    ExportProgress(
                        percent_complete=index / plan.total_items * 100.0,
                        current_item=index,
                        total_items=plan.total_items,
                        item_name=resource.display_name,
                        success=result is not None and result.success,
                    )
                )

        # Replace the previous run's document even when nothing succeeded
        summary.mapping_path = mapping.save(options.mapping_path)
        if mapping.is_empty:
            logger.warning(f"No item exported, mapping is empty: {options.mapping_path}")

        logger.info(
            f"Export finished: {summary.success_count} succeeded, "
            f"{summary.fail_count} failed, {len(summary.exported_files)} files"
        )
        return summary

    @staticmethod
    def _add_to_mapping(
        mapping: MappingDocument, result: ExportResult, server_root: Path
    ) -> None:
        model_file = result.converted_model_path or result.model_json_path
        if model_file is not None and result.resource_type == ResourceType.MODEL:
            mapping.models[result.resource_id] = ModelEntry(
                path=_relative_to(model_file, server_root),
                lods=[LodEntry(file=_relative_to(p, server_root)) for p in result.lod_paths],
            )
        for material_id, path in result.material_jsons.items():
            mapping.materials[material_id] = _relative_to(path, server_root)
        for texture_id, path in result.converted_textures.items():
            mapping.textures[texture_id] = _relative_to(path, server_root)
