"""Per-item export: one model, material or texture at a time.

Output layout below ``{output_root}/{project}/server/assets/content``::

    <folder>/<model>.glb            converted model
    <folder>/<model>_lod1.glb       LODs
    <folder>/<model>.json           model manifest
    <folder>/materials/<mat>.json   material instances
    <folder>/textures/<tex>.ktx2    converted and packed textures
    materials/<master>/chunks/*.mjs shader chunks of the masters in use
"""

import asyncio
import json
import logging
import os
import shutil
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..exceptions import AssetSyncError, ConversionError
from ..models import (
    MaterialResource,
    ModelResource,
    Resource,
    ResourceType,
    TextureResource,
)
from ..resolver import folder_path_of, resolve_from_models
from ..utils import safe_file_name, safe_relative_path
from .materials import build_material_json, material_file_name, write_material_json
from .options import ExportOptions
from .tools import ExportTools, PackingMode, determine_packing_mode

logger = logging.getLogger(__name__)


@dataclass
class ExportResult:
    """Outcome of exporting one resource."""

    resource_id: int
    resource_type: ResourceType
    name: str
    success: bool = False
    error_message: Optional[str] = None
    export_path: Optional[Path] = None

    converted_model_path: Optional[Path] = None
    model_json_path: Optional[Path] = None
    lod_paths: list[Path] = field(default_factory=list)
    material_jsons: dict[int, Path] = field(default_factory=dict)
    converted_textures: dict[int, Path] = field(default_factory=dict)
    packed_textures: list[Path] = field(default_factory=list)
    chunk_files: list[Path] = field(default_factory=list)

    processed_material_ids: list[int] = field(default_factory=list)
    processed_texture_ids: list[int] = field(default_factory=list)

    @property
    def produced_files(self) -> list[Path]:
        """Every file this export wrote, without duplicates or directories."""
        candidates: list[Optional[Path]] = [
            self.converted_model_path,
            self.model_json_path,
            *self.lod_paths,
            *self.material_jsons.values(),
            *self.converted_textures.values(),
            *self.packed_textures,
            *self.chunk_files,
        ]
        files: list[Path] = []
        seen: set[Path] = set()
        for path in candidates:
            if path is None or path in seen or not path.is_file():
                continue
            seen.add(path)
            files.append(path)
        return files


def _relative(path: Path, start: Path) -> str:
    return os.path.relpath(path, start).replace("\\", "/")


class ModelExportPipeline:
    """Exports single resources with the configured external tools."""

    def __init__(
        self,
        options: ExportOptions,
        tools: ExportTools,
        folder_paths: Optional[Mapping[int, str]] = None,
    ):
        options.validate()
        self.options = options
        self.tools = tools
        self.folder_paths = folder_paths or {}

    @property
    def content_dir(self) -> Path:
        return self.options.content_dir

    def _resource_dir(self, resource: Resource, fallback_to_name: bool) -> Path:
        folder = folder_path_of(resource, self.folder_paths)
        if folder:
            return self.content_dir / safe_relative_path(folder)
        if fallback_to_name:
            return self.content_dir / safe_file_name(resource.display_name)
        return self.content_dir

    # =========================
    # Models
    # =========================

    async def export_model(
        self,
        model: ModelResource,
        all_materials: Iterable[MaterialResource],
        all_textures: Iterable[TextureResource],
    ) -> ExportResult:
        """Export a model together with its materials and textures."""
        result = ExportResult(
            resource_id=model.id,
            resource_type=ResourceType.MODEL,
            name=model.display_name,
        )
        try:
            await self._export_model(model, all_materials, all_textures, result)
            result.success = True
            logger.info(f"Exported model {result.name} -> {result.export_path}")
        except (AssetSyncError, OSError) as e:
            result.success = False
            result.error_message = str(e)
            logger.error(f"Failed to export model {result.name}: {e}")
        return result

    async def _export_model(
        self,
        model: ModelResource,
        all_materials: Iterable[MaterialResource],
        all_textures: Iterable[TextureResource],
        result: ExportResult,
    ) -> None:
        options = self.options
        export_dir = self._resource_dir(model, fallback_to_name=True)
        result.export_path = export_dir
        materials_dir = export_dir / "materials"
        textures_dir = export_dir / "textures"
        export_dir.mkdir(parents=True, exist_ok=True)

        related_materials, related_textures = resolve_from_models(
            [model], all_materials, all_textures, self.folder_paths
        )
        materials = sorted(related_materials, key=lambda m: m.id)
        textures = sorted(related_textures, key=lambda t: t.id)
        textures_by_id = {t.id: t for t in textures}

        if options.convert_textures:
            for texture in textures:
                converted = await self._convert_texture(texture, textures_dir)
                if converted is not None:
                    result.converted_textures[texture.id] = converted
                    result.processed_texture_ids.append(texture.id)

        packed: dict[int, tuple[PackingMode, Path]] = {}
        if options.generate_orm_textures:
            for material in materials:
                packed_texture = await self._pack_material_textures(
                    material, textures_by_id, textures_dir
                )
                if packed_texture is not None:
                    packed[material.id] = packed_texture
                    result.packed_textures.append(packed_texture[1])

        masters_used: set[str] = set()
        for material in materials:
            master = options.master_for(material)
            masters_used.add(master)
            packed_ref = None
            if options.use_packed_textures and material.id in packed:
                mode, packed_path = packed[material.id]
                packed_ref = (mode, _relative(packed_path, materials_dir))
            texture_refs = {
                tex_id: _relative(path, materials_dir)
                for tex_id, path in result.converted_textures.items()
            }
            document = build_material_json(material, master, texture_refs, packed_ref)
            json_path = write_material_json(
                document, materials_dir / material_file_name(material)
            )
            result.material_jsons[material.id] = json_path
            result.processed_material_ids.append(material.id)

        result.chunk_files.extend(await self._write_chunks(masters_used))

        base_name = safe_file_name(model.display_name)
        if options.convert_model:
            if not model.path:
                raise ConversionError(f"Model {model.display_name} has no source file")
            glb = await self.tools.models.convert(Path(model.path), export_dir, base_name)
            result.converted_model_path = glb
            if options.generate_lods and options.lod_levels > 0:
                result.lod_paths = await self.tools.models.generate_lods(
                    glb, export_dir, base_name, options.lod_levels
                )

        result.model_json_path = self._write_model_manifest(
            model, export_dir, base_name, result
        )

    def _write_model_manifest(
        self,
        model: ModelResource,
        export_dir: Path,
        base_name: str,
        result: ExportResult,
    ) -> Path:
        manifest = {
            "id": model.id,
            "name": model.display_name,
            "model": (
                _relative(result.converted_model_path, export_dir)
                if result.converted_model_path
                else None
            ),
            "lods": [
                {"level": level, "file": _relative(path, export_dir)}
                for level, path in enumerate(result.lod_paths, start=1)
            ],
            "materials": {
                str(material_id): _relative(path, export_dir)
                for material_id, path in result.material_jsons.items()
            },
        }
        manifest_path = export_dir / f"{base_name}.json"
        with open(manifest_path, "w", encoding="utf-8") as f:
            json.dump(manifest, f, indent=2, ensure_ascii=False)
        return manifest_path

    async def _convert_texture(
        self, texture: TextureResource, textures_dir: Path
    ) -> Optional[Path]:
        if not texture.path or not Path(texture.path).is_file():
            logger.warning(f"Texture file not found, skipping: {texture.display_name}")
            return None
        output = textures_dir / f"{safe_file_name(texture.display_name)}.ktx2"
        return await self.tools.textures.convert(
            Path(texture.path),
            output,
            quality=self.options.texture_quality,
            settings=self.options.settings_for(texture.id),
        )

    async def _pack_material_textures(
        self,
        material: MaterialResource,
        textures_by_id: dict[int, TextureResource],
        textures_dir: Path,
    ) -> Optional[tuple[PackingMode, Path]]:
        def source(texture_id: Optional[int]) -> Optional[Path]:
            texture = textures_by_id.get(texture_id) if texture_id is not None else None
            if texture is None or not texture.path or not Path(texture.path).is_file():
                return None
            return Path(texture.path)

        ao = source(material.ao_map_id)
        gloss = source(material.gloss_map_id)
        metalness = source(material.metalness_map_id)
        mode = determine_packing_mode(ao is not None, gloss is not None, metalness is not None)
        if mode is None or ao is None or gloss is None:
            return None

        output = textures_dir / f"{safe_file_name(material.display_name)}_{mode.value}.ktx2"
        packed_path = await self.tools.packer.pack(
            mode,
            output,
            ao=ao,
            gloss=gloss,
            metalness=metalness,
            quality=self.options.texture_quality,
            apply_toksvig=self.options.apply_toksvig,
            normal=source(material.normal_map_id),
        )
        return mode, packed_path

    async def _write_chunks(self, masters: Iterable[str]) -> list[Path]:
        config = self.options.master_materials
        if config is None:
            return []
        written: list[Path] = []
        for master_name in sorted(masters):
            master = config.get_master(master_name)
            if master is None or not master.chunks:
                continue
            chunks_dir = (
                self.content_dir / "materials" / safe_file_name(master.name) / "chunks"
            )
            for chunk_name, source in sorted(master.chunks.items()):
                source_path = Path(source)
                if not source_path.is_absolute() and self.options.master_materials_folder:
                    source_path = self.options.master_materials_folder / source_path
                if not source_path.is_file():
                    logger.warning(
                        f"Shader chunk {chunk_name} of {master.name} not found: {source_path}"
                    )
                    continue
                target = chunks_dir / f"{safe_file_name(chunk_name)}.mjs"
                target.parent.mkdir(parents=True, exist_ok=True)
                await asyncio.to_thread(shutil.copyfile, source_path, target)
                written.append(target)
        return written

    # =========================
    # Materials and textures
    # =========================

    async def export_material(
        self, material: MaterialResource, all_textures: Iterable[TextureResource]
    ) -> ExportResult:
        """Export a material on its own.

        With ``material_json_only`` (standalone materials) only the instance
        JSON is written; texture slots keep their numeric IDs.
        """
        result = ExportResult(
            resource_id=material.id,
            resource_type=ResourceType.MATERIAL,
            name=material.display_name,
        )
        try:
            export_dir = self._resource_dir(material, fallback_to_name=False)
            materials_dir = export_dir / "materials"
            result.export_path = materials_dir
            texture_refs: dict[int, str] = {}
            if self.options.convert_textures and not self.options.material_json_only:
                wanted = set(material.texture_map_ids().values())
                for texture in all_textures:
                    if texture.id not in wanted:
                        continue
                    converted = await self._convert_texture(
                        texture, export_dir / "textures"
                    )
                    if converted is not None:
                        result.converted_textures[texture.id] = converted
                        texture_refs[texture.id] = _relative(converted, materials_dir)
                        result.processed_texture_ids.append(texture.id)

            master = self.options.master_for(material)
            document = build_material_json(material, master, texture_refs)
            result.material_jsons[material.id] = write_material_json(
                document, materials_dir / material_file_name(material)
            )
            result.chunk_files.extend(await self._write_chunks([master]))
            result.processed_material_ids.append(material.id)
            result.success = True
        except (AssetSyncError, OSError) as e:
            result.error_message = str(e)
            logger.error(f"Failed to export material {result.name}: {e}")
        return result

    async def export_texture(self, texture: TextureResource) -> ExportResult:
        """Convert a standalone texture to KTX2."""
        result = ExportResult(
            resource_id=texture.id,
            resource_type=ResourceType.TEXTURE,
            name=texture.display_name,
        )
        try:
            if not texture.path or not Path(texture.path).is_file():
                raise ConversionError(
                    f"Texture source not found: {texture.path or texture.display_name}"
                )
            textures_dir = self._resource_dir(texture, fallback_to_name=False) / "textures"
            result.export_path = textures_dir
            if self.options.convert_textures:
                converted = await self._convert_texture(texture, textures_dir)
                if converted is not None:
                    result.converted_textures[texture.id] = converted
            result.processed_texture_ids.append(texture.id)
            result.success = True
        except (AssetSyncError, OSError) as e:
            result.error_message = str(e)
            logger.error(f"Failed to export texture {result.name}: {e}")
        return result
