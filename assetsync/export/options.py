"""Export options and master material configuration."""

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from ..exceptions import ConfigurationError, ParseError
from ..models import MaterialResource
from ..sync.paths import content_dir_for, mapping_path_for, server_root_for

logger = logging.getLogger(__name__)

DEFAULT_MASTER_MATERIAL = "pbr_opaque"

# Fallback master per material blend type
BLEND_TYPE_MASTERS: dict[str, str] = {
    "0": "pbr_opaque",
    "1": "pbr_alpha",
    "2": "pbr_additive",
    "3": "pbr_premul",
    "none": "pbr_opaque",
    "normal": "pbr_alpha",
    "additive": "pbr_additive",
    "premultiplied": "pbr_premul",
}


@dataclass
class MasterMaterial:
    """A shader template that material instances reference by name."""

    name: str
    blend_type: str = "opaque"
    chunks: dict[str, str] = field(default_factory=dict)
    """Chunk name -> path of the .mjs source replacing it"""

    description: Optional[str] = None


@dataclass
class MasterMaterialsConfig:
    """Masters, per-material assignments and the project default."""

    masters: list[MasterMaterial] = field(default_factory=list)
    assignments: dict[int, str] = field(default_factory=dict)
    """Material ID -> master name"""

    default_master: Optional[str] = None

    def get_master(self, name: str) -> Optional[MasterMaterial]:
        for master in self.masters:
            if master.name == name:
                return master
        return None

    def master_for(
        self, material: MaterialResource, fallback: str = DEFAULT_MASTER_MATERIAL
    ) -> str:
        """Pick the master for a material.

        An explicit assignment wins, then the configured default, then the
        material's blend type, then ``fallback``.
        """
        if material.id in self.assignments:
            return self.assignments[material.id]
        if self.default_master:
            return self.default_master
        return master_for_blend_type(material.blend_type, fallback)

    @classmethod
    def from_dict(cls, data: Any) -> "MasterMaterialsConfig":
        if not isinstance(data, dict):
            raise ParseError("master materials config must be a JSON object")
        try:
            masters = [
                MasterMaterial(
                    name=m["name"],
                    blend_type=m.get("blendType", "opaque"),
                    chunks=dict(m.get("chunks") or {}),
                    description=m.get("description"),
                )
                for m in data.get("masters", [])
            ]
            assignments = {
                int(k): v
                for k, v in (data.get("materialInstanceMappings") or {}).items()
            }
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise ParseError(f"invalid master materials config: {e}") from e
        return cls(
            masters=masters,
            assignments=assignments,
            default_master=data.get("defaultMasterMaterial"),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "MasterMaterialsConfig":
        try:
            with open(path, encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except OSError as e:
            raise ParseError(f"cannot read master materials config {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ParseError(f"malformed master materials config {path}: {e}") from e


def master_for_blend_type(
    blend_type: Optional[str], fallback: str = DEFAULT_MASTER_MATERIAL
) -> str:
    if not blend_type:
        return fallback
    return BLEND_TYPE_MASTERS.get(blend_type.lower(), fallback)


@dataclass
class ExportOptions:
    """Settings shared by every item of one export run."""

    project_name: str = ""
    output_root: Optional[Path] = None
    """Projects folder; output goes to {output_root}/{project}/server"""

    project_id: Optional[int] = None

    convert_model: bool = True
    convert_textures: bool = True
    generate_orm_textures: bool = True
    use_packed_textures: bool = True
    generate_lods: bool = True
    lod_levels: int = 2
    texture_quality: int = 128
    apply_toksvig: bool = True
    """Compensate gloss maps for specular aliasing"""

    use_saved_settings: bool = True
    resource_settings: dict[int, dict[str, Any]] = field(default_factory=dict)
    """Saved per-resource conversion settings keyed by resource ID"""

    master_materials: Optional[MasterMaterialsConfig] = None
    master_materials_folder: Optional[Path] = None
    """Base folder for relative shader chunk paths"""

    default_master_material: str = DEFAULT_MASTER_MATERIAL
    material_json_only: bool = False

    def materials_only(self) -> "ExportOptions":
        """Options for standalone materials: JSON only, nothing converted."""
        return dataclasses.replace(
            self,
            convert_model=False,
            convert_textures=False,
            generate_orm_textures=False,
            material_json_only=True,
        )

    def validate(self) -> None:
        """Fail fast when the output location is not configured.

        Raises:
            ConfigurationError: If project name or output root is missing
        """
        if not self.project_name:
            raise ConfigurationError("Export project name is not set")
        if self.output_root is None:
            raise ConfigurationError(
                "Export output folder is not set. Configure the projects folder."
            )

    def settings_for(self, resource_id: int) -> dict[str, Any]:
        if not self.use_saved_settings:
            return {}
        return self.resource_settings.get(resource_id, {})

    def master_for(self, material: MaterialResource) -> str:
        if self.master_materials is not None:
            return self.master_materials.master_for(
                material, self.default_master_material
            )
        return master_for_blend_type(material.blend_type, self.default_master_material)

    @property
    def server_root(self) -> Path:
        self.validate()
        return server_root_for(self.output_root, self.project_name)

    @property
    def content_dir(self) -> Path:
        self.validate()
        return content_dir_for(self.output_root, self.project_name)

    @property
    def mapping_path(self) -> Path:
        self.validate()
        return mapping_path_for(self.output_root, self.project_name)
