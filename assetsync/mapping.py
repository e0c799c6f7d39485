"""The mapping document correlating resource IDs with exported files.

Written once per export run at ``<output_root>/<project>/server/mapping.json``
and read back to translate upload results into resource status updates.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import ParseError
from .models import ResourceType

logger = logging.getLogger(__name__)


@dataclass
class LodEntry:
    file: str


@dataclass
class ModelEntry:
    path: str
    lods: list[LodEntry] = field(default_factory=list)


def normalize_relative_path(path: str) -> str:
    """Lower-case and forward-slash a relative path for lookups."""
    return path.replace("\\", "/").lstrip("/").lower()


@dataclass
class MappingDocument:
    """Resource ID to relative path mapping for one export run."""

    models: dict[int, ModelEntry] = field(default_factory=dict)
    materials: dict[int, str] = field(default_factory=dict)
    textures: dict[int, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.models or self.materials or self.textures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "Models": {
                str(model_id): {
                    "Path": entry.path,
                    "Lods": [{"File": lod.file} for lod in entry.lods],
                }
                for model_id, entry in self.models.items()
            },
            "Materials": {str(k): v for k, v in self.materials.items()},
            "Textures": {str(k): v for k, v in self.textures.items()},
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MappingDocument":
        """Build a document from parsed JSON.

        PascalCase keys are canonical; camelCase keys are accepted as well.

        Raises:
            ParseError: If the structure does not match the mapping format
        """
        if not isinstance(data, dict):
            raise ParseError("mapping document must be a JSON object")

        doc = cls()
        try:
            for key, value in _section(data, "Models").items():
                if not isinstance(value, dict):
                    raise ParseError(f"model entry {key!r} must be an object")
                lods = value.get("Lods", value.get("lods")) or []
                doc.models[int(key)] = ModelEntry(
                    path=_require_str(value.get("Path", value.get("path")), key),
                    lods=[
                        LodEntry(file=_require_str(lod.get("File", lod.get("file")), key))
                        for lod in lods
                    ],
                )
            for key, value in _section(data, "Materials").items():
                doc.materials[int(key)] = _require_str(value, key)
            for key, value in _section(data, "Textures").items():
                doc.textures[int(key)] = _require_str(value, key)
        except (ValueError, TypeError, AttributeError) as e:
            raise ParseError(f"invalid mapping document: {e}") from e
        return doc

    def save(self, path: Union[str, Path]) -> Path:
        """Write the document as UTF-8 JSON, replacing any previous file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info(f"Wrote mapping document: {path}")
        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "MappingDocument":
        """Read a mapping document.

        Raises:
            ParseError: If the file is missing, unreadable or malformed
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise ParseError(f"cannot read mapping document {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ParseError(f"malformed mapping document {path}: {e}") from e
        return cls.from_dict(data)

    def build_reverse_index(self) -> dict[str, tuple[int, ResourceType]]:
        """Map each normalized relative path to its resource.

        Model LOD files point back at the model that owns them.
        """
        index: dict[str, tuple[int, ResourceType]] = {}
        for model_id, entry in self.models.items():
            if entry.path:
                index[normalize_relative_path(entry.path)] = (
                    model_id,
                    ResourceType.MODEL,
                )
            for lod in entry.lods:
                if lod.file:
                    index.setdefault(
                        normalize_relative_path(lod.file),
                        (model_id, ResourceType.MODEL),
                    )
        for material_id, material_path in self.materials.items():
            if material_path:
                index[normalize_relative_path(material_path)] = (
                    material_id,
                    ResourceType.MATERIAL,
                )
        for texture_id, texture_path in self.textures.items():
            if texture_path:
                index[normalize_relative_path(texture_path)] = (
                    texture_id,
                    ResourceType.TEXTURE,
                )
        return index


def remote_to_relative(remote_path: str, project_name: Optional[str]) -> str:
    """Reduce a remote object key to a path relative to the server root.

    Examples:
        >>> remote_to_relative("proj/assets/content/tex_07.ktx2", "proj")
        'assets/content/tex_07.ktx2'
        >>> remote_to_relative("proj/content/tex_07.ktx2", "proj")
        'assets/content/tex_07.ktx2'
    """
    relative = normalize_relative_path(remote_path)
    if project_name:
        prefix = project_name.lower().strip("/") + "/"
        if relative.startswith(prefix):
            relative = relative[len(prefix) :]
    if relative.startswith("content/"):
        relative = "assets/" + relative
    return relative


def lookup_remote_path(
    index: dict[str, tuple[int, ResourceType]],
    remote_path: str,
    project_name: Optional[str],
) -> Optional[tuple[int, ResourceType]]:
    """Find the resource that produced an uploaded object, if any."""
    return index.get(remote_to_relative(remote_path, project_name))


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    camel = name[0].lower() + name[1:]
    section = data.get(name, data.get(camel))
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ParseError(f"'{name}' must be an object")
    return section


def _require_str(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ParseError(f"path for entry {key!r} must be a string")
    return value
