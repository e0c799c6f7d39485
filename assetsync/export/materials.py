"""Material instance JSON generation."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..models import MaterialResource
from ..utils import safe_file_name
from .tools import PackingMode

logger = logging.getLogger(__name__)

# Material map field -> JSON texture slot
TEXTURE_SLOTS: dict[str, str] = {
    "diffuse_map_id": "diffuseMap",
    "normal_map_id": "normalMap",
    "specular_map_id": "specularMap",
    "emissive_map_id": "emissiveMap",
    "opacity_map_id": "opacityMap",
    "gloss_map_id": "glossMap",
    "metalness_map_id": "metalnessMap",
    "ao_map_id": "aoMap",
}

# Slots replaced by a packed texture, per packing mode
PACKED_SLOTS: dict[PackingMode, tuple[str, ...]] = {
    PackingMode.OG: ("ao_map_id", "gloss_map_id"),
    PackingMode.OGM: ("ao_map_id", "gloss_map_id", "metalness_map_id"),
}


def material_file_name(material: MaterialResource) -> str:
    return safe_file_name(material.name or f"mat_{material.id}") + ".json"


def _color(value: Optional[list[float]]) -> Optional[list[float]]:
    if not value:
        return None
    color = [float(c) for c in value[:3]]
    return color + [0.0] * (3 - len(color))


def build_material_json(
    material: MaterialResource,
    master: str,
    texture_refs: Optional[dict[int, str]] = None,
    packed: Optional[tuple[PackingMode, str]] = None,
) -> dict[str, Any]:
    """Build the material instance document.

    Args:
        material: Source material
        master: Name of the master material to instantiate
        texture_refs: Texture ID -> path relative to the material JSON. IDs
            without an entry are written as the numeric ID.
        packed: Packing mode and relative path of the material's packed
            texture, which then replaces the individual channel maps

    Returns:
        JSON-serializable dict with ``master``, ``params`` and ``textures``
    """
    texture_refs = texture_refs or {}
    params = {
        "diffuse": _color(material.diffuse),
        "metalness": material.metalness if material.use_metalness else None,
        "gloss": material.glossiness,
        "emissive": _color(material.emissive),
        "emissiveIntensity": material.emissive_intensity,
        "opacity": material.opacity,
        "alphaTest": material.alpha_test,
        "bumpiness": material.bumpiness,
        "useMetalness": True if material.use_metalness else None,
    }

    replaced: tuple[str, ...] = ()
    textures: dict[str, Any] = {}
    if packed is not None:
        mode, packed_ref = packed
        replaced = PACKED_SLOTS[mode]
        textures[f"{mode.value}Map"] = packed_ref

    for map_field, slot in TEXTURE_SLOTS.items():
        if map_field in replaced:
            continue
        texture_id = getattr(material, map_field)
        if texture_id is None:
            continue
        textures[slot] = texture_refs.get(texture_id, texture_id)

    return {
        "master": master,
        "params": {k: v for k, v in params.items() if v is not None},
        "textures": textures,
    }


def write_material_json(document: dict[str, Any], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2, ensure_ascii=False)
    logger.debug(f"Wrote material JSON: {output_path}")
    return output_path
