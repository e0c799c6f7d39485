"""Resolve related models, materials and textures.

Assets are linked by three independent heuristics, any of which is enough:

1. the model and the material live in the same folder (parent ID),
2. the material's folder lies inside the model's folder,
3. the names share a base after stripping material suffixes.

The functions here are pure: they only read the resources passed in.
"""

import logging
from collections.abc import Iterable, Mapping
from pathlib import PurePath
from typing import Optional

from .models import MaterialResource, ModelResource, Resource, TextureResource

logger = logging.getLogger(__name__)

MATERIAL_SUFFIXES: tuple[str, ...] = ("_mat", "_material", "_mtl")


def extract_base_name(name: Optional[str]) -> str:
    """Strip the extension and one known material suffix from a name.

    Examples:
        >>> extract_base_name("chair_mat")
        'chair'
        >>> extract_base_name("Chair_MTL.json")
        'Chair'
        >>> extract_base_name("")
        ''
    """
    if not name:
        return ""
    base_name = PurePath(name).stem if "." in name else name
    lowered = base_name.lower()
    for suffix in MATERIAL_SUFFIXES:
        if lowered.endswith(suffix):
            return base_name[: -len(suffix)]
    return base_name


def folder_path_of(
    resource: Resource, folder_paths: Mapping[int, str]
) -> Optional[str]:
    """Return the folder path of a resource, if its parent is known."""
    if not resource.parent_folder_id:
        return None
    return folder_paths.get(resource.parent_folder_id) or None


def shares_parent(model: ModelResource, material: MaterialResource) -> bool:
    return (
        model.parent_folder_id is not None
        and model.parent_folder_id == material.parent_folder_id
    )


def folder_contains(
    model: ModelResource,
    material: MaterialResource,
    folder_paths: Mapping[int, str],
) -> bool:
    """True if the material's folder path starts with the model's (case-insensitive)."""
    model_folder = folder_path_of(model, folder_paths)
    material_folder = folder_path_of(material, folder_paths)
    if not model_folder or not material_folder:
        return False
    return material_folder.lower().startswith(model_folder.lower())


def names_match(model_name: Optional[str], material_name: Optional[str]) -> bool:
    """True if either base name is a case-insensitive prefix of the other."""
    model_base = extract_base_name(model_name).lower()
    material_base = extract_base_name(material_name).lower()
    if not model_base or not material_base:
        return False
    return model_base.startswith(material_base) or material_base.startswith(
        model_base
    )


def is_related(
    model: ModelResource,
    material: MaterialResource,
    folder_paths: Mapping[int, str],
) -> bool:
    return (
        shares_parent(model, material)
        or folder_contains(model, material, folder_paths)
        or names_match(model.name, material.name)
    )


def material_texture_ids(material: MaterialResource) -> set[int]:
    """IDs referenced by any of the material's eight texture maps."""
    return set(material.texture_map_ids().values())


def textures_for_materials(
    materials: Iterable[MaterialResource],
    all_textures: Iterable[TextureResource],
) -> set[TextureResource]:
    """Return the existing textures referenced by the given materials."""
    wanted: set[int] = set()
    for material in materials:
        wanted |= material_texture_ids(material)
    return {texture for texture in all_textures if texture.id in wanted}


def resolve_from_models(
    models: Iterable[ModelResource],
    all_materials: Iterable[MaterialResource],
    all_textures: Iterable[TextureResource],
    folder_paths: Mapping[int, str],
) -> tuple[set[MaterialResource], set[TextureResource]]:
    """Find the materials and textures that belong to the given models.

    Args:
        models: Anchor models
        all_materials: Every material in the catalog
        all_textures: Every texture in the catalog
        folder_paths: Folder ID to path map

    Returns:
        Tuple of (related materials, textures referenced by those materials)
    """
    models = list(models)
    candidates = list(all_materials)
    related_materials: set[MaterialResource] = set()

    for model in models:
        for material in candidates:
            if material in related_materials:
                continue
            if is_related(model, material, folder_paths):
                related_materials.add(material)

    related_textures = textures_for_materials(related_materials, all_textures)
    logger.debug(
        f"Resolved {len(models)} models -> {len(related_materials)} materials, "
        f"{len(related_textures)} textures"
    )
    return related_materials, related_textures


def resolve_from_materials(
    materials: Iterable[MaterialResource],
    all_models: Iterable[ModelResource],
    folder_paths: Mapping[int, str],
) -> set[ModelResource]:
    """Find the models that the given materials belong to."""
    materials = list(materials)
    candidates = list(all_models)
    related_models: set[ModelResource] = set()

    for material in materials:
        for model in candidates:
            if model in related_models:
                continue
            if is_related(model, material, folder_paths):
                related_models.add(model)

    logger.debug(f"Resolved {len(materials)} materials -> {len(related_models)} models")
    return related_models
