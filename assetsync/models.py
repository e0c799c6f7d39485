"""Data models for catalog resources and upload records."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from .utils import format_timestamp, parse_iso_timestamp


class ResourceType(str, Enum):
    """Kinds of resources tracked by the catalog."""

    MODEL = "Model"
    MATERIAL = "Material"
    TEXTURE = "Texture"


class UploadStatus(str, Enum):
    """Upload status of a catalog resource.

    ``None`` on a resource means it was never uploaded (or was reset).
    """

    UPLOADED = "Uploaded"
    ERROR = "Error"


class RecordStatus(str, Enum):
    """Status of an upload ledger record."""

    UPLOADED = "Uploaded"
    FAILED = "Failed"
    DELETED = "Deleted"
    """Remote object was removed; the record is kept as history"""


MATERIAL_MAP_FIELDS: tuple[str, ...] = (
    "diffuse_map_id",
    "normal_map_id",
    "specular_map_id",
    "gloss_map_id",
    "metalness_map_id",
    "ao_map_id",
    "emissive_map_id",
    "opacity_map_id",
)


@dataclass(eq=False)
class Resource:
    """Base class for models, materials and textures.

    Resources compare and hash by type and ID so that they can be
    collected in sets while their upload fields change.
    """

    resource_type: ClassVar[ResourceType]

    id: int
    name: str = ""
    parent_folder_id: Optional[int] = None
    export_to_server: bool = False
    upload_status: Optional[UploadStatus] = None
    uploaded_hash: Optional[str] = None
    remote_url: Optional[str] = None
    last_uploaded_at: Optional[datetime] = None
    path: Optional[str] = None
    """Local source file"""

    status: Optional[str] = None
    """Processing status reported by the asset source (e.g. "Processed")"""

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Resource):
            return NotImplemented
        return self.resource_type == other.resource_type and self.id == other.id

    def __hash__(self) -> int:
        return hash((self.resource_type, self.id))

    @property
    def is_uploaded(self) -> bool:
        return self.upload_status == UploadStatus.UPLOADED

    @property
    def display_name(self) -> str:
        return self.name or f"{self.resource_type.value.lower()}_{self.id}"

    def clear_upload_state(self) -> None:
        """Reset all four upload fields together."""
        self.upload_status = None
        self.uploaded_hash = None
        self.remote_url = None
        self.last_uploaded_at = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parentFolderId": self.parent_folder_id,
            "exportToServer": self.export_to_server,
            "uploadStatus": self.upload_status.value if self.upload_status else None,
            "uploadedHash": self.uploaded_hash,
            "remoteUrl": self.remote_url,
            "lastUploadedAt": format_timestamp(self.last_uploaded_at),
            "path": self.path,
            "status": self.status,
        }

    @classmethod
    def _common_kwargs(cls, data: dict[str, Any]) -> dict[str, Any]:
        status = data.get("uploadStatus")
        return {
            "id": int(data["id"]),
            "name": data.get("name") or "",
            "parent_folder_id": data.get("parentFolderId"),
            "export_to_server": bool(data.get("exportToServer", False)),
            "upload_status": UploadStatus(status) if status else None,
            "uploaded_hash": data.get("uploadedHash"),
            "remote_url": data.get("remoteUrl"),
            "last_uploaded_at": parse_iso_timestamp(data.get("lastUploadedAt")),
            "path": data.get("path"),
            "status": data.get("status"),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resource":
        return cls(**cls._common_kwargs(data))


@dataclass(eq=False)
class ModelResource(Resource):
    resource_type: ClassVar[ResourceType] = ResourceType.MODEL


@dataclass(eq=False)
class MaterialResource(Resource):
    """A material with its texture-map references and shading parameters."""

    resource_type: ClassVar[ResourceType] = ResourceType.MATERIAL

    diffuse_map_id: Optional[int] = None
    normal_map_id: Optional[int] = None
    specular_map_id: Optional[int] = None
    gloss_map_id: Optional[int] = None
    metalness_map_id: Optional[int] = None
    ao_map_id: Optional[int] = None
    emissive_map_id: Optional[int] = None
    opacity_map_id: Optional[int] = None

    blend_type: Optional[str] = None
    diffuse: Optional[list[float]] = None
    emissive: Optional[list[float]] = None
    emissive_intensity: Optional[float] = None
    opacity: Optional[float] = None
    alpha_test: Optional[float] = None
    glossiness: Optional[float] = None
    metalness: Optional[float] = None
    use_metalness: bool = False
    bumpiness: Optional[float] = None

    def texture_map_ids(self) -> dict[str, int]:
        """Return the map slots that reference a texture, keyed by field name."""
        ids = {}
        for map_field in MATERIAL_MAP_FIELDS:
            value = getattr(self, map_field)
            if value is not None:
                ids[map_field] = value
        return ids

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        for map_field in MATERIAL_MAP_FIELDS:
            data[_camel(map_field)] = getattr(self, map_field)
        data.update(
            {
                "blendType": self.blend_type,
                "diffuse": self.diffuse,
                "emissive": self.emissive,
                "emissiveIntensity": self.emissive_intensity,
                "opacity": self.opacity,
                "alphaTest": self.alpha_test,
                "glossiness": self.glossiness,
                "metalness": self.metalness,
                "useMetalness": self.use_metalness,
                "bumpiness": self.bumpiness,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MaterialResource":
        kwargs = cls._common_kwargs(data)
        for map_field in MATERIAL_MAP_FIELDS:
            kwargs[map_field] = data.get(_camel(map_field))
        return cls(
            blend_type=data.get("blendType"),
            diffuse=data.get("diffuse"),
            emissive=data.get("emissive"),
            emissive_intensity=data.get("emissiveIntensity"),
            opacity=data.get("opacity"),
            alpha_test=data.get("alphaTest"),
            glossiness=data.get("glossiness"),
            metalness=data.get("metalness"),
            use_metalness=bool(data.get("useMetalness", False)),
            bumpiness=data.get("bumpiness"),
            **kwargs,
        )


@dataclass(eq=False)
class TextureResource(Resource):
    resource_type: ClassVar[ResourceType] = ResourceType.TEXTURE

    texture_type: Optional[str] = None
    """Map role guessed from the name or material slot (e.g. "normal")"""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["textureType"] = self.texture_type
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TextureResource":
        return cls(texture_type=data.get("textureType"), **cls._common_kwargs(data))


def _camel(snake: str) -> str:
    head, *rest = snake.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class UploadRecord:
    """One row of the upload ledger, keyed by ``remote_path``."""

    local_path: str
    remote_path: str
    content_hash: str
    content_length: int = 0
    uploaded_at: Optional[datetime] = None
    cdn_url: str = ""
    status: RecordStatus = RecordStatus.UPLOADED
    file_id: Optional[str] = None
    """Opaque identifier assigned by the object store"""

    project_name: Optional[str] = None
    resource_id: Optional[int] = None
    resource_type: Optional[ResourceType] = None
    error_message: Optional[str] = None
    verified_at: Optional[datetime] = None
    """Last time the object was seen unchanged on the server"""

