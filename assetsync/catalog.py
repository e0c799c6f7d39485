"""Asset catalog owning models, materials, textures and folder paths.

All upload-status changes go through the catalog so that they are
serialized and observable in one place.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from .exceptions import ParseError
from .models import (
    MaterialResource,
    ModelResource,
    Resource,
    ResourceType,
    TextureResource,
    UploadStatus,
)
from .utils import utc_now

logger = logging.getLogger(__name__)

PROCESSED_STATUS = "Processed"

CatalogListener = Callable[[Resource, str], None]
"""Called with the changed resource and a change name ("uploaded", "reset", ...)"""


@dataclass
class UploadStatusUpdate:
    """Promotion of one resource to Uploaded after a successful transfer."""

    resource_type: ResourceType
    resource_id: int
    content_hash: str
    cdn_url: str
    uploaded_at: Optional[datetime] = None


class AssetCatalog:
    """In-memory catalog of pipeline resources."""

    def __init__(
        self,
        models: Optional[Iterable[ModelResource]] = None,
        materials: Optional[Iterable[MaterialResource]] = None,
        textures: Optional[Iterable[TextureResource]] = None,
        folder_paths: Optional[dict[int, str]] = None,
        project_name: str = "",
    ) -> None:
        self.models: list[ModelResource] = list(models or [])
        self.materials: list[MaterialResource] = list(materials or [])
        self.textures: list[TextureResource] = list(textures or [])
        self.folder_paths: dict[int, str] = dict(folder_paths or {})
        self.project_name = project_name
        self._lock = threading.RLock()
        self._listeners: list[CatalogListener] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_resources(self) -> Iterator[Resource]:
        yield from self.models
        yield from self.materials
        yield from self.textures

    def _collection(self, resource_type: ResourceType) -> list:
        if resource_type == ResourceType.MODEL:
            return self.models
        if resource_type == ResourceType.MATERIAL:
            return self.materials
        return self.textures

    def get(self, resource_type: ResourceType, resource_id: int) -> Optional[Resource]:
        for resource in self._collection(resource_type):
            if resource.id == resource_id:
                return resource
        return None

    def uploaded_resources(self) -> list[Resource]:
        return [r for r in self.all_resources() if r.is_uploaded]

    def marked_for_export(
        self,
    ) -> tuple[list[ModelResource], list[MaterialResource], list[TextureResource]]:
        return (
            [m for m in self.models if m.export_to_server],
            [m for m in self.materials if m.export_to_server],
            [t for t in self.textures if t.export_to_server],
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def subscribe(self, listener: CatalogListener) -> None:
        self._listeners.append(listener)

    def _notify(self, resource: Resource, change: str) -> None:
        for listener in self._listeners:
            try:
                listener(resource, change)
            except Exception as e:
                logger.error(f"Catalog listener failed for {resource.display_name}: {e}")

    def mark_uploaded(
        self,
        resource: Resource,
        content_hash: str,
        remote_url: str,
        uploaded_at: Optional[datetime] = None,
    ) -> None:
        """Promote a resource to Uploaded.

        Raises:
            ValueError: If hash or URL is empty
        """
        if not content_hash or not remote_url:
            raise ValueError(
                f"cannot mark {resource.display_name} uploaded without hash and URL"
            )
        with self._lock:
            resource.upload_status = UploadStatus.UPLOADED
            resource.uploaded_hash = content_hash
            resource.remote_url = remote_url
            resource.last_uploaded_at = uploaded_at or utc_now()
        self._notify(resource, "uploaded")

    def mark_upload_error(self, resource: Resource) -> None:
        with self._lock:
            resource.upload_status = UploadStatus.ERROR
        self._notify(resource, "error")

    def reset_upload_status(self, resource: Resource) -> bool:
        """Clear status, hash, URL and timestamp together.

        Returns:
            True if the resource had any upload state to clear
        """
        with self._lock:
            had_state = bool(
                resource.upload_status
                or resource.uploaded_hash
                or resource.remote_url
                or resource.last_uploaded_at
            )
            resource.clear_upload_state()
        if had_state:
            self._notify(resource, "reset")
        return had_state

    def set_export_flag(self, resources: Iterable[Resource], value: bool = True) -> int:
        """Set ``export_to_server`` on resources. Returns how many changed."""
        changed_resources = []
        with self._lock:
            for resource in resources:
                if resource.export_to_server != value:
                    resource.export_to_server = value
                    changed_resources.append(resource)
        for resource in changed_resources:
            self._notify(resource, "marked" if value else "unmarked")
        return len(changed_resources)

    def clear_export_marks(self) -> int:
        return self.set_export_flag(self.all_resources(), False)

    def mark_processed(self, resource_type: ResourceType, resource_id: int) -> bool:
        """Record a successful export of a resource."""
        resource = self.get(resource_type, resource_id)
        if resource is None:
            return False
        with self._lock:
            resource.status = PROCESSED_STATUS
        self._notify(resource, "processed")
        return True

    def apply_upload_statuses(self, updates: Iterable[UploadStatusUpdate]) -> int:
        """Apply promotions produced by upload correlation.

        Returns:
            Number of resources marked Uploaded
        """
        applied = 0
        for update in updates:
            resource = self.get(update.resource_type, update.resource_id)
            if resource is None:
                logger.warning(
                    f"Upload result for unknown {update.resource_type.value} "
                    f"{update.resource_id}"
                )
                continue
            self.mark_uploaded(
                resource, update.content_hash, update.cdn_url, update.uploaded_at
            )
            applied += 1
        return applied

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectName": self.project_name,
            "folders": {str(k): v for k, v in self.folder_paths.items()},
            "models": [m.to_dict() for m in self.models],
            "materials": [m.to_dict() for m in self.materials],
            "textures": [t.to_dict() for t in self.textures],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "AssetCatalog":
        if not isinstance(data, dict):
            raise ParseError("catalog snapshot must be a JSON object")
        try:
            return cls(
                models=[ModelResource.from_dict(d) for d in data.get("models", [])],
                materials=[
                    MaterialResource.from_dict(d) for d in data.get("materials", [])
                ],
                textures=[
                    TextureResource.from_dict(d) for d in data.get("textures", [])
                ],
                folder_paths={
                    int(k): v for k, v in (data.get("folders") or {}).items()
                },
                project_name=data.get("projectName") or "",
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ParseError(f"invalid catalog snapshot: {e}") from e

    @classmethod
    def load(cls, path: Union[str, Path]) -> "AssetCatalog":
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except OSError as e:
            raise ParseError(f"cannot read catalog {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ParseError(f"malformed catalog {path}: {e}") from e
        return cls.from_dict(data)

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            data = self.to_dict()
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
