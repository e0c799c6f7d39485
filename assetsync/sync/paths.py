"""Remote object key construction for exported files.

Keys follow ``{project_name}/{path relative to the server root}``. The
server root is the ``server`` directory two levels above the content
folder (``.../server/assets/content``).
"""

import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from ..exceptions import ConfigurationError
from ..models import ResourceType
from ..utils import MAPPING_FILE_NAME

logger = logging.getLogger(__name__)


@dataclass
class UploadItem:
    """One file scheduled for upload."""

    local_path: Path
    remote_path: str
    content_type: Optional[str] = None
    resource_id: Optional[int] = None
    resource_type: Optional[ResourceType] = None


def content_dir_for(output_root: Union[str, Path], project_name: str) -> Path:
    """Return ``{output_root}/{project}/server/assets/content``."""
    return server_root_for(output_root, project_name) / "assets" / "content"


def server_root_for(output_root: Union[str, Path], project_name: str) -> Path:
    return Path(output_root) / project_name / "server"


def server_root_from_content(content_dir: Union[str, Path]) -> Path:
    """Walk two levels up from the content folder to the server root."""
    return Path(content_dir).parent.parent


def mapping_path_for(output_root: Union[str, Path], project_name: str) -> Path:
    return server_root_for(output_root, project_name) / MAPPING_FILE_NAME


def build_remote_path(
    local_path: Union[str, Path], server_root: Union[str, Path], project_name: str
) -> str:
    """Build the remote key of a file below the server root.

    Raises:
        ConfigurationError: If the file does not live below the server root

    Examples:
        >>> build_remote_path("/out/proj/server/assets/content/a.glb",
        ...                   "/out/proj/server", "proj")
        'proj/assets/content/a.glb'
    """
    try:
        relative = os.path.relpath(Path(local_path), Path(server_root))
    except ValueError as e:
        raise ConfigurationError(
            f"{local_path} is not below server root {server_root}"
        ) from e
    relative = relative.replace("\\", "/")
    if relative.startswith("../") or relative == "..":
        raise ConfigurationError(f"{local_path} is not below server root {server_root}")
    project = project_name.strip("/")
    return f"{project}/{relative}" if project else relative


def mapping_remote_path(project_name: str) -> str:
    return f"{project_name.strip('/')}/{MAPPING_FILE_NAME}"


def build_upload_items(
    files: Iterable[Union[str, Path]],
    server_root: Union[str, Path],
    project_name: str,
    on_missing_file: Optional[Callable[[Path], None]] = None,
) -> list[UploadItem]:
    """Pair each existing local file with its remote key.

    Files that no longer exist are logged and left out instead of failing
    the whole batch. Duplicate paths are only scheduled once.

    Args:
        files: Local files produced by an export run
        server_root: Server root directory of the project output
        project_name: Project name used as the key prefix
        on_missing_file: Optional callback for each missing file

    Returns:
        Upload items in input order
    """
    items: list[UploadItem] = []
    seen: set[str] = set()
    for file_path in files:
        path = Path(file_path)
        if not path.is_file():
            logger.warning(f"File slated for upload is missing, skipping: {path}")
            if on_missing_file is not None:
                on_missing_file(path)
            continue
        remote_path = build_remote_path(path, server_root, project_name)
        if remote_path in seen:
            continue
        seen.add(remote_path)
        items.append(UploadItem(local_path=path, remote_path=remote_path))
    return items
