"""Utility functions for the asset pipeline."""

import hashlib
import mimetypes
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

# =============================================================================
# Constants for upload operations
# =============================================================================

# Per-file attempts (first try included) for transient errors
DEFAULT_MAX_ATTEMPTS: int = 5
DEFAULT_RETRY_DELAY: float = 2.0  # seconds

# Parallel transfers per batch
DEFAULT_MAX_CONCURRENT_UPLOADS: int = 4

# Read buffer for hashing
HASH_CHUNK_SIZE: int = 1024 * 1024

# Page size for bucket listings (B2 maximum is 10000)
DEFAULT_LIST_PAGE_SIZE: int = 1000

MAPPING_FILE_NAME: str = "mapping.json"

# Content types for pipeline artifacts that mimetypes does not know
CONTENT_TYPES: dict[str, str] = {
    ".json": "application/json",
    ".glb": "model/gltf-binary",
    ".gltf": "model/gltf+json",
    ".ktx2": "image/ktx2",
    ".basis": "image/basis",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".bin": "application/octet-stream",
    ".txt": "text/plain",
    ".html": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
}


# =============================================================================
# Hash calculation utilities
# =============================================================================


def compute_file_sha1(path: Union[str, Path]) -> str:
    """Compute the SHA-1 content hash of a file.

    B2 stores the SHA-1 of every object, so this is the dedup key.

    Args:
        path: Path to the file

    Returns:
        Lower-case hex digest

    Raises:
        OSError: If the file cannot be read
    """
    sha1 = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            sha1.update(chunk)
    return sha1.hexdigest()


def guess_content_type(path: Union[str, Path]) -> str:
    """Guess the content type of a file from its extension.

    Examples:
        >>> guess_content_type("assets/content/chair.glb")
        'model/gltf-binary'
        >>> guess_content_type("textures/wood.KTX2")
        'image/ktx2'
    """
    suffix = Path(path).suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or "application/octet-stream"


# =============================================================================
# Timestamp utilities
# =============================================================================


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_b2_timestamp(millis: Optional[int]) -> Optional[datetime]:
    """Convert a B2 ``uploadTimestamp`` (milliseconds since epoch) to UTC."""
    if millis is None:
        return None
    try:
        return datetime.fromtimestamp(int(millis) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_iso_timestamp(timestamp_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO format timestamp as stored in the ledger and catalog.

    Args:
        timestamp_str: ISO format timestamp string (e.g., "2025-01-15T10:30:00Z")

    Returns:
        Timezone-aware datetime or None if parsing fails
    """
    if not timestamp_str:
        return None
    if timestamp_str.endswith("Z"):
        timestamp_str = timestamp_str[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(timestamp_str)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# =============================================================================
# Size formatting utilities
# =============================================================================


def format_size(size_bytes: int) -> str:
    """Format file size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string (e.g., "1.5 MB", "256 B")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / 1024 / 1024:.1f} MB"
    else:
        return f"{size_bytes / 1024 / 1024 / 1024:.1f} GB"


def format_duration(seconds: float) -> str:
    """Format a duration as ``"1m 05s"`` or ``"4.2s"``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m {secs:02d}s"


# =============================================================================
# Path utilities
# =============================================================================

_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')


def safe_file_name(name: str) -> str:
    """Replace characters that are invalid in file names with underscores.

    Examples:
        >>> safe_file_name('chair: "red"')
        'chair_ _red_'
    """
    return _INVALID_NAME_CHARS.sub("_", name).strip() or "_"


def safe_relative_path(path: str) -> str:
    """Sanitize each segment of a folder path, dropping empty and dot segments."""
    parts = [
        safe_file_name(part)
        for part in path.replace("\\", "/").split("/")
        if part and part not in (".", "..")
    ]
    return "/".join(parts)
