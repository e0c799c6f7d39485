"""Directory scanning for full re-sync uploads."""

import fnmatch
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class LocalFile:
    """Represents a local file with metadata."""

    path: Path
    """Absolute path to the file"""

    relative_path: str
    """Relative path (using forward slashes for cross-platform compatibility)"""

    size: int
    """File size in bytes"""

    mtime: float
    """Last modification time (Unix timestamp)"""

    @classmethod
    def from_path(cls, file_path: Path, base_path: Path) -> "LocalFile":
        """Create LocalFile from a path.

        Args:
            file_path: Absolute path to the file
            base_path: Base path for calculating relative paths

        Returns:
            LocalFile instance
        """
        stat = file_path.stat()
        return cls(
            path=file_path,
            relative_path=file_path.relative_to(base_path).as_posix(),
            size=stat.st_size,
            mtime=stat.st_mtime,
        )


class DirectoryScanner:
    """Scans a directory tree for files matching a name pattern.

    Examples:
        >>> scanner = DirectoryScanner(pattern="*.ktx2")
        >>> files = scanner.scan(Path("/out/proj/server"))
    """

    def __init__(
        self,
        pattern: str = "*",
        recursive: bool = True,
        exclude_dot_files: bool = True,
    ):
        """Initialize directory scanner.

        Args:
            pattern: Glob pattern matched against file names
            recursive: Whether to descend into subdirectories
            exclude_dot_files: Whether to skip files/folders starting with dot
        """
        self.pattern = pattern or "*"
        self.recursive = recursive
        self.exclude_dot_files = exclude_dot_files

    def should_ignore(self, path: Path) -> bool:
        return self.exclude_dot_files and path.name.startswith(".")

    def scan(self, directory: Path, base_path: Optional[Path] = None) -> list[LocalFile]:
        """Scan a directory and return matching files sorted by relative path.

        Args:
            directory: Directory to scan
            base_path: Base path for calculating relative paths (defaults to directory)

        Returns:
            List of LocalFile objects
        """
        if base_path is None:
            base_path = directory

        files: list[LocalFile] = []
        try:
            entries = sorted(directory.iterdir())
        except PermissionError:
            logger.warning(f"Cannot read directory, skipping: {directory}")
            return files

        for item in entries:
            if self.should_ignore(item):
                continue
            if item.is_file():
                if not fnmatch.fnmatch(item.name.lower(), self.pattern.lower()):
                    continue
                try:
                    files.append(LocalFile.from_path(item, base_path))
                except OSError as e:
                    logger.warning(f"Cannot stat {item}, skipping: {e}")
            elif item.is_dir() and self.recursive:
                files.extend(self.scan(item, base_path))

        return files
