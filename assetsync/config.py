"""Configuration management for the asset pipeline.

Values are read from environment variables first and then from a
``KEY=VALUE`` file stored at ``~/.config/assetsync/config``.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .exceptions import ConfigurationError
from .utils import (
    DEFAULT_MAX_CONCURRENT_UPLOADS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
)

logger = logging.getLogger(__name__)

ENV_KEY_ID = "ASSETSYNC_B2_KEY_ID"
ENV_APPLICATION_KEY = "ASSETSYNC_B2_APPLICATION_KEY"
ENV_BUCKET_NAME = "ASSETSYNC_B2_BUCKET_NAME"
ENV_BUCKET_ID = "ASSETSYNC_B2_BUCKET_ID"
ENV_PATH_PREFIX = "ASSETSYNC_B2_PATH_PREFIX"
ENV_CDN_BASE_URL = "ASSETSYNC_CDN_BASE_URL"
ENV_PROJECTS_FOLDER = "ASSETSYNC_PROJECTS_FOLDER"
ENV_MAX_CONCURRENT_UPLOADS = "ASSETSYNC_MAX_CONCURRENT_UPLOADS"
ENV_FBX2GLTF_PATH = "ASSETSYNC_FBX2GLTF_PATH"
ENV_GLTFPACK_PATH = "ASSETSYNC_GLTFPACK_PATH"
ENV_KTX_PATH = "ASSETSYNC_KTX_PATH"
ENV_ORM_PACKER_PATH = "ASSETSYNC_ORM_PACKER_PATH"


@dataclass
class B2Settings:
    """Credentials and transfer settings for a Backblaze B2 bucket."""

    key_id: str = ""
    application_key: str = ""
    bucket_name: str = ""
    bucket_id: Optional[str] = None
    path_prefix: str = ""
    """Prefix prepended to every object key (e.g. "projects/game")"""

    cdn_base_url: str = ""
    """Base URL used to build public links (e.g. "https://cdn.example.com")"""

    max_concurrent_uploads: int = DEFAULT_MAX_CONCURRENT_UPLOADS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_delay: float = DEFAULT_RETRY_DELAY
    timeout: float = 300.0
    skip_existing_files: bool = True
    """Skip the transfer when the remote object already has the same hash"""

    def missing_fields(self) -> list[str]:
        """Return the names of required credential fields that are empty."""
        missing = []
        if not self.key_id:
            missing.append("key_id")
        if not self.application_key:
            missing.append("application_key")
        if not self.bucket_name:
            missing.append("bucket_name")
        return missing

    @property
    def is_valid(self) -> bool:
        return not self.missing_fields()

    def validate(self) -> None:
        """Fail fast when a required credential is missing.

        Raises:
            ConfigurationError: If key id, application key or bucket name
                is not set
        """
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                "Backblaze B2 credentials not configured (missing: "
                f"{', '.join(missing)}). Run 'assetsync init' or set the "
                "ASSETSYNC_B2_* environment variables."
            )

    def build_full_path(self, relative_path: str) -> str:
        """Build the full object key for a path relative to the bucket prefix.

        The prefix is not added twice when the path already starts with it.
        """
        normalized_path = relative_path.replace("\\", "/").lstrip("/")
        if not self.path_prefix:
            return normalized_path
        normalized_prefix = self.path_prefix.rstrip("/")
        lowered = normalized_path.lower()
        if lowered == normalized_prefix.lower() or lowered.startswith(
            normalized_prefix.lower() + "/"
        ):
            return normalized_path
        return f"{normalized_prefix}/{normalized_path}"

    def build_cdn_url(self, relative_path: str) -> str:
        """Build the public URL for an object."""
        full_path = self.build_full_path(relative_path)
        if not self.cdn_base_url:
            return full_path
        return f"{self.cdn_base_url.rstrip('/')}/{full_path}"


class Config:
    """Configuration manager for assetsync."""

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration.

        Args:
            config_dir: Directory holding the config file and ledger.
                Defaults to ~/.config/assetsync
        """
        self.config_dir = config_dir or Path.home() / ".config" / "assetsync"
        self.config_file = self.config_dir / "config"
        self._file_values: dict[str, str] = {}
        self._load_config_file()

    def _load_config_file(self) -> None:
        """Read KEY=VALUE pairs from the config file if it exists."""
        if not self.config_file.exists():
            return
        try:
            with open(self.config_file, encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith("#") or "=" not in line:
                        continue
                    key, value = line.split("=", 1)
                    self._file_values[key.strip()] = value.strip()
        except OSError as e:
            logger.warning(f"Failed to read config file {self.config_file}: {e}")

    def _get(self, key: str, default: str = "") -> str:
        value = os.environ.get(key)
        if value:
            return value
        return self._file_values.get(key, default)

    def _get_int(self, key: str, default: int) -> int:
        raw = self._get(key)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring non-integer value for {key}: {raw!r}")
            return default

    @property
    def key_id(self) -> str:
        return self._get(ENV_KEY_ID)

    @property
    def application_key(self) -> str:
        return self._get(ENV_APPLICATION_KEY)

    @property
    def bucket_name(self) -> str:
        return self._get(ENV_BUCKET_NAME)

    @property
    def bucket_id(self) -> Optional[str]:
        return self._get(ENV_BUCKET_ID) or None

    @property
    def projects_folder(self) -> Optional[Path]:
        """Root folder that export output is written below."""
        value = self._get(ENV_PROJECTS_FOLDER)
        return Path(value).expanduser() if value else None

    @property
    def ledger_path(self) -> Path:
        return self.config_dir / "upload_state.db"

    def tool_path(self, env_key: str, default: str) -> str:
        """Return the configured executable for an external tool."""
        return self._get(env_key, default)

    def is_configured(self) -> bool:
        """Check whether B2 credentials are available."""
        return self.b2_settings().is_valid

    def b2_settings(self) -> B2Settings:
        """Build B2 settings from the environment and config file."""
        return B2Settings(
            key_id=self.key_id,
            application_key=self.application_key,
            bucket_name=self.bucket_name,
            bucket_id=self.bucket_id,
            path_prefix=self._get(ENV_PATH_PREFIX),
            cdn_base_url=self._get(ENV_CDN_BASE_URL),
            max_concurrent_uploads=self._get_int(
                ENV_MAX_CONCURRENT_UPLOADS, DEFAULT_MAX_CONCURRENT_UPLOADS
            ),
        )

    def require_projects_folder(self) -> Path:
        """Return the projects folder or fail fast.

        Raises:
            ConfigurationError: If no projects folder is configured
        """
        folder = self.projects_folder
        if folder is None:
            raise ConfigurationError(
                "Projects folder not configured. Set "
                f"{ENV_PROJECTS_FOLDER} or run 'assetsync init'."
            )
        return folder

    def save(self, values: dict[str, str]) -> None:
        """Merge values into the config file.

        Args:
            values: Mapping of environment-style keys to values
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self._file_values.update({k: v for k, v in values.items() if v})
        with open(self.config_file, "w", encoding="utf-8") as f:
            f.write("# assetsync configuration\n")
            for key in sorted(self._file_values):
                f.write(f"{key}={self._file_values[key]}\n")
        # Restrict permissions: the file holds the application key
        self.config_file.chmod(0o600)

    def get_config_path(self) -> Path:
        return self.config_file


config = Config()
