"""Skip-vs-upload decision for content-addressed uploads."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..api import B2File


class UploadAction(str, Enum):
    """Actions that can be taken for a file in an upload batch."""

    UPLOAD = "upload"
    """Transfer the local bytes"""

    SKIP = "skip"
    """Remote object already holds the same content"""


@dataclass
class UploadDecision:
    """Represents a decision about whether to transfer a file."""

    action: UploadAction
    """Action to take"""

    reason: str
    """Human-readable reason for this decision"""

    local_hash: str
    """SHA-1 of the local file"""

    remote_file: Optional[B2File] = None
    """Existing remote object (if any)"""


class UploadComparator:
    """Compares a local file hash with the remote object's hash."""

    def __init__(self, skip_existing_files: bool = True):
        """Initialize comparator.

        Args:
            skip_existing_files: If False, every file is transferred
        """
        self.skip_existing_files = skip_existing_files

    def decide(
        self, local_hash: str, remote_file: Optional[B2File]
    ) -> UploadDecision:
        """Decide whether a file needs to be transferred.

        Args:
            local_hash: SHA-1 of the local file
            remote_file: Latest remote version of the same key, if any

        Returns:
            UploadDecision for this file
        """
        if not self.skip_existing_files:
            return UploadDecision(
                action=UploadAction.UPLOAD,
                reason="skipping existing files is disabled",
                local_hash=local_hash,
                remote_file=remote_file,
            )

        if remote_file is None:
            return UploadDecision(
                action=UploadAction.UPLOAD,
                reason="not on server",
                local_hash=local_hash,
            )

        if not remote_file.content_sha1:
            return UploadDecision(
                action=UploadAction.UPLOAD,
                reason="remote hash unknown",
                local_hash=local_hash,
                remote_file=remote_file,
            )

        if remote_file.content_sha1.lower() == local_hash.lower():
            return UploadDecision(
                action=UploadAction.SKIP,
                reason="identical content already uploaded",
                local_hash=local_hash,
                remote_file=remote_file,
            )

        return UploadDecision(
            action=UploadAction.UPLOAD,
            reason="content changed",
            local_hash=local_hash,
            remote_file=remote_file,
        )
