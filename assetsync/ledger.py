"""Durable upload ledger backed by SQLite.

One row per remote path. Saving a record for a path that already exists
replaces the previous row, so re-uploads never duplicate entries.
"""

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Optional, Union

from .exceptions import PersistenceError
from .models import RecordStatus, ResourceType, UploadRecord
from .utils import format_timestamp, parse_iso_timestamp, utc_now

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS upload_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    local_path TEXT NOT NULL,
    remote_path TEXT NOT NULL UNIQUE,
    content_hash TEXT NOT NULL,
    content_length INTEGER DEFAULT 0,
    uploaded_at TEXT,
    cdn_url TEXT DEFAULT '',
    status TEXT NOT NULL DEFAULT 'Uploaded',
    file_id TEXT,
    project_name TEXT,
    resource_id INTEGER,
    resource_type TEXT,
    error_message TEXT,
    verified_at TEXT
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE INDEX IF NOT EXISTS idx_upload_records_local ON upload_records(local_path);
CREATE INDEX IF NOT EXISTS idx_upload_records_project ON upload_records(project_name);
CREATE INDEX IF NOT EXISTS idx_upload_records_resource
    ON upload_records(resource_type, resource_id);
"""

_COLUMNS = (
    "local_path",
    "remote_path",
    "content_hash",
    "content_length",
    "uploaded_at",
    "cdn_url",
    "status",
    "file_id",
    "project_name",
    "resource_id",
    "resource_type",
    "error_message",
    "verified_at",
)


class UploadLedger:
    """SQLite store of upload records keyed by remote path.

    Each thread gets its own connection. The database runs in WAL mode so
    readers never block on the writer; writes are serialized by a lock.
    """

    def __init__(self, db_path: Union[str, Path]) -> None:
        """Open (and create if needed) the ledger database.

        Args:
            db_path: Database file, usually ~/.config/assetsync/upload_state.db

        Raises:
            PersistenceError: If the database cannot be created
        """
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._migrate()
        except (OSError, sqlite3.Error) as e:
            raise PersistenceError(
                f"Failed to open upload ledger {self._db_path}: {e}"
            ) from e

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if getattr(self._local, "connection", None) is None:
            conn = sqlite3.connect(str(self._db_path), timeout=30)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.connection = conn
        return self._local.connection

    def _migrate(self) -> None:
        conn = self._get_connection()
        conn.executescript(SCHEMA_SQL)
        row = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            conn.commit()

    def close(self) -> None:
        """Close current thread's connection."""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_upload(self, record: UploadRecord) -> None:
        """Insert or replace the record for ``record.remote_path``.

        Raises:
            PersistenceError: On any database or I/O failure
        """
        values = _record_to_row(record)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        sql = (
            f"INSERT OR REPLACE INTO upload_records ({', '.join(_COLUMNS)}) "
            f"VALUES ({placeholders})"
        )
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute(sql, values)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(
                    f"Failed to save upload record for {record.remote_path}: {e}"
                ) from e
        logger.debug(f"Ledger: saved {record.remote_path} ({record.status.value})")

    def mark_deleted(self, remote_path: str) -> bool:
        """Flag a record as deleted on the server, keeping it as history.

        Returns:
            True if a record existed for the path
        """
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE upload_records SET status = ?, verified_at = ? "
                    "WHERE lower(remote_path) = lower(?)",
                    (
                        RecordStatus.DELETED.value,
                        format_timestamp(utc_now()),
                        remote_path,
                    ),
                )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise PersistenceError(
                    f"Failed to mark {remote_path} deleted: {e}"
                ) from e
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[UploadRecord]:
        try:
            rows = self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to query upload ledger: {e}") from e
        return [_row_to_record(row) for row in rows]

    def _fetchone(self, sql: str, params: tuple[Any, ...]) -> Optional[UploadRecord]:
        records = self._fetchall(sql + " LIMIT 1", params)
        return records[0] if records else None

    def query(self, remote_path: str) -> Optional[UploadRecord]:
        """Get the record for a remote path."""
        return self._fetchone(
            "SELECT * FROM upload_records WHERE remote_path = ?", (remote_path,)
        )

    def get_by_local_path(self, local_path: Union[str, Path]) -> Optional[UploadRecord]:
        """Get the most recent record uploaded from a local file."""
        return self._fetchone(
            "SELECT * FROM upload_records WHERE local_path = ? "
            "ORDER BY uploaded_at DESC",
            (str(local_path),),
        )

    def get_by_resource(
        self, resource_type: ResourceType, resource_id: int
    ) -> list[UploadRecord]:
        return self._fetchall(
            "SELECT * FROM upload_records WHERE resource_type = ? AND resource_id = ? "
            "ORDER BY remote_path",
            (resource_type.value, resource_id),
        )

    def get_by_project(self, project_name: str) -> list[UploadRecord]:
        return self._fetchall(
            "SELECT * FROM upload_records WHERE project_name = ? ORDER BY remote_path",
            (project_name,),
        )

    def get_all(self) -> list[UploadRecord]:
        return self._fetchall("SELECT * FROM upload_records ORDER BY remote_path")

    def count(self) -> int:
        try:
            row = self._get_connection().execute(
                "SELECT COUNT(*) FROM upload_records"
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to query upload ledger: {e}") from e
        return int(row[0])


def _record_to_row(record: UploadRecord) -> tuple[Any, ...]:
    return (
        record.local_path,
        record.remote_path,
        record.content_hash,
        record.content_length,
        format_timestamp(record.uploaded_at),
        record.cdn_url,
        record.status.value,
        record.file_id,
        record.project_name,
        record.resource_id,
        record.resource_type.value if record.resource_type else None,
        record.error_message,
        format_timestamp(record.verified_at),
    )


def _row_to_record(row: sqlite3.Row) -> UploadRecord:
    resource_type = row["resource_type"]
    return UploadRecord(
        local_path=row["local_path"],
        remote_path=row["remote_path"],
        content_hash=row["content_hash"],
        content_length=row["content_length"] or 0,
        uploaded_at=parse_iso_timestamp(row["uploaded_at"]),
        cdn_url=row["cdn_url"] or "",
        status=RecordStatus(row["status"]),
        file_id=row["file_id"],
        project_name=row["project_name"],
        resource_id=row["resource_id"],
        resource_type=ResourceType(resource_type) if resource_type else None,
        error_message=row["error_message"],
        verified_at=parse_iso_timestamp(row["verified_at"]),
    )
