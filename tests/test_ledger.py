"""Tests for the SQLite upload ledger."""

from datetime import datetime, timezone

import pytest

from assetsync.exceptions import PersistenceError
from assetsync.ledger import UploadLedger
from assetsync.models import RecordStatus, ResourceType, UploadRecord


def _record(remote_path: str = "proj/assets/content/a.glb", **kwargs) -> UploadRecord:
    values = {
        "local_path": "/out/proj/server/assets/content/a.glb",
        "remote_path": remote_path,
        "content_hash": "a" * 40,
        "content_length": 42,
        "uploaded_at": datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        "cdn_url": f"https://cdn.test/{remote_path}",
        "project_name": "proj",
    }
    values.update(kwargs)
    return UploadRecord(**values)


class TestSaveAndQuery:
    """Tests for writing and reading records."""

    def test_round_trip_preserves_fields(self, ledger):
        record = _record(
            file_id="file-1",
            resource_id=7,
            resource_type=ResourceType.TEXTURE,
        )
        ledger.save_upload(record)

        loaded = ledger.query(record.remote_path)
        assert loaded == record

    def test_query_unknown_path(self, ledger):
        assert ledger.query("proj/missing.glb") is None

    def test_resave_replaces_instead_of_duplicating(self, ledger):
        ledger.save_upload(_record(content_hash="1" * 40))
        ledger.save_upload(_record(content_hash="2" * 40))

        assert ledger.count() == 1
        assert ledger.query("proj/assets/content/a.glb").content_hash == "2" * 40

    def test_same_record_twice_is_idempotent(self, ledger):
        record = _record()
        ledger.save_upload(record)
        ledger.save_upload(record)
        assert ledger.get_all() == [record]

    def test_durable_across_reopen(self, tmp_path):
        db_path = tmp_path / "ledger.db"
        first = UploadLedger(db_path)
        first.save_upload(_record())
        first.close()

        second = UploadLedger(db_path)
        try:
            assert second.query("proj/assets/content/a.glb") is not None
        finally:
            second.close()


class TestLookups:
    """Tests for project, resource and local-path lookups."""

    def test_by_project(self, ledger):
        ledger.save_upload(_record("proj/a.glb"))
        ledger.save_upload(_record("other/b.glb", project_name="other"))
        assert [r.remote_path for r in ledger.get_by_project("proj")] == ["proj/a.glb"]

    def test_by_resource(self, ledger):
        ledger.save_upload(
            _record("proj/m.glb", resource_id=1, resource_type=ResourceType.MODEL)
        )
        ledger.save_upload(
            _record("proj/m_lod1.glb", resource_id=1, resource_type=ResourceType.MODEL)
        )
        ledger.save_upload(
            _record("proj/t.ktx2", resource_id=1, resource_type=ResourceType.TEXTURE)
        )
        records = ledger.get_by_resource(ResourceType.MODEL, 1)
        assert [r.remote_path for r in records] == ["proj/m.glb", "proj/m_lod1.glb"]

    def test_by_local_path(self, ledger):
        record = _record()
        ledger.save_upload(record)
        assert ledger.get_by_local_path(record.local_path) == record


class TestMarkDeleted:
    """Tests for flagging records deleted."""

    def test_keeps_record_as_history(self, ledger):
        ledger.save_upload(_record())
        assert ledger.mark_deleted("PROJ/Assets/Content/A.glb")

        record = ledger.query("proj/assets/content/a.glb")
        assert record.status == RecordStatus.DELETED
        assert record.verified_at is not None
        assert ledger.count() == 1

    def test_unknown_path(self, ledger):
        assert not ledger.mark_deleted("proj/none.glb")


class TestFailures:
    """Tests for persistence failures."""

    def test_unwritable_location_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(PersistenceError):
            UploadLedger(blocker / "ledger.db")

    def test_write_after_table_loss_raises(self, ledger):
        conn = ledger._get_connection()
        conn.execute("DROP TABLE upload_records")
        conn.commit()
        with pytest.raises(PersistenceError):
            ledger.save_upload(_record())
