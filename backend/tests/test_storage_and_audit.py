"""
Document store contract and audit helper tests.
The GridFS adapter and the audit collection are mocked.
"""
import pytest
import sys
from pathlib import Path
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


def _file_meta(**overrides):
    from services.storage_adapter import FileMetadata

    data = {
        "file_id": "65b9f0c2a1b2c3d4e5f60718",
        "filename": "Fee Reminder_Acme Ltd_2024-01-31.pdf",
        "content_type": "application/pdf",
        "size_bytes": 4,
        "sha256_hash": "abc",
        "upload_timestamp": datetime(2024, 1, 31, tzinfo=timezone.utc),
        "uploaded_by": "u1",
    }
    data.update(overrides)
    return FileMetadata(**data)


class TestDocumentStore:
    """upload_document / get_document_file / template content files"""

    @pytest.mark.asyncio
    async def test_upload_document_success(self):
        from services.storage_adapter import upload_document

        adapter = MagicMock()
        adapter.upload_file = AsyncMock(return_value=_file_meta(metadata={"kind": "letter"}))
        with patch("services.storage_adapter.storage_adapter", adapter):
            result = await upload_document(b"%PDF", {
                "file_name": "Fee Reminder_Acme Ltd_2024-01-31.pdf",
                "mime_type": "application/pdf",
                "uploaded_by": "u1",
                "client_id": "c1",
                "tags": ["letter"],
            })

        assert result["success"] is True
        assert result["document"]["document_id"] == "65b9f0c2a1b2c3d4e5f60718"
        assert result["document"]["upload_timestamp"] == "2024-01-31T00:00:00+00:00"
        kwargs = adapter.upload_file.call_args[1]
        assert kwargs["content_type"] == "application/pdf"
        assert kwargs["uploaded_by"] == "u1"
        assert kwargs["metadata"] == {"client_id": "c1", "tags": ["letter"], "kind": "letter"}

    @pytest.mark.asyncio
    async def test_upload_document_failure_is_reported_not_raised(self):
        from services.storage_adapter import upload_document

        adapter = MagicMock()
        adapter.upload_file = AsyncMock(side_effect=RuntimeError("gridfs unavailable"))
        with patch("services.storage_adapter.storage_adapter", adapter):
            result = await upload_document(b"%PDF", {"file_name": "a.pdf", "mime_type": "application/pdf"})

        assert result == {"success": False, "document": None, "error": "gridfs unavailable"}

    @pytest.mark.asyncio
    async def test_template_content_round_trip_through_adapter(self):
        from services.storage_adapter import store_template_content, load_template_content

        adapter = MagicMock()
        adapter.upload_file = AsyncMock(return_value=_file_meta(file_id="file-9"))
        adapter.download_file = AsyncMock(return_value=("Dear {{clientName}} – £".encode("utf-8"), _file_meta()))
        with patch("services.storage_adapter.storage_adapter", adapter):
            file_id = await store_template_content("Dear {{clientName}} – £", "welcome.md", "tpl_1", uploaded_by="m1")
            content = await load_template_content(file_id)

        assert file_id == "file-9"
        assert content == "Dear {{clientName}} – £"
        kwargs = adapter.upload_file.call_args[1]
        assert kwargs["content_type"] == "text/markdown"
        assert kwargs["metadata"] == {"kind": "template", "template_id": "tpl_1"}
        adapter.download_file.assert_awaited_once_with("file-9")

    @pytest.mark.asyncio
    async def test_invalid_file_id_is_not_found(self):
        from services.storage_adapter import GridFSStorageAdapter, StoredFileNotFoundError

        adapter = GridFSStorageAdapter(bucket_name="letter_documents")
        with pytest.raises(StoredFileNotFoundError):
            await adapter.download_file("not-an-object-id")

    def test_adapter_contract_is_upload_and_download(self):
        from services.storage_adapter import StorageAdapter

        assert StorageAdapter.__abstractmethods__ == frozenset({"upload_file", "download_file"})

    def test_metadata_from_gridfs_document(self):
        from services.storage_adapter import FileMetadata

        meta = FileMetadata.from_gridfs({
            "_id": "65b9f0c2a1b2c3d4e5f60718",
            "filename": "welcome.md",
            "length": 12,
            "metadata": {
                "content_type": "text/markdown",
                "sha256_hash": "h",
                "upload_timestamp": "2024-01-31T09:00:00+00:00",
                "custom_metadata": {"kind": "template"},
            },
        })
        assert meta.size_bytes == 12
        assert meta.content_type == "text/markdown"
        assert meta.upload_timestamp == datetime(2024, 1, 31, 9, tzinfo=timezone.utc)
        assert meta.to_dict()["metadata"] == {"kind": "template"}


class TestAudit:
    """utils.audit"""

    def test_calculate_diff_ignores_volatile_fields(self):
        from utils.audit import calculate_diff

        before = {"name": "Fee Reminder", "version": 1, "file_id": "a", "is_active": True}
        after = {"name": "Fee Reminder v2", "version": 2, "file_id": "b", "is_active": True, "category": "TAX"}
        assert calculate_diff(before, after) == {
            "added": {"category": "TAX"},
            "changed": {"name": {"from": "Fee Reminder", "to": "Fee Reminder v2"}},
        }
        assert calculate_diff({}, {"a": 1}) == {"added": {"a": 1}}
        assert calculate_diff({}, {}) == {}

    @pytest.mark.asyncio
    async def test_create_audit_log_stores_diff(self):
        from utils.audit import create_audit_log
        from models import AuditAction

        db = MagicMock()
        db.audit_logs.insert_one = AsyncMock()
        with patch("utils.audit.database.get_db", return_value=db):
            audit_id = await create_audit_log(
                action=AuditAction.TEMPLATE_UPDATED,
                actor_id="m1",
                resource_type="template",
                resource_id="tpl_1",
                before_state={"name": "A"},
                after_state={"name": "B"},
            )

        doc = db.audit_logs.insert_one.call_args[0][0]
        assert audit_id == doc["audit_id"]
        assert doc["action"] == "TEMPLATE_UPDATED"
        assert doc["metadata"] == {"diff": {"changed": {"name": {"from": "A", "to": "B"}}}}

    @pytest.mark.asyncio
    async def test_audit_failures_never_propagate(self):
        from utils.audit import create_audit_log
        from models import AuditAction

        db = MagicMock()
        db.audit_logs.insert_one = AsyncMock(side_effect=RuntimeError("write concern"))
        with patch("utils.audit.database.get_db", return_value=db):
            assert await create_audit_log(action=AuditAction.LETTER_GENERATED, actor_id="u1") == ""
