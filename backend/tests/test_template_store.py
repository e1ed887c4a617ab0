"""
Template store tests: create/update/delete with copy-on-write versioning,
content loading from the document store and query building.
Uses mocked DB and storage; asserts persisted documents and audit calls.
"""
import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))


def _stored_template(**overrides):
    from models.templates import Template, TemplateCategory
    from models.placeholders import TemplatePlaceholder

    data = {
        "template_id": "tpl_abc",
        "name": "Fee Reminder",
        "description": "Annual fee reminder",
        "category": TemplateCategory.GENERAL,
        "file_name": "fee-reminder.md",
        "file_id": "file-old",
        "placeholders": [TemplatePlaceholder(key="clientName", label="Client Name")],
        "version": 2,
    }
    data.update(overrides)
    return Template(**data).model_dump(mode="json")


def _cursor(docs):
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.to_list = AsyncMock(return_value=docs)
    return cursor


class TestCreateTemplate:
    """New templates: placeholders extracted, content stored, record inserted, audited."""

    @pytest.mark.asyncio
    async def test_create_extracts_placeholders_and_stores_content(self):
        from services.template_store import template_store
        from models.templates import TemplateCreate, TemplateCategory
        from models import AuditAction

        db = MagicMock()
        db.templates.insert_one = AsyncMock()
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.store_template_content", new_callable=AsyncMock) as store, \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock) as audit:
            store.return_value = "file-123"
            template = await template_store.create_template(
                TemplateCreate(
                    name="Engagement Letter",
                    category=TemplateCategory.ENGAGEMENT,
                    content="Dear {{clientName}},\nYour fee is {{serviceFee}}.",
                ),
                user_id="u1",
            )

        assert [p.key for p in template.placeholders] == ["clientName", "serviceFee"]
        assert template.file_id == "file-123"
        assert template.file_name == "engagement-letter.md"
        assert template.version == 1
        assert template.created_by == "u1"
        assert template.metadata.author == "u1"

        store.assert_awaited_once()
        assert store.call_args[0][0] == "Dear {{clientName}},\nYour fee is {{serviceFee}}."
        inserted = db.templates.insert_one.call_args[0][0]
        assert inserted["template_id"] == template.template_id
        assert inserted["category"] == "ENGAGEMENT"
        assert audit.call_args[1]["action"] == AuditAction.TEMPLATE_CREATED

    @pytest.mark.asyncio
    async def test_explicit_placeholders_are_kept(self):
        from services.template_store import template_store
        from models.templates import TemplateCreate
        from models.placeholders import TemplatePlaceholder

        db = MagicMock()
        db.templates.insert_one = AsyncMock()
        placeholders = [TemplatePlaceholder(key="clientName", label="Client", required=True)]
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.store_template_content", new_callable=AsyncMock, return_value="f"), \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock):
            template = await template_store.create_template(
                TemplateCreate(name="T", content="{{clientName}} {{other}}", placeholders=placeholders)
            )

        assert template.placeholders == placeholders

    @pytest.mark.asyncio
    async def test_docx_templates_rejected(self):
        from services.template_store import template_store
        from services.letter_errors import UnsupportedFileFormat
        from models.templates import TemplateCreate, TemplateFileFormat

        with patch("services.template_store.database.get_db", return_value=MagicMock()):
            with pytest.raises(UnsupportedFileFormat):
                await template_store.create_template(
                    TemplateCreate(name="T", content="x", file_format=TemplateFileFormat.DOCX)
                )

    @pytest.mark.asyncio
    async def test_invalid_template_not_persisted(self):
        from services.template_store import template_store
        from services.letter_errors import ValidationFailed
        from models.templates import TemplateCreate

        db = MagicMock()
        db.templates.insert_one = AsyncMock()
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.store_template_content", new_callable=AsyncMock) as store:
            with pytest.raises(ValidationFailed):
                await template_store.create_template(TemplateCreate(name="", content="x"))
        store.assert_not_awaited()
        db.templates.insert_one.assert_not_awaited()


class TestUpdateTemplate:
    """Copy-on-write: snapshot first, new content file, version + 1."""

    @pytest.mark.asyncio
    async def test_update_snapshots_and_bumps_version(self):
        from services.template_store import template_store
        from models.templates import TemplateUpdate
        from models import AuditAction

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template())
        db.template_versions.insert_one = AsyncMock()
        db.templates.replace_one = AsyncMock(return_value=MagicMock(matched_count=1))
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.store_template_content", new_callable=AsyncMock) as store, \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock) as audit:
            store.return_value = "file-new"
            updated = await template_store.update_template(
                "tpl_abc",
                TemplateUpdate(description="Updated", content="Hi {{clientName}}, due {{dueDate}}"),
                user_id="u2",
            )

        assert updated.version == 3
        assert updated.description == "Updated"
        assert updated.file_id == "file-new"
        assert [p.key for p in updated.placeholders] == ["clientName", "dueDate"]

        snapshot = db.template_versions.insert_one.call_args[0][0]
        assert snapshot["version"] == 2
        assert snapshot["template"]["file_id"] == "file-old"
        assert snapshot["replaced_by"] == "u2"

        replace_filter, replacement = db.templates.replace_one.call_args[0]
        assert replace_filter == {"template_id": "tpl_abc", "version": 2}
        assert replacement["version"] == 3

        kwargs = audit.call_args[1]
        assert kwargs["action"] == AuditAction.TEMPLATE_UPDATED
        assert kwargs["before_state"]["file_id"] == "file-old"
        assert kwargs["after_state"]["file_id"] == "file-new"

    @pytest.mark.asyncio
    async def test_metadata_only_update_keeps_content(self):
        from services.template_store import template_store
        from models.templates import TemplateUpdate

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template())
        db.template_versions.insert_one = AsyncMock()
        db.templates.replace_one = AsyncMock(return_value=MagicMock(matched_count=1))
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.store_template_content", new_callable=AsyncMock) as store, \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock):
            updated = await template_store.update_template("tpl_abc", TemplateUpdate(is_active=False))

        store.assert_not_awaited()
        assert updated.is_active is False
        assert updated.file_id == "file-old"
        assert [p.key for p in updated.placeholders] == ["clientName"]

    @pytest.mark.asyncio
    async def test_concurrent_update_rejected(self):
        from services.template_store import template_store
        from services.letter_errors import ValidationFailed
        from models.templates import TemplateUpdate

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template())
        db.template_versions.insert_one = AsyncMock()
        db.templates.replace_one = AsyncMock(return_value=MagicMock(matched_count=0))
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock) as audit:
            with pytest.raises(ValidationFailed) as exc:
                await template_store.update_template("tpl_abc", TemplateUpdate(name="Renamed"))
        assert exc.value.validation_errors[0]["field"] == "version"
        audit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_missing_template(self):
        from services.template_store import template_store
        from services.letter_errors import TemplateNotFound
        from models.templates import TemplateUpdate

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=None)
        db.template_versions.insert_one = AsyncMock()
        with patch("services.template_store.database.get_db", return_value=db):
            with pytest.raises(TemplateNotFound):
                await template_store.update_template("tpl_missing", TemplateUpdate(name="X"))
        db.template_versions.insert_one.assert_not_awaited()


class TestContentAndQueries:
    """Body loading and list filters."""

    @pytest.mark.asyncio
    async def test_get_template_content(self):
        from services.template_store import template_store

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template())
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.load_template_content", new_callable=AsyncMock) as load:
            load.return_value = "Dear {{clientName}}"
            content = await template_store.get_template_content("tpl_abc")
        assert content == "Dear {{clientName}}"
        load.assert_awaited_once_with("file-old")

    @pytest.mark.asyncio
    async def test_missing_content_file(self):
        from services.template_store import template_store
        from services.storage_adapter import StoredFileNotFoundError
        from services.letter_errors import TemplateFileNotFound

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template())
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.load_template_content", new_callable=AsyncMock) as load:
            load.side_effect = StoredFileNotFoundError("File not found: file-old")
            with pytest.raises(TemplateFileNotFound) as exc:
                await template_store.get_template_content("tpl_abc")
        assert exc.value.file_path == "fee-reminder.md"

    @pytest.mark.asyncio
    async def test_template_without_file(self):
        from services.template_store import template_store
        from services.letter_errors import TemplateFileNotFound

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template(file_id=None))
        with patch("services.template_store.database.get_db", return_value=db):
            with pytest.raises(TemplateFileNotFound):
                await template_store.get_template_content("tpl_abc")

    @pytest.mark.asyncio
    async def test_get_templates_builds_query(self):
        from services.template_store import template_store
        from models.templates import TemplateFilters, TemplateCategory

        db = MagicMock()
        db.templates.find = MagicMock(return_value=_cursor([_stored_template()]))
        with patch("services.template_store.database.get_db", return_value=db):
            templates = await template_store.get_templates(TemplateFilters(
                category=TemplateCategory.VAT,
                is_active=True,
                tags=["vat"],
                search="fee (annual)",
            ))

        query = db.templates.find.call_args[0][0]
        assert query["category"] == "VAT"
        assert query["is_active"] is True
        assert query["metadata.tags"] == {"$in": ["vat"]}
        assert query["$or"][0] == {"name": {"$regex": r"fee\ \(annual\)", "$options": "i"}}
        assert len(templates) == 1
        assert templates[0].template_id == "tpl_abc"

    @pytest.mark.asyncio
    async def test_template_preview_counts(self):
        from services.template_store import template_store
        from models.placeholders import TemplatePlaceholder

        doc = _stored_template(placeholders=[
            TemplatePlaceholder(key="clientName", label="Client Name", required=True),
            TemplatePlaceholder(key="note", label="Note"),
        ])
        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=doc)
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.load_template_content", new_callable=AsyncMock, return_value="body"):
            preview = await template_store.get_template_preview("tpl_abc")

        assert preview["content"] == "body"
        assert preview["metadata"] == {
            "total_placeholders": 2,
            "required_placeholders": 1,
            "optional_placeholders": 1,
        }


class TestDeleteImportUsage:
    """Delete keeps content, import reads Markdown, usage failures are swallowed."""

    @pytest.mark.asyncio
    async def test_delete_removes_record_only(self):
        from services.template_store import template_store
        from models import AuditAction

        db = MagicMock()
        db.templates.find_one = AsyncMock(return_value=_stored_template())
        db.templates.delete_one = AsyncMock()
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock) as audit:
            await template_store.delete_template("tpl_abc", "u1")

        db.templates.delete_one.assert_awaited_once_with({"template_id": "tpl_abc"})
        assert audit.call_args[1]["action"] == AuditAction.TEMPLATE_DELETED

    @pytest.mark.asyncio
    async def test_import_markdown_file(self, tmp_path):
        from services.template_store import template_store
        from models import AuditAction

        path = tmp_path / "welcome.md"
        path.write_text("# Welcome\n\nDear {{clientName}}", encoding="utf-8")
        db = MagicMock()
        db.templates.insert_one = AsyncMock()
        with patch("services.template_store.database.get_db", return_value=db), \
             patch("services.storage_adapter.store_template_content", new_callable=AsyncMock, return_value="f1"), \
             patch("services.template_store.create_audit_log", new_callable=AsyncMock) as audit:
            template = await template_store.import_template_file(str(path), "Welcome", user_id="u1")

        assert template.file_name == "welcome.md"
        assert [p.key for p in template.placeholders] == ["clientName"]
        actions = [c[1]["action"] for c in audit.call_args_list]
        assert actions == [AuditAction.TEMPLATE_CREATED, AuditAction.TEMPLATE_IMPORTED]

    @pytest.mark.asyncio
    async def test_record_usage_failure_is_logged_only(self):
        from services.template_store import template_store

        db = MagicMock()
        db.templates.update_one = AsyncMock(side_effect=RuntimeError("write conflict"))
        with patch("services.template_store.database.get_db", return_value=db):
            await template_store.record_usage("tpl_abc")
        db.templates.update_one.assert_awaited_once()
