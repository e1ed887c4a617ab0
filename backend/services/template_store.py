"""
Template Store - letter template metadata, content and version history.

Template records live in the templates collection; their bodies live in the
document store as stand-alone files referenced by file_id.

Updates are copy-on-write:
    1. the current record is snapshotted into template_versions
    2. new content (if any) is written as a new file, never over the old one
    3. the record is replaced with version + 1
Delete removes the record only. Content files and snapshots are kept so
previously generated letters remain traceable.
"""
import re
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from database import database
from models import AuditAction
from models.placeholders import TemplatePlaceholder
from models.templates import (
    Template,
    TemplateCategory,
    TemplateCreate,
    TemplateFileFormat,
    TemplateFilters,
    TemplateMetadata,
    TemplateUpdate,
    TemplateVersionSnapshot,
)
from services import storage_adapter
from services.letter_errors import (
    TemplateFileNotFound,
    TemplateNotFound,
    UnsupportedFileFormat,
    ValidationFailed,
)
from services.placeholder_parser import extract_placeholders, parse_template_file
from services.template_validation import validate_create_template, validate_update_template
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "template"


def _file_name_for(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return f"{slug or 'template'}.md"


def _audit_state(template: Template) -> Dict[str, Any]:
    return {
        "name": template.name,
        "description": template.description,
        "category": template.category.value,
        "is_active": template.is_active,
        "file_id": template.file_id,
        "placeholders": [p.key for p in template.placeholders],
        "version": template.version,
    }


class TemplateStore:
    """Template CRUD with copy-on-write versioning."""

    def _get_db(self):
        return database.get_db()

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_templates(self, filters: Optional[TemplateFilters] = None) -> List[Template]:
        """List templates, most recently updated first."""
        filters = filters or TemplateFilters()
        query: Dict[str, Any] = {}

        if filters.category:
            query["category"] = filters.category.value
        if filters.is_active is not None:
            query["is_active"] = filters.is_active
        if filters.created_by:
            query["created_by"] = filters.created_by
        if filters.tags:
            query["metadata.tags"] = {"$in": filters.tags}
        if filters.search:
            pattern = re.escape(filters.search.strip())
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if filters.date_from or filters.date_to:
            created: Dict[str, str] = {}
            if filters.date_from:
                created["$gte"] = filters.date_from.isoformat()
            if filters.date_to:
                created["$lte"] = filters.date_to.isoformat()
            query["created_at"] = created

        cursor = self._get_db().templates.find(query, {"_id": 0}).sort("updated_at", -1)
        docs = await cursor.to_list(length=None)
        return [Template(**doc) for doc in docs]

    async def search_templates(self, query: str, category: Optional[TemplateCategory] = None) -> List[Template]:
        return await self.get_templates(TemplateFilters(search=query, category=category))

    async def get_template(self, template_id: str) -> Template:
        doc = await self._get_db().templates.find_one({"template_id": template_id}, {"_id": 0})
        if not doc:
            raise TemplateNotFound(template_id)
        return Template(**doc)

    async def get_template_content(self, template_id: str) -> str:
        """Load the current body of a template from the document store."""
        template = await self.get_template(template_id)
        if not template.file_id:
            raise TemplateFileNotFound(template.file_name)
        try:
            content = await storage_adapter.load_template_content(template.file_id)
        except storage_adapter.StoredFileNotFoundError:
            logger.error(f"Content file {template.file_id} missing for template {template_id}")
            raise TemplateFileNotFound(template.file_name)
        if not content.strip():
            raise ValidationFailed([{"field": "content", "message": "Template content is empty"}])
        return content

    async def get_template_preview(self, template_id: str) -> Dict[str, Any]:
        """Template record, raw body and placeholder counts for the authoring UI."""
        template = await self.get_template(template_id)
        content = await self.get_template_content(template_id)
        required = sum(1 for p in template.placeholders if p.required)
        return {
            "template": template.model_dump(mode="json"),
            "content": content,
            "placeholders": [p.model_dump(mode="json") for p in template.placeholders],
            "metadata": {
                "total_placeholders": len(template.placeholders),
                "required_placeholders": required,
                "optional_placeholders": len(template.placeholders) - required,
            },
        }

    async def get_template_versions(self, template_id: str) -> List[TemplateVersionSnapshot]:
        """Snapshots of replaced versions, newest first."""
        await self.get_template(template_id)
        cursor = self._get_db().template_versions.find(
            {"template_id": template_id},
            {"_id": 0}
        ).sort("version", -1)
        docs = await cursor.to_list(length=None)
        return [TemplateVersionSnapshot(**doc) for doc in docs]

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    async def create_template(self, dto: TemplateCreate, user_id: str = "system") -> Template:
        dto = validate_create_template(dto)
        if dto.file_format != TemplateFileFormat.MD:
            raise UnsupportedFileFormat(dto.file_format.value)

        placeholders = dto.placeholders if dto.placeholders is not None else extract_placeholders(dto.content)
        template = Template(
            name=dto.name,
            description=dto.description,
            category=dto.category,
            file_name=dto.file_name or _file_name_for(dto.name),
            file_format=dto.file_format,
            placeholders=placeholders,
            is_active=dto.is_active,
            created_by=user_id,
            metadata=dto.metadata or TemplateMetadata(author=user_id),
        )
        template.file_id = await storage_adapter.store_template_content(
            dto.content, template.file_name, template.template_id, uploaded_by=user_id
        )

        await self._get_db().templates.insert_one(template.model_dump(mode="json"))
        logger.info(f"Created template: {template.name} ({template.template_id}) with {len(placeholders)} placeholders")

        await create_audit_log(
            action=AuditAction.TEMPLATE_CREATED,
            actor_id=user_id,
            resource_type=RESOURCE_TYPE,
            resource_id=template.template_id,
            after_state=_audit_state(template),
            metadata={"category": template.category.value},
        )
        return template

    async def update_template(self, template_id: str, dto: TemplateUpdate, user_id: str = "system") -> Template:
        dto = validate_update_template(dto)
        current = await self.get_template(template_id)
        db = self._get_db()

        snapshot = TemplateVersionSnapshot(
            template_id=template_id,
            version=current.version,
            template=current.model_dump(mode="json"),
            replaced_by=user_id,
        )
        await db.template_versions.insert_one(snapshot.model_dump(mode="json"))

        changes = dto.model_dump(exclude_unset=True, exclude={"content"})
        updated = current.model_copy(update={
            **{k: getattr(dto, k) for k in changes},
            "version": current.version + 1,
            "updated_at": datetime.now(timezone.utc),
        })

        if dto.content is not None:
            updated.file_id = await storage_adapter.store_template_content(
                dto.content, current.file_name, template_id, uploaded_by=user_id
            )
            if dto.placeholders is None:
                updated.placeholders = extract_placeholders(dto.content)

        result = await db.templates.replace_one(
            {"template_id": template_id, "version": current.version},
            updated.model_dump(mode="json"),
        )
        if result.matched_count == 0:
            logger.warning(f"Template {template_id} changed while updating from version {current.version}")
            raise ValidationFailed([{
                "field": "version",
                "message": "The template was modified by someone else. Reload it and try again.",
            }])

        logger.info(f"Updated template: {updated.name} ({template_id}) to version {updated.version}")
        await create_audit_log(
            action=AuditAction.TEMPLATE_UPDATED,
            actor_id=user_id,
            resource_type=RESOURCE_TYPE,
            resource_id=template_id,
            before_state=_audit_state(current),
            after_state=_audit_state(updated),
            metadata={"previous_version": current.version, "new_version": updated.version},
        )
        return updated

    async def delete_template(self, template_id: str, user_id: str = "system") -> None:
        """Remove the template record. The stored content file is kept."""
        template = await self.get_template(template_id)
        await self._get_db().templates.delete_one({"template_id": template_id})
        logger.info(f"Deleted template: {template.name} ({template_id}), content file {template.file_id} retained")

        await create_audit_log(
            action=AuditAction.TEMPLATE_DELETED,
            actor_id=user_id,
            resource_type=RESOURCE_TYPE,
            resource_id=template_id,
            before_state=_audit_state(template),
        )

    async def import_template_file(
        self,
        file_path: str,
        name: str,
        category: TemplateCategory = TemplateCategory.GENERAL,
        description: str = "",
        user_id: str = "system",
        placeholders: Optional[List[TemplatePlaceholder]] = None,
    ) -> Template:
        """Create a template from a Markdown file on disk."""
        parsed = parse_template_file(file_path, TemplateFileFormat.MD)
        template = await self.create_template(
            TemplateCreate(
                name=name,
                description=description,
                category=category,
                file_name=parsed.metadata.get("file_name"),
                content=parsed.content,
                placeholders=placeholders if placeholders is not None else parsed.placeholders,
            ),
            user_id=user_id,
        )
        await create_audit_log(
            action=AuditAction.TEMPLATE_IMPORTED,
            actor_id=user_id,
            resource_type=RESOURCE_TYPE,
            resource_id=template.template_id,
            metadata={"source_file": file_path},
        )
        return template

    async def record_usage(self, template_id: str) -> None:
        """Bump usage statistics after a letter is generated. Failures are logged only."""
        try:
            await self._get_db().templates.update_one(
                {"template_id": template_id},
                {
                    "$inc": {"metadata.usage_count": 1},
                    "$set": {"metadata.last_used": datetime.now(timezone.utc).isoformat()},
                },
            )
        except Exception as e:
            logger.warning(f"Failed to record usage for template {template_id}: {e}")


# Singleton
template_store = TemplateStore()
