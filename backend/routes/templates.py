"""Letter Template Routes - browsing for staff, authoring for managers"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel
from middleware import require_staff, require_manager, letter_http_error, actor_id
from models.templates import TemplateCategory, TemplateCreate, TemplateFilters, TemplateUpdate
from services.letter_errors import LetterGenerationError
from services.placeholder_parser import extract_placeholders, validate_template
from services.template_store import template_store
from utils.audit import get_audit_logs_for_resource
from datetime import datetime
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/templates", tags=["Letter Templates"])


class ParseTemplateRequest(BaseModel):
    content: str
    name: Optional[str] = None


@router.get("")
async def list_templates(
    request: Request,
    category: Optional[TemplateCategory] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    tags: Optional[str] = None,
    created_by: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    """List templates with optional filters. tags is a comma-separated list."""
    await require_staff(request)
    try:
        filters = TemplateFilters(
            category=category,
            is_active=is_active,
            search=search,
            tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else None,
            created_by=created_by,
            date_from=date_from,
            date_to=date_to,
        )
        templates = await template_store.get_templates(filters)
        return {
            "templates": [t.model_dump(mode="json") for t in templates],
            "total": len(templates),
        }
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template list error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load templates"
        )


@router.get("/search")
async def search_templates(request: Request, q: str = "", category: Optional[TemplateCategory] = None):
    await require_staff(request)
    try:
        templates = await template_store.search_templates(q, category)
        return {
            "templates": [t.model_dump(mode="json") for t in templates],
            "total": len(templates),
        }
    except Exception as e:
        logger.error(f"Template search error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to search templates"
        )


@router.post("/parse")
async def parse_template(request: Request, data: ParseTemplateRequest):
    """Extract placeholders from posted template text without saving anything."""
    await require_staff(request)
    placeholders = extract_placeholders(data.content)
    errors = validate_template(data.name or "preview", data.content, placeholders)
    return {
        "placeholders": [p.model_dump(mode="json") for p in placeholders],
        "total": len(placeholders),
        "errors": errors,
    }


@router.get("/{template_id}")
async def get_template(request: Request, template_id: str):
    await require_staff(request)
    try:
        template = await template_store.get_template(template_id)
        return template.model_dump(mode="json")
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template fetch error for {template_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load template"
        )


@router.get("/{template_id}/content")
async def get_template_content(request: Request, template_id: str):
    await require_staff(request)
    try:
        content = await template_store.get_template_content(template_id)
        return {"template_id": template_id, "content": content}
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template content error for {template_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load template content"
        )


@router.get("/{template_id}/preview")
async def preview_template(request: Request, template_id: str):
    await require_staff(request)
    try:
        return await template_store.get_template_preview(template_id)
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template preview error for {template_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to preview template"
        )


@router.get("/{template_id}/versions")
async def get_template_versions(request: Request, template_id: str):
    await require_staff(request)
    try:
        versions = await template_store.get_template_versions(template_id)
        return {
            "template_id": template_id,
            "versions": [v.model_dump(mode="json") for v in versions],
        }
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template versions error for {template_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load template versions"
        )


@router.get("/{template_id}/history")
async def get_template_history(request: Request, template_id: str, limit: int = 50):
    """Audit trail for one template."""
    await require_manager(request)
    logs: List[dict] = await get_audit_logs_for_resource("template", template_id, limit=limit)
    return {"template_id": template_id, "history": logs}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(request: Request, data: TemplateCreate):
    user = await require_manager(request)
    try:
        template = await template_store.create_template(data, actor_id(user))
        return template.model_dump(mode="json")
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template create error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create template"
        )


@router.put("/{template_id}")
async def update_template(request: Request, template_id: str, data: TemplateUpdate):
    user = await require_manager(request)
    try:
        template = await template_store.update_template(template_id, data, actor_id(user))
        return template.model_dump(mode="json")
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template update error for {template_id}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update template"
        )


@router.delete("/{template_id}")
async def delete_template(request: Request, template_id: str):
    user = await require_manager(request)
    try:
        await template_store.delete_template(template_id, actor_id(user))
        return {"message": "Template deleted", "template_id": template_id}
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Template delete error for {template_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to delete template"
        )
