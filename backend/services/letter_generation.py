"""
Letter Generation Service - single letter generation, preview, history and download.

Pipeline for one letter:
    validate request -> load template + body -> check client/service
    -> resolve placeholders -> evaluate template -> render formats
    -> store primary document -> record GeneratedLetter -> audit

Structural problems (unknown template/client/service, inactive template,
missing or invalid values) raise their own LetterGenerationError. Anything
unexpected is logged with its stack trace and surfaced as
DocumentGenerationFailed.
"""
import re
import html
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

from database import database
from models import AuditAction
from models.letters import (
    GeneratedLetter,
    GenerateLetterRequest,
    GenerateLetterResult,
    LetterDownload,
    LetterFilters,
    LetterStatus,
    MIME_TYPES,
    OutputFormat,
    PreviewResult,
)
from models.placeholders import PlaceholderContext, PlaceholderResolutionResult
from models.templates import Template
from services import client_directory, storage_adapter
from services.document_renderer import document_renderer
from services.letter_errors import (
    ClientNotFound,
    DocumentGenerationFailed,
    DocumentStorageError,
    LetterGenerationError,
    LetterNotFound,
    MissingRequiredFields,
    ServiceNotFound,
    TemplateInactive,
    ValidationFailed,
)
from services.placeholder_resolver import placeholder_resolver
from services.template_engine import build_template_values, evaluate
from services.template_store import template_store
from services.template_validation import validate_generate_request
from utils.audit import create_audit_log
from utils.letter_settings import get_default_output_formats, get_practice_name

logger = logging.getLogger(__name__)

RESOURCE_TYPE = "letter"
DOCUMENT_CATEGORY = "CORRESPONDENCE"


def new_letter_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"letter_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}"


def letter_file_name(template_name: str, client_name: str, output_format: OutputFormat, day: Optional[datetime] = None) -> str:
    day = day or datetime.now(timezone.utc)
    return f"{template_name}_{client_name}_{day.strftime('%Y-%m-%d')}.{output_format.extension}"


def document_tags(template: Template, year: int) -> List[str]:
    return [
        "letter",
        "generated",
        template.category.value.lower(),
        re.sub(r"\s+", "-", template.name.lower()),
        str(year),
    ]


def resolve_output_formats(requested: Optional[List[OutputFormat]]) -> List[OutputFormat]:
    formats = requested or [OutputFormat(f) for f in get_default_output_formats() if f in OutputFormat.__members__]
    ordered: List[OutputFormat] = []
    for fmt in formats or [OutputFormat.PDF]:
        fmt = OutputFormat(fmt)
        if fmt not in ordered:
            ordered.append(fmt)
    return ordered


# ============================================================================
# HTML PREVIEW
# ============================================================================

PREVIEW_STYLES = """
    body { font-family: Arial, sans-serif; line-height: 1.6; max-width: 800px; margin: 0 auto; padding: 20px; background-color: #f5f5f5; }
    .preview-container { background-color: white; padding: 40px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
    h1 { color: #0B1D3A; font-size: 24px; margin-bottom: 20px; }
    h2 { color: #00B8A9; font-size: 18px; margin-top: 20px; margin-bottom: 10px; }
    h3 { color: #555; font-size: 16px; margin-top: 15px; margin-bottom: 8px; }
    p { margin-bottom: 15px; color: #333; }
    .header { border-bottom: 2px solid #00B8A9; padding-bottom: 10px; margin-bottom: 20px; text-align: right; }
    .footer { border-top: 1px solid #ddd; padding-top: 10px; margin-top: 30px; font-size: 12px; color: #999; text-align: center; }
"""


def content_to_html(content: str, template_name: str, now: Optional[datetime] = None) -> str:
    """Render populated letter text as a branded HTML page. Text is escaped before markup is applied."""
    now = now or datetime.now(timezone.utc)
    body = html.escape(content, quote=False)
    body = re.sub(r"^### (.+)$", r"<h3>\1</h3>", body, flags=re.MULTILINE)
    body = re.sub(r"^## (.+)$", r"<h2>\1</h2>", body, flags=re.MULTILINE)
    body = re.sub(r"^# (.+)$", r"<h1>\1</h1>", body, flags=re.MULTILINE)
    body = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", body)

    blocks = []
    for block in re.split(r"\n\s*\n", body):
        block = block.strip()
        if not block:
            continue
        if block.startswith("<h"):
            blocks.append(block)
        else:
            blocks.append(f"<p>{block.replace(chr(10), '<br>')}</p>")

    title = html.escape(template_name)
    return (
        "<!DOCTYPE html>\n<html>\n<head>\n  <meta charset=\"UTF-8\">\n"
        f"  <title>{title} - Preview</title>\n  <style>{PREVIEW_STYLES}  </style>\n</head>\n<body>\n"
        "  <div class=\"preview-container\">\n"
        f"    <div class=\"header\"><strong>{html.escape(get_practice_name())}</strong></div>\n"
        f"    {chr(10).join(blocks)}\n"
        f"    <div class=\"footer\">{title} - Preview Generated on {now.strftime('%d/%m/%Y')}</div>\n"
        "  </div>\n</body>\n</html>"
    )


class LetterGenerationService:
    """Generates, previews, lists and serves letters for one client at a time."""

    def _get_db(self):
        return database.get_db()

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def _resolve(
        self,
        template: Template,
        request: GenerateLetterRequest,
        user_id: str,
        client: Optional[Dict[str, Any]] = None,
        service: Optional[Dict[str, Any]] = None,
    ) -> PlaceholderResolutionResult:
        context = PlaceholderContext(
            client_id=request.client_id,
            service_id=request.service_id,
            user_id=user_id,
            manual_values=request.placeholder_values,
        )
        return await placeholder_resolver.resolve(template.placeholders, context, client=client, service=service)

    async def generate_letter(self, request: GenerateLetterRequest, user_id: str) -> GenerateLetterResult:
        logger.info(f"Generating letter: template={request.template_id}, client={request.client_id}")
        try:
            request = validate_generate_request(request)
            template = await template_store.get_template(request.template_id)
            if not template.is_active:
                raise TemplateInactive(template.name)
            body = await template_store.get_template_content(request.template_id)

            client = await client_directory.find_client(request.client_id)
            if not client:
                raise ClientNotFound(request.client_id)
            service = None
            if request.service_id:
                service = await client_directory.find_service(request.service_id)
                if not service:
                    raise ServiceNotFound(request.service_id)

            resolution = await self._resolve(template, request, user_id, client=client, service=service)
            if resolution.missing_required:
                raise MissingRequiredFields(resolution.missing_required)
            if resolution.errors:
                raise ValidationFailed([
                    {"field": e.key, "message": e.message, "code": e.code.value}
                    for e in resolution.errors
                ])

            content = evaluate(body, build_template_values(resolution))
            formats = resolve_output_formats(request.output_formats)
            documents = document_renderer.render(content, template.name, formats)

            client_name = client.get("name") or request.client_id
            document_id = None
            if request.auto_save and documents:
                primary_format = next(iter(documents))
                document_id = await self._save_document(
                    documents[primary_format], primary_format, template, client_name, request, user_id
                )

            letter = GeneratedLetter(
                letter_id=new_letter_id(),
                template_id=template.template_id,
                template_name=template.name,
                template_version=template.version,
                client_id=request.client_id,
                client_name=client_name,
                service_id=request.service_id,
                service_name=(service or {}).get("kind"),
                placeholder_values=resolution.raw_values(),
                document_id=document_id,
                output_formats=formats,
                status=LetterStatus.GENERATED if document_id else LetterStatus.DRAFT,
                generated_by=user_id,
            )
            await self._get_db().generated_letters.insert_one(letter.model_dump(mode="json"))
            await template_store.record_usage(template.template_id)
            logger.info(f"Letter generated successfully: {letter.letter_id} ({letter.status.value})")

            await create_audit_log(
                action=AuditAction.LETTER_GENERATED,
                actor_id=user_id,
                resource_type=RESOURCE_TYPE,
                resource_id=letter.letter_id,
                client_id=request.client_id,
                metadata={
                    "template_id": template.template_id,
                    "template_name": template.name,
                    "template_version": template.version,
                    "client_name": client_name,
                    "service_id": request.service_id,
                    "document_id": document_id,
                    "formats": [f.value for f in formats],
                    "status": letter.status.value,
                },
            )
            return GenerateLetterResult(letter=letter, documents=documents, content=content)
        except LetterGenerationError:
            raise
        except Exception as e:
            logger.error(
                f"Failed to generate letter: template={request.template_id}, client={request.client_id}: {e}",
                exc_info=True,
            )
            raise DocumentGenerationFailed(
                f"Failed to generate the letter for client '{request.client_id}'. Please try again."
            )

    async def _save_document(
        self,
        buffer: bytes,
        output_format: OutputFormat,
        template: Template,
        client_name: str,
        request: GenerateLetterRequest,
        user_id: str,
    ) -> str:
        now = datetime.now(timezone.utc)
        file_name = letter_file_name(template.name, client_name, output_format, now)
        result = await storage_adapter.upload_document(buffer, {
            "file_name": file_name,
            "mime_type": output_format.mime_type,
            "uploaded_by": user_id,
            "client_id": request.client_id,
            "service_id": request.service_id,
            "template_id": template.template_id,
            "format": output_format.value,
            "category": DOCUMENT_CATEGORY,
            "tags": document_tags(template, now.year),
            "description": f"Generated letter from template: {template.name}",
        })
        if not result.get("success") or not result.get("document"):
            raise DocumentStorageError(f"Failed to save generated document '{file_name}'")
        document_id = result["document"]["document_id"]
        logger.info(f"Document saved: {document_id} ({file_name})")
        return document_id

    async def preview_letter(self, request: GenerateLetterRequest, user_id: str) -> PreviewResult:
        """Populate the template without persisting anything. Missing values render as [key]."""
        request = validate_generate_request(request)
        template = await template_store.get_template(request.template_id)
        body = await template_store.get_template_content(request.template_id)

        resolution = await self._resolve(template, request, user_id)
        content = evaluate(body, build_template_values(resolution, show_missing=True))
        logger.info(
            f"Letter preview: template={request.template_id}, client={request.client_id}, "
            f"{len(resolution.missing_required)} missing"
        )
        return PreviewResult(
            content=content,
            html=content_to_html(content, template.name),
            placeholders={key: r.formatted_value for key, r in resolution.placeholders.items()},
            missing_required=resolution.missing_required,
            errors=resolution.errors,
        )

    # =========================================================================
    # HISTORY
    # =========================================================================

    async def get_generated_letters(self, filters: Optional[LetterFilters] = None) -> List[GeneratedLetter]:
        """Generated letters matching every supplied filter, newest first."""
        filters = filters or LetterFilters()
        query: Dict[str, Any] = {}
        for field in ("client_id", "service_id", "template_id", "generated_by"):
            value = getattr(filters, field)
            if value:
                query[field] = value
        if filters.status:
            query["status"] = filters.status.value
        if filters.date_from or filters.date_to:
            generated: Dict[str, str] = {}
            if filters.date_from:
                generated["$gte"] = filters.date_from.isoformat()
            if filters.date_to:
                generated["$lte"] = filters.date_to.isoformat()
            query["generated_at"] = generated
        if filters.search:
            pattern = re.escape(filters.search.strip())
            query["$or"] = [
                {field: {"$regex": pattern, "$options": "i"}}
                for field in ("client_name", "template_name", "service_name")
            ]

        cursor = self._get_db().generated_letters.find(query, {"_id": 0}).sort("generated_at", -1)
        docs = await cursor.to_list(length=None)
        return [GeneratedLetter(**doc) for doc in docs]

    async def get_generated_letter(self, letter_id: str) -> GeneratedLetter:
        doc = await self._get_db().generated_letters.find_one({"letter_id": letter_id}, {"_id": 0})
        if not doc:
            raise LetterNotFound(letter_id)
        return GeneratedLetter(**doc)

    async def get_letters_by_client(self, client_id: str) -> List[GeneratedLetter]:
        return await self.get_generated_letters(LetterFilters(client_id=client_id))

    async def get_letters_by_service(self, service_id: str) -> List[GeneratedLetter]:
        return await self.get_generated_letters(LetterFilters(service_id=service_id))

    async def fetch_document(self, letter: GeneratedLetter) -> Tuple[bytes, OutputFormat]:
        """Stored primary document of a letter and its format."""
        if not letter.document_id:
            raise DocumentStorageError(f"Letter '{letter.letter_id}' has no associated document")
        try:
            stored = await storage_adapter.get_document_file(letter.document_id)
        except storage_adapter.StorageError as e:
            logger.error(f"Document {letter.document_id} for letter {letter.letter_id} unavailable: {e}")
            raise DocumentStorageError(f"The document for letter '{letter.letter_id}' could not be retrieved")

        content_type = (stored.get("document") or {}).get("content_type")
        output_format = next(
            (fmt for fmt, mime in MIME_TYPES.items() if mime == content_type),
            letter.output_formats[0] if letter.output_formats else OutputFormat.PDF,
        )
        return stored["buffer"], output_format

    async def download_letter(self, letter_id: str, user_id: str = "system") -> LetterDownload:
        letter = await self.get_generated_letter(letter_id)
        buffer, output_format = await self.fetch_document(letter)

        now = datetime.now(timezone.utc)
        await self._get_db().generated_letters.update_one(
            {"letter_id": letter_id},
            {
                "$inc": {"download_count": 1},
                "$set": {"last_downloaded_at": now.isoformat(), "status": LetterStatus.DOWNLOADED.value},
            },
        )
        logger.info(f"Letter downloaded: {letter_id} by {user_id}")

        await create_audit_log(
            action=AuditAction.LETTER_DOWNLOADED,
            actor_id=user_id,
            resource_type=RESOURCE_TYPE,
            resource_id=letter_id,
            client_id=letter.client_id,
            metadata={
                "format": output_format.value,
                "download_count": letter.download_count + 1,
                "template_id": letter.template_id,
                "template_name": letter.template_name,
                "client_name": letter.client_name,
            },
        )
        return LetterDownload(
            buffer=buffer,
            filename=letter_file_name(letter.template_name, letter.client_name, output_format, now),
            mime_type=output_format.mime_type,
        )


# Singleton
letter_generation_service = LetterGenerationService()
