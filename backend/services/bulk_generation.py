"""
Bulk letter generation.

Clients are processed strictly one after another; each yields exactly one
BulkGenerationItem, success or failure, and no per-client exception escapes the
batch. Successful letters are then packaged into a ZIP archive on local
storage. Archive problems degrade to zip_file_id=None rather than failing the
run, and a missing document only drops that one entry.
"""
import re
import uuid
import asyncio
import zipfile
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from models import AuditAction
from models.letters import (
    BulkGenerateLetterRequest,
    BulkGenerationItem,
    BulkGenerationResult,
    GenerateLetterRequest,
    GeneratedLetter,
)
from services import client_directory
from services.letter_errors import (
    BulkGenerationFailed,
    LetterGenerationError,
    TemplateInactive,
    ZipFileNotFound,
)
from services.letter_generation import letter_generation_service
from services.template_store import template_store
from services.template_validation import validate_bulk_request
from utils.audit import create_audit_log
from utils.letter_settings import get_bulk_zip_dir

logger = logging.getLogger(__name__)

ZIP_FILE_ID_PATTERN = re.compile(r"^bulk_\d+_[0-9a-f]{8}\.zip$")
MAX_FILENAME_PART = 50


def sanitize_filename(name: str) -> str:
    """Keep letters, digits, spaces, '-' and '_'; spaces become '_'; at most 50 characters."""
    cleaned = re.sub(r"[^a-zA-Z0-9\s\-_]", "", name or "")
    cleaned = re.sub(r"\s+", "_", cleaned)
    return cleaned[:MAX_FILENAME_PART]


def new_zip_file_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"bulk_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}.zip"


def _unique_entry_name(name: str, used: Dict[str, int]) -> str:
    if name not in used:
        used[name] = 1
        return name
    used[name] += 1
    stem, _, ext = name.rpartition(".")
    return f"{stem}_{used[name]}.{ext}"


def _write_zip(zip_path: Path, entries: List[Tuple[str, bytes]]) -> None:
    """Write the archive in one go. A failed write leaves no partial file behind."""
    zip_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
            for name, content in entries:
                archive.writestr(name, content)
    except Exception:
        zip_path.unlink(missing_ok=True)
        raise


async def create_bulk_letters_zip(letters: List[GeneratedLetter]) -> Optional[str]:
    """
    Package the stored documents of the given letters into one archive.

    Returns the archive id once the file is fully written and closed, or None
    when nothing could be archived.
    """
    logger.info(f"Creating ZIP file for {len(letters)} letters")
    entries: List[Tuple[str, bytes]] = []
    used_names: Dict[str, int] = {}

    for letter in letters:
        try:
            buffer, output_format = await letter_generation_service.fetch_document(letter)
        except Exception as e:
            logger.warning(f"Failed to add letter {letter.letter_id} to ZIP: {e}")
            continue
        name = (
            f"{sanitize_filename(letter.client_name)}_{sanitize_filename(letter.template_name)}_"
            f"{letter.generated_at.strftime('%Y-%m-%d')}.{output_format.extension}"
        )
        entries.append((_unique_entry_name(name, used_names), buffer))

    if not entries:
        logger.warning("No documents available for the bulk ZIP, archive not created")
        return None

    zip_file_id = new_zip_file_id()
    zip_path = get_bulk_zip_dir() / zip_file_id
    await asyncio.to_thread(_write_zip, zip_path, entries)
    logger.info(f"ZIP file created and saved: {zip_file_id}, {len(entries)} entries, size: {zip_path.stat().st_size} bytes")
    return zip_file_id


async def _client_name(client_id: str) -> str:
    """Display name for a failed item. Successful items take it from the generated letter."""
    try:
        client = await client_directory.find_client(client_id)
    except Exception as e:
        logger.warning(f"Client lookup failed for {client_id}: {e}")
        return client_id
    return (client or {}).get("name") or client_id


async def bulk_generate_letters(request: BulkGenerateLetterRequest, user_id: str) -> BulkGenerationResult:
    request = validate_bulk_request(request)
    logger.info(f"Starting bulk letter generation: template={request.template_id}, clients={len(request.client_ids)}")

    try:
        template = await template_store.get_template(request.template_id)
    except LetterGenerationError:
        raise
    except Exception as e:
        logger.error(f"Bulk generation could not start for template {request.template_id}: {e}", exc_info=True)
        raise BulkGenerationFailed(f"Bulk generation could not start: {e}")
    if not template.is_active:
        raise TemplateInactive(template.name)

    results: List[BulkGenerationItem] = []
    letters: List[GeneratedLetter] = []

    for client_id in request.client_ids:
        try:
            generated = await letter_generation_service.generate_letter(
                GenerateLetterRequest(
                    template_id=request.template_id,
                    client_id=client_id,
                    service_id=request.service_id,
                    placeholder_values=request.placeholder_values,
                    output_formats=request.output_formats,
                    auto_save=True,
                ),
                user_id,
            )
        except Exception as e:
            message = e.message if isinstance(e, LetterGenerationError) else str(e)
            results.append(BulkGenerationItem(
                client_id=client_id,
                client_name=await _client_name(client_id),
                success=False,
                error=message,
            ))
            logger.warning(f"Bulk generation failed for client {client_id}: {message}")
            continue

        letters.append(generated.letter)
        results.append(BulkGenerationItem(
            client_id=client_id,
            client_name=generated.letter.client_name,
            success=True,
            letter_id=generated.letter.letter_id,
        ))
        logger.info(f"Bulk generation success for client: {generated.letter.client_name}")

    zip_file_id = None
    if letters:
        try:
            zip_file_id = await create_bulk_letters_zip(letters)
        except Exception as e:
            logger.error(f"Failed to create ZIP file: {e}", exc_info=True)

    result = BulkGenerationResult.from_results(results, zip_file_id=zip_file_id)
    logger.info(result.summary)

    await create_audit_log(
        action=AuditAction.BULK_LETTERS_GENERATED,
        actor_id=user_id,
        resource_type="template",
        resource_id=template.template_id,
        metadata={
            "template_name": template.name,
            "total_requested": result.total_requested,
            "success_count": result.success_count,
            "failure_count": result.failure_count,
            "zip_file_id": zip_file_id,
            "client_ids": list(request.client_ids),
        },
    )
    return result


async def download_bulk_letters_zip(zip_file_id: str, user_id: str = "system") -> Tuple[bytes, str]:
    """Archive bytes and a download filename. Only plain bulk archive names are accepted."""
    if not zip_file_id or not ZIP_FILE_ID_PATTERN.match(zip_file_id):
        raise ZipFileNotFound(zip_file_id or "")

    zip_path = get_bulk_zip_dir() / zip_file_id
    if not zip_path.is_file():
        raise ZipFileNotFound(zip_file_id)

    content = await asyncio.to_thread(zip_path.read_bytes)
    filename = f"bulk_letters_{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.zip"
    logger.info(f"Bulk ZIP downloaded: {zip_file_id} by {user_id}")

    await create_audit_log(
        action=AuditAction.BULK_ZIP_DOWNLOADED,
        actor_id=user_id,
        resource_type="bulk_zip",
        resource_id=zip_file_id,
        metadata={"size_bytes": len(content)},
    )
    return content, filename
