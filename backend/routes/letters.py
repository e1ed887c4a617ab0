"""Letter Generation Routes - generate, preview, bulk runs, history and downloads"""
from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse
from urllib.parse import quote
from middleware import require_staff, letter_http_error, actor_id
from models.letters import (
    BulkGenerateLetterRequest,
    GenerateLetterRequest,
    LetterFilters,
    LetterStatus,
    ZIP_MIME_TYPE,
)
from services.bulk_generation import bulk_generate_letters, download_bulk_letters_zip
from services.letter_errors import LetterGenerationError
from services.letter_generation import letter_generation_service
from datetime import datetime
from typing import Optional
import io
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/letters", tags=["Letters"])


def content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode("ascii").replace('"', "")
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


def _letters_response(letters) -> dict:
    return {
        "letters": [letter.model_dump(mode="json") for letter in letters],
        "total": len(letters),
    }


@router.post("/generate", status_code=status.HTTP_201_CREATED)
async def generate_letter(request: Request, data: GenerateLetterRequest):
    user = await require_staff(request)
    try:
        result = await letter_generation_service.generate_letter(data, actor_id(user))
        return result.to_dict()
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Letter generation error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to generate letter"
        )


@router.post("/preview")
async def preview_letter(request: Request, data: GenerateLetterRequest):
    user = await require_staff(request)
    try:
        preview = await letter_generation_service.preview_letter(data, actor_id(user))
        return preview.to_dict()
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Letter preview error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to preview letter"
        )


@router.post("/bulk")
async def bulk_generate(request: Request, data: BulkGenerateLetterRequest):
    """Generate one letter per client. Individual client failures are reported in the results."""
    user = await require_staff(request)
    try:
        result = await bulk_generate_letters(data, actor_id(user))
        return result.to_dict()
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Bulk letter generation error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run bulk letter generation"
        )


@router.get("/bulk/{zip_file_id}/download")
async def download_bulk_zip(request: Request, zip_file_id: str):
    user = await require_staff(request)
    try:
        content, filename = await download_bulk_letters_zip(zip_file_id, actor_id(user))
        return StreamingResponse(
            io.BytesIO(content),
            media_type=ZIP_MIME_TYPE,
            headers={"Content-Disposition": content_disposition(filename)}
        )
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Bulk ZIP download error for {zip_file_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to download letters archive"
        )


@router.get("")
async def list_letters(
    request: Request,
    client_id: Optional[str] = None,
    service_id: Optional[str] = None,
    template_id: Optional[str] = None,
    letter_status: Optional[LetterStatus] = Query(None, alias="status"),
    generated_by: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
):
    await require_staff(request)
    try:
        letters = await letter_generation_service.get_generated_letters(LetterFilters(
            client_id=client_id,
            service_id=service_id,
            template_id=template_id,
            status=letter_status,
            generated_by=generated_by,
            date_from=date_from,
            date_to=date_to,
            search=search,
        ))
        return _letters_response(letters)
    except Exception as e:
        logger.error(f"Letter list error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load letters"
        )


@router.get("/search")
async def search_letters(request: Request, q: str = ""):
    await require_staff(request)
    try:
        letters = await letter_generation_service.get_generated_letters(LetterFilters(search=q or None))
        return _letters_response(letters)
    except Exception as e:
        logger.error(f"Letter search error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to search letters"
        )


@router.get("/client/{client_id}")
async def letters_for_client(request: Request, client_id: str):
    await require_staff(request)
    try:
        return _letters_response(await letter_generation_service.get_letters_by_client(client_id))
    except Exception as e:
        logger.error(f"Client letters error for {client_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load client letters"
        )


@router.get("/service/{service_id}")
async def letters_for_service(request: Request, service_id: str):
    await require_staff(request)
    try:
        return _letters_response(await letter_generation_service.get_letters_by_service(service_id))
    except Exception as e:
        logger.error(f"Service letters error for {service_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load service letters"
        )


@router.get("/{letter_id}/download")
async def download_letter(request: Request, letter_id: str):
    user = await require_staff(request)
    try:
        download = await letter_generation_service.download_letter(letter_id, actor_id(user))
        return StreamingResponse(
            io.BytesIO(download.buffer),
            media_type=download.mime_type,
            headers={"Content-Disposition": content_disposition(download.filename)}
        )
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Letter download error for {letter_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to download letter"
        )


@router.get("/{letter_id}")
async def get_letter(request: Request, letter_id: str):
    await require_staff(request)
    try:
        letter = await letter_generation_service.get_generated_letter(letter_id)
        return letter.model_dump(mode="json")
    except LetterGenerationError as e:
        raise letter_http_error(e)
    except Exception as e:
        logger.error(f"Letter fetch error for {letter_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to load letter"
        )
