"""
Letter generation error taxonomy.

Every user-facing failure carries a stable machine code, a short title and a
human-readable message. Routes turn these into HTTPException responses via
to_dict(); stack traces stay in the logs.
"""
from typing import Optional, Dict, Any, List


class LetterGenerationError(Exception):
    """Base exception for the letter pipeline."""
    code = "LETTER_GENERATION_ERROR"
    title = "Letter Generation Error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "code": self.code,
            "title": self.title,
            "message": self.message,
        }
        if self.details:
            data["details"] = self.details
        return data


# ============================================================================
# NOT FOUND
# ============================================================================

class TemplateNotFound(LetterGenerationError):
    code = "TEMPLATE_NOT_FOUND"
    title = "Template Not Found"
    status_code = 404

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(
            f"The template '{template_id}' could not be found. It may have been deleted or moved.",
            {"template_id": template_id},
        )


class TemplateFileNotFound(LetterGenerationError):
    code = "TEMPLATE_FILE_NOT_FOUND"
    title = "Template File Missing"
    status_code = 404

    def __init__(self, file_path: str):
        self.file_path = file_path
        super().__init__(
            f"The template file '{file_path}' could not be found.",
            {"file_path": file_path},
        )


class ClientNotFound(LetterGenerationError):
    code = "CLIENT_NOT_FOUND"
    title = "Client Not Found"
    status_code = 404

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(
            f"The client '{client_id}' could not be found.",
            {"client_id": client_id},
        )


class ServiceNotFound(LetterGenerationError):
    code = "SERVICE_NOT_FOUND"
    title = "Service Not Found"
    status_code = 404

    def __init__(self, service_id: str):
        self.service_id = service_id
        super().__init__(
            f"The service '{service_id}' could not be found.",
            {"service_id": service_id},
        )


class LetterNotFound(LetterGenerationError):
    code = "LETTER_NOT_FOUND"
    title = "Letter Not Found"
    status_code = 404

    def __init__(self, letter_id: str):
        self.letter_id = letter_id
        super().__init__(
            f"The generated letter '{letter_id}' could not be found.",
            {"letter_id": letter_id},
        )


class ZipFileNotFound(LetterGenerationError):
    code = "ZIP_FILE_NOT_FOUND"
    title = "Archive Not Found"
    status_code = 404

    def __init__(self, zip_file_id: str):
        self.zip_file_id = zip_file_id
        super().__init__(
            f"The bulk letters archive '{zip_file_id}' could not be found. It may have expired.",
            {"zip_file_id": zip_file_id},
        )


# ============================================================================
# BAD REQUEST
# ============================================================================

class TemplateInactive(LetterGenerationError):
    code = "TEMPLATE_INACTIVE"
    title = "Template Inactive"
    status_code = 400

    def __init__(self, template_name: str):
        self.template_name = template_name
        super().__init__(
            f"The template '{template_name}' is inactive and cannot be used to generate letters.",
            {"template_name": template_name},
        )


class MissingRequiredFields(LetterGenerationError):
    code = "MISSING_REQUIRED_FIELDS"
    title = "Missing Required Information"
    status_code = 400

    def __init__(self, missing_fields: List[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(
            f"Missing required fields: {', '.join(self.missing_fields)}",
            {"missing_fields": self.missing_fields},
        )


class ValidationFailed(LetterGenerationError):
    code = "VALIDATION_FAILED"
    title = "Validation Failed"
    status_code = 400

    def __init__(self, validation_errors: List[Dict[str, Any]]):
        self.validation_errors = list(validation_errors)
        messages = [e.get("message", "") for e in self.validation_errors]
        super().__init__(
            f"Validation failed: {'; '.join(m for m in messages if m)}",
            {"validation_errors": self.validation_errors},
        )


class TemplateParsingFailed(LetterGenerationError):
    code = "TEMPLATE_PARSING_FAILED"
    title = "Template Error"
    status_code = 400

    def __init__(self, reason: str, file_path: Optional[str] = None):
        self.reason = reason
        self.file_path = file_path
        details = {"reason": reason}
        if file_path:
            details["file_path"] = file_path
        super().__init__(f"Failed to parse template: {reason}", details)


class UnsupportedFileFormat(LetterGenerationError):
    code = "UNSUPPORTED_FILE_FORMAT"
    title = "Unsupported File Format"
    status_code = 400

    def __init__(self, file_format: str):
        self.file_format = file_format
        super().__init__(
            f"Template files in {file_format} format cannot be parsed. Upload the template as Markdown.",
            {"file_format": file_format},
        )


# ============================================================================
# SERVER SIDE
# ============================================================================

class DocumentGenerationFailed(LetterGenerationError):
    code = "DOCUMENT_GENERATION_FAILED"
    title = "Document Generation Failed"
    status_code = 500

    def __init__(self, reason: str = "An unexpected error occurred while generating the document"):
        self.reason = reason
        super().__init__(reason)


class PdfGenerationFailed(DocumentGenerationFailed):
    code = "PDF_GENERATION_FAILED"
    title = "PDF Generation Failed"


class DocxGenerationFailed(DocumentGenerationFailed):
    code = "DOCX_GENERATION_FAILED"
    title = "Word Document Generation Failed"


class DocumentStorageError(LetterGenerationError):
    code = "DOCUMENT_STORAGE_ERROR"
    title = "File Storage Error"
    status_code = 500


class BulkGenerationFailed(LetterGenerationError):
    """Raised only when a batch cannot start; carries whatever was accumulated."""
    code = "BULK_GENERATION_FAILED"
    title = "Bulk Generation Failed"
    status_code = 500

    def __init__(self, reason: str, partial_results: Optional[List[Dict[str, Any]]] = None):
        self.partial_results = partial_results or []
        super().__init__(reason, {"partial_results": self.partial_results} if self.partial_results else None)
