"""
Generated letter models and single/bulk generation requests and results.

A GeneratedLetter captures the raw placeholder values used at generation time
rather than a pointer to the template body, so a historical letter stays
stable when its template is later edited.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum

from models.placeholders import PlaceholderError


class LetterStatus(str, Enum):
    DRAFT = "DRAFT"
    GENERATED = "GENERATED"
    DOWNLOADED = "DOWNLOADED"
    SENT = "SENT"
    ARCHIVED = "ARCHIVED"


class OutputFormat(str, Enum):
    PDF = "PDF"
    DOCX = "DOCX"

    @property
    def extension(self) -> str:
        return self.value.lower()

    @property
    def mime_type(self) -> str:
        return MIME_TYPES[self]


MIME_TYPES = {
    OutputFormat.PDF: "application/pdf",
    OutputFormat.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
ZIP_MIME_TYPE = "application/zip"


class GeneratedLetter(BaseModel):
    model_config = ConfigDict(extra="ignore")

    letter_id: str
    template_id: str
    template_name: str
    template_version: int = 1
    client_id: str
    client_name: str
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    placeholder_values: Dict[str, Any] = {}
    document_id: Optional[str] = None
    output_formats: List[OutputFormat] = [OutputFormat.PDF]
    status: LetterStatus = LetterStatus.DRAFT
    download_count: int = 0
    last_downloaded_at: Optional[datetime] = None
    generated_by: str
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# REQUESTS
# ============================================================================

class GenerateLetterRequest(BaseModel):
    template_id: str
    client_id: str
    service_id: Optional[str] = None
    placeholder_values: Dict[str, Any] = {}
    output_formats: Optional[List[OutputFormat]] = None
    auto_save: bool = True


class BulkGenerateLetterRequest(BaseModel):
    template_id: str
    client_ids: List[str]
    service_id: Optional[str] = None
    placeholder_values: Dict[str, Any] = {}
    output_formats: Optional[List[OutputFormat]] = None


class LetterFilters(BaseModel):
    client_id: Optional[str] = None
    service_id: Optional[str] = None
    template_id: Optional[str] = None
    status: Optional[LetterStatus] = None
    generated_by: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class GenerateLetterResult:
    letter: GeneratedLetter
    documents: Dict[OutputFormat, bytes]
    content: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "letter": self.letter.model_dump(mode="json"),
            "formats": [fmt.value for fmt in self.documents],
            "document_id": self.letter.document_id,
        }


@dataclass
class PreviewResult:
    content: str
    html: str
    placeholders: Dict[str, Any]
    missing_required: List[str]
    errors: List[PlaceholderError]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "html": self.html,
            "placeholders": self.placeholders,
            "missing_required": self.missing_required,
            "errors": [e.model_dump(mode="json") for e in self.errors],
        }


@dataclass
class LetterDownload:
    buffer: bytes
    filename: str
    mime_type: str


@dataclass
class BulkGenerationItem:
    client_id: str
    client_name: str
    success: bool
    letter_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "client_id": self.client_id,
            "client_name": self.client_name,
            "success": self.success,
        }
        if self.letter_id:
            data["letter_id"] = self.letter_id
        if self.error:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class BulkGenerationResult:
    total_requested: int
    success_count: int
    failure_count: int
    results: List[BulkGenerationItem] = field(default_factory=list)
    zip_file_id: Optional[str] = None
    summary: str = ""

    @classmethod
    def from_results(
        cls,
        results: List[BulkGenerationItem],
        zip_file_id: Optional[str] = None,
    ) -> "BulkGenerationResult":
        """Derive every count from the accumulated items and nothing else."""
        success_count = sum(1 for item in results if item.success)
        failure_count = len(results) - success_count
        total = len(results)
        return cls(
            total_requested=total,
            success_count=success_count,
            failure_count=failure_count,
            results=list(results),
            zip_file_id=zip_file_id,
            summary=(
                f"Bulk generation completed: {success_count} successful, "
                f"{failure_count} failed out of {total} total"
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requested": self.total_requested,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "results": [item.to_dict() for item in self.results],
            "zip_file_id": self.zip_file_id,
            "summary": self.summary,
        }
