"""
Letter template models.

Templates are versioned: every update is copy-on-write, the previous state is
written to template_versions before the version counter is bumped. Deleting a
template removes its metadata record only; the stored content file is kept so
historical letters stay auditable.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

from models.placeholders import TemplatePlaceholder


class TemplateCategory(str, Enum):
    TAX = "TAX"
    HMRC = "HMRC"
    VAT = "VAT"
    COMPLIANCE = "COMPLIANCE"
    GENERAL = "GENERAL"
    ENGAGEMENT = "ENGAGEMENT"
    CLIENT = "CLIENT"


class TemplateFileFormat(str, Enum):
    MD = "MD"
    DOCX = "DOCX"


class TemplateMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    author: Optional[str] = None
    tags: List[str] = []
    usage_count: int = 0
    last_used: Optional[datetime] = None
    notes: Optional[str] = None


class Template(BaseModel):
    model_config = ConfigDict(extra="ignore")

    template_id: str = Field(default_factory=lambda: f"tpl_{uuid.uuid4().hex[:12]}")
    name: str
    description: str = ""
    category: TemplateCategory = TemplateCategory.GENERAL
    file_name: str
    file_format: TemplateFileFormat = TemplateFileFormat.MD
    file_id: Optional[str] = None  # stored content in the document store
    placeholders: List[TemplatePlaceholder] = []
    is_active: bool = True
    version: int = 1
    created_by: str = "system"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Optional[TemplateMetadata] = None


class TemplateVersionSnapshot(BaseModel):
    """Immutable copy of a template as it was before an update."""
    model_config = ConfigDict(extra="ignore")

    snapshot_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    version: int
    template: Dict[str, Any]
    replaced_by: str
    replaced_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TemplateCreate(BaseModel):
    name: str
    description: str = ""
    category: TemplateCategory = TemplateCategory.GENERAL
    file_name: Optional[str] = None
    file_format: TemplateFileFormat = TemplateFileFormat.MD
    content: str
    placeholders: Optional[List[TemplatePlaceholder]] = None
    is_active: bool = True
    metadata: Optional[TemplateMetadata] = None


class TemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[TemplateCategory] = None
    content: Optional[str] = None
    placeholders: Optional[List[TemplatePlaceholder]] = None
    is_active: Optional[bool] = None
    metadata: Optional[TemplateMetadata] = None


class TemplateFilters(BaseModel):
    category: Optional[TemplateCategory] = None
    is_active: Optional[bool] = None
    search: Optional[str] = None
    tags: Optional[List[str]] = None
    created_by: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
