"""
Placeholder models - the typed slots a letter template exposes.

A TemplatePlaceholder is produced by the parser from raw template text and is
frozen from then on. Resolution produces one ResolvedPlaceholder per template
placeholder; nothing is dropped, an unresolved slot carries value None and an
empty formatted value.
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from enum import Enum


class PlaceholderType(str, Enum):
    TEXT = "TEXT"
    DATE = "DATE"
    CURRENCY = "CURRENCY"
    NUMBER = "NUMBER"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    ADDRESS = "ADDRESS"
    LIST = "LIST"
    CONDITIONAL = "CONDITIONAL"


class PlaceholderSource(str, Enum):
    """Where a placeholder value is looked up when no manual value is given."""
    CLIENT = "CLIENT"
    SERVICE = "SERVICE"
    USER = "USER"
    PRACTICE = "PRACTICE"
    SYSTEM = "SYSTEM"
    PROFILE = "PROFILE"
    MANUAL = "MANUAL"


class PlaceholderErrorCode(str, Enum):
    REQUIRED_FIELD_MISSING = "REQUIRED_FIELD_MISSING"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    CLIENT_DATA_ERROR = "CLIENT_DATA_ERROR"
    SERVICE_DATA_ERROR = "SERVICE_DATA_ERROR"


class PlaceholderValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None
    min: Optional[float] = None
    max: Optional[float] = None


class TemplatePlaceholder(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    key: str = Field(..., min_length=1)  # dot-paths allowed, e.g. "client.name"
    label: str
    type: PlaceholderType = PlaceholderType.TEXT
    required: bool = False
    format: Optional[str] = None
    source: Optional[PlaceholderSource] = None
    source_path: Optional[str] = None
    default_value: Optional[Any] = None
    validation: Optional[PlaceholderValidation] = None


class PlaceholderContext(BaseModel):
    """Per-generation input. One instance per generation call."""
    client_id: str
    service_id: Optional[str] = None
    user_id: str
    manual_values: Dict[str, Any] = {}


class ResolvedPlaceholder(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    value: Optional[Any] = None
    formatted_value: str = ""
    source: PlaceholderSource
    type: PlaceholderType


class PlaceholderError(BaseModel):
    key: str
    message: str
    code: PlaceholderErrorCode


class PlaceholderResolutionResult(BaseModel):
    """Authoritative verdict on whether a generation may proceed."""
    placeholders: Dict[str, ResolvedPlaceholder] = {}
    missing_required: List[str] = []
    errors: List[PlaceholderError] = []

    @property
    def is_complete(self) -> bool:
        return not self.missing_required and not self.errors

    def raw_values(self) -> Dict[str, Any]:
        return {key: resolved.value for key, resolved in self.placeholders.items()}


class ParsedTemplate(BaseModel):
    content: str
    placeholders: List[TemplatePlaceholder] = []
    metadata: Optional[Dict[str, Any]] = None
