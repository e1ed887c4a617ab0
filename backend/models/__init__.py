"""Letter generation data models"""

from .core import (
    UserRole,
    AuditAction,
    AuditLog,
)
from .placeholders import (
    PlaceholderType,
    PlaceholderSource,
    PlaceholderErrorCode,
    PlaceholderValidation,
    TemplatePlaceholder,
    PlaceholderContext,
    ResolvedPlaceholder,
    PlaceholderError,
    PlaceholderResolutionResult,
    ParsedTemplate,
)
from .templates import (
    TemplateCategory,
    TemplateFileFormat,
    TemplateMetadata,
    Template,
    TemplateVersionSnapshot,
    TemplateCreate,
    TemplateUpdate,
    TemplateFilters,
)
from .letters import (
    LetterStatus,
    OutputFormat,
    MIME_TYPES,
    ZIP_MIME_TYPE,
    GeneratedLetter,
    GenerateLetterRequest,
    BulkGenerateLetterRequest,
    LetterFilters,
    GenerateLetterResult,
    PreviewResult,
    LetterDownload,
    BulkGenerationItem,
    BulkGenerationResult,
)

__all__ = [
    # Core
    "UserRole",
    "AuditAction",
    "AuditLog",
    # Placeholders
    "PlaceholderType",
    "PlaceholderSource",
    "PlaceholderErrorCode",
    "PlaceholderValidation",
    "TemplatePlaceholder",
    "PlaceholderContext",
    "ResolvedPlaceholder",
    "PlaceholderError",
    "PlaceholderResolutionResult",
    "ParsedTemplate",
    # Templates
    "TemplateCategory",
    "TemplateFileFormat",
    "TemplateMetadata",
    "Template",
    "TemplateVersionSnapshot",
    "TemplateCreate",
    "TemplateUpdate",
    "TemplateFilters",
    # Letters
    "LetterStatus",
    "OutputFormat",
    "MIME_TYPES",
    "ZIP_MIME_TYPE",
    "GeneratedLetter",
    "GenerateLetterRequest",
    "BulkGenerateLetterRequest",
    "LetterFilters",
    "GenerateLetterResult",
    "PreviewResult",
    "LetterDownload",
    "BulkGenerationItem",
    "BulkGenerationResult",
]
