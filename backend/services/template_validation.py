"""
Input validation and sanitisation for template authoring and letter requests.

Validators collect every problem as a {field, message} entry and raise a single
ValidationFailed, so the caller sees all issues at once.
"""
import re
import logging
from typing import Any, Dict, List, Optional

from models.letters import BulkGenerateLetterRequest, GenerateLetterRequest, OutputFormat
from models.placeholders import TemplatePlaceholder
from models.templates import TemplateCreate, TemplateUpdate
from services.letter_errors import ValidationFailed
from services.placeholder_parser import KEY_PATTERN, validate_template

logger = logging.getLogger(__name__)


MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
MAX_CONTENT_LENGTH = 1_000_000

DANGEROUS_PATTERNS = [
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
    re.compile(r"<object", re.IGNORECASE),
    re.compile(r"<embed", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
]

MANUAL_VALUE_KEY = re.compile(r"^[a-zA-Z0-9_.]+$")


def sanitize_template_content(content: Optional[str]) -> Optional[str]:
    """Strip script-like constructs from free text. Surrounding whitespace is trimmed."""
    if not content:
        return content
    sanitized = content
    for pattern in DANGEROUS_PATTERNS:
        sanitized = pattern.sub("", sanitized)
    sanitized = sanitized.strip()
    if sanitized != content.strip():
        logger.warning("Potentially dangerous content was sanitized from input")
    return sanitized


def sanitize_value(value: Any) -> Any:
    """Sanitise a manual placeholder value, recursing into lists and mappings."""
    if isinstance(value, str):
        return sanitize_template_content(value)
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    if isinstance(value, dict):
        return {k: sanitize_value(v) for k, v in value.items()}
    return value


def sanitize_placeholder_values(values: Dict[str, Any]) -> Dict[str, Any]:
    sanitized = {}
    for key, value in (values or {}).items():
        if not MANUAL_VALUE_KEY.match(key):
            logger.warning(f"Skipping invalid placeholder key: {key}")
            continue
        sanitized[key] = sanitize_value(value)
    return sanitized


# ============================================================================
# TEMPLATE DEFINITIONS
# ============================================================================

def validate_placeholder_definitions(placeholders: List[TemplatePlaceholder]) -> List[Dict[str, str]]:
    """Duplicate keys, key format, labels and validation-rule consistency."""
    errors = []
    seen = set()
    for placeholder in placeholders:
        key = placeholder.key
        field = f"placeholders.{key}"
        if key in seen:
            errors.append({"field": field, "message": f"Duplicate placeholder key: {key}"})
        seen.add(key)

        if not KEY_PATTERN.match(key):
            errors.append({
                "field": field,
                "message": f"Invalid placeholder key: {key}. Must contain only letters, numbers, underscores, and dots",
            })
        if not placeholder.label or not placeholder.label.strip():
            errors.append({"field": field, "message": f"Placeholder {key} must have a label"})

        rules = placeholder.validation
        if not rules:
            continue
        if rules.min_length is not None and rules.min_length < 0:
            errors.append({"field": field, "message": f"Invalid min_length for {key}: must be non-negative"})
        if rules.max_length is not None and rules.max_length < 0:
            errors.append({"field": field, "message": f"Invalid max_length for {key}: must be non-negative"})
        if rules.min_length is not None and rules.max_length is not None and rules.min_length > rules.max_length:
            errors.append({"field": field, "message": f"Invalid length constraints for {key}: min_length cannot exceed max_length"})
        if rules.min is not None and rules.max is not None and rules.min > rules.max:
            errors.append({"field": field, "message": f"Invalid numeric constraints for {key}: min cannot exceed max"})
        if rules.pattern:
            try:
                re.compile(rules.pattern)
            except re.error as e:
                errors.append({"field": field, "message": f"Invalid regex pattern for {key}: {e}"})
    return errors


def _length_errors(name: Optional[str], description: Optional[str]) -> List[Dict[str, str]]:
    errors = []
    if name and len(name) > MAX_NAME_LENGTH:
        errors.append({"field": "name", "message": f"Template name must not exceed {MAX_NAME_LENGTH} characters"})
    if description and len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append({
            "field": "description",
            "message": f"Template description must not exceed {MAX_DESCRIPTION_LENGTH} characters",
        })
    return errors


def _content_errors(content: str) -> List[Dict[str, str]]:
    if len(content) > MAX_CONTENT_LENGTH:
        return [{"field": "content", "message": "Template content exceeds maximum size (1MB)"}]
    return []


def validate_create_template(dto: TemplateCreate) -> TemplateCreate:
    """Validate a new template and return a sanitised copy. Raises ValidationFailed."""
    placeholders = dto.placeholders or []
    errors = validate_template(dto.name, dto.content, [])
    errors.extend(_length_errors(dto.name, dto.description))
    if dto.content:
        errors.extend(_content_errors(dto.content))
    errors.extend(validate_placeholder_definitions(placeholders))
    if errors:
        raise ValidationFailed(errors)

    return dto.model_copy(update={
        "name": sanitize_template_content(dto.name),
        "description": sanitize_template_content(dto.description) or "",
        "content": sanitize_template_content(dto.content),
    })


def validate_update_template(dto: TemplateUpdate) -> TemplateUpdate:
    """Only the supplied fields are checked. Raises ValidationFailed."""
    errors = []
    if dto.name is not None and not dto.name.strip():
        errors.append({"field": "name", "message": "Template name cannot be empty"})
    if dto.content is not None:
        if not dto.content.strip():
            errors.append({"field": "content", "message": "Template content cannot be empty"})
        errors.extend(_content_errors(dto.content))
    errors.extend(_length_errors(dto.name, dto.description))
    if dto.placeholders is not None:
        errors.extend(validate_placeholder_definitions(dto.placeholders))
    if errors:
        raise ValidationFailed(errors)

    updates = {}
    for field in ("name", "description", "content"):
        value = getattr(dto, field)
        if value is not None:
            updates[field] = sanitize_template_content(value)
    return dto.model_copy(update=updates)


# ============================================================================
# GENERATION REQUESTS
# ============================================================================

def _format_errors(output_formats: Optional[List[Any]]) -> List[Dict[str, str]]:
    errors = []
    allowed = {f.value for f in OutputFormat}
    for fmt in output_formats or []:
        value = fmt.value if isinstance(fmt, OutputFormat) else str(fmt)
        if value not in allowed:
            errors.append({"field": "output_formats", "message": f"Invalid output format: {value}. Must be PDF or DOCX"})
    return errors


def validate_generate_request(request: GenerateLetterRequest) -> GenerateLetterRequest:
    """Required ids and output formats. Returns a copy with sanitised manual values."""
    errors = []
    if not request.template_id or not request.template_id.strip():
        errors.append({"field": "template_id", "message": "Template ID is required"})
    if not request.client_id or not request.client_id.strip():
        errors.append({"field": "client_id", "message": "Client ID is required"})
    errors.extend(_format_errors(request.output_formats))
    if errors:
        raise ValidationFailed(errors)
    return request.model_copy(update={
        "placeholder_values": sanitize_placeholder_values(request.placeholder_values),
    })


def validate_bulk_request(request: BulkGenerateLetterRequest) -> BulkGenerateLetterRequest:
    errors = []
    if not request.template_id or not request.template_id.strip():
        errors.append({"field": "template_id", "message": "Template ID is required"})
    if not [client_id for client_id in request.client_ids if client_id and client_id.strip()]:
        errors.append({"field": "client_ids", "message": "At least one client ID is required"})
    errors.extend(_format_errors(request.output_formats))
    if errors:
        raise ValidationFailed(errors)
    return request.model_copy(update={
        "placeholder_values": sanitize_placeholder_values(request.placeholder_values),
    })
