"""
Placeholder Parser - extracts typed placeholders from raw template text.

Supported syntax:
- Simple:            {{clientName}}  or  {{client.name}}
- Typed/formatted:   {{date:dueDate:DD MMMM YYYY}}   (exactly two colons)
- Conditional block: {{if:isVatRegistered}} ... {{endif}}
- List block:        {{list:directors}} ... {{endlist}}
- Handlebars:        {{#if cond}} ... {{else}} ... {{/if}}, {{#each items}} ... {{/each}}

Type and data source are inferred from the key name when not explicit. The
inference rules are ordered (predicate, result) tables evaluated top to bottom;
the first predicate that matches wins, so new heuristics are added as rows.

Legacy blocks pair positionally: the Nth opener closes at the Nth terminator of
the same kind. Nested or interleaved blocks of one kind are NOT supported.
"""
import re
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from models.placeholders import (
    PlaceholderSource,
    PlaceholderType,
    ParsedTemplate,
    TemplatePlaceholder,
)
from models.templates import TemplateFileFormat
from services.block_engine import block_spans, LIST_OPEN, LIST_CLOSE
from services.letter_errors import (
    TemplateFileNotFound,
    TemplateParsingFailed,
    UnsupportedFileFormat,
)

logger = logging.getLogger(__name__)


PLACEHOLDER_PATTERN = re.compile(r"\{\{[^}]+\}\}")
KEY_PATTERN = re.compile(r"^[a-zA-Z0-9_.]+$")

BLOCK_TERMINATORS = {"endif", "endlist"}
HANDLEBARS_SCOPE_BLOCKS = {"each", "with"}
HANDLEBARS_LITERALS = {"true", "false", "null", "undefined", "else"}


# ============================================================================
# INFERENCE RULE TABLES
# ============================================================================

KeyRule = Tuple[Callable[[str], bool], PlaceholderType]


def _contains(*needles: str) -> Callable[[str], bool]:
    return lambda key: any(n in key for n in needles)


def _is_plural_collection(key: str) -> bool:
    return (
        key.endswith("s")
        and not key.endswith("ss")
        and any(n in key for n in ("director", "shareholder", "item", "list"))
    )


TYPE_PREFIXES: Dict[str, PlaceholderType] = {
    "date": PlaceholderType.DATE,
    "currency": PlaceholderType.CURRENCY,
    "money": PlaceholderType.CURRENCY,
    "number": PlaceholderType.NUMBER,
    "num": PlaceholderType.NUMBER,
    "email": PlaceholderType.EMAIL,
    "phone": PlaceholderType.PHONE,
    "tel": PlaceholderType.PHONE,
    "address": PlaceholderType.ADDRESS,
    "list": PlaceholderType.LIST,
}

# Evaluated against the lower-cased key
TYPE_RULES: List[KeyRule] = [
    (lambda k: "date" in k or "time" in k or k.endswith("at") or k.endswith("on"), PlaceholderType.DATE),
    (_contains("fee", "price", "cost", "amount", "payment"), PlaceholderType.CURRENCY),
    (_contains("number", "count", "quantity", "qty"), PlaceholderType.NUMBER),
    (_contains("email"), PlaceholderType.EMAIL),
    (_contains("phone", "mobile", "tel"), PlaceholderType.PHONE),
    (lambda k: "address" in k or k in ("postcode", "zipcode"), PlaceholderType.ADDRESS),
    (_is_plural_collection, PlaceholderType.LIST),
]

SourceRule = Tuple[Callable[[str, str], bool], PlaceholderSource]

# Predicates receive (lower-cased key, root segment of the dot-path)
SOURCE_RULES: List[SourceRule] = [
    (lambda k, root: root == "profile", PlaceholderSource.PROFILE),
    (
        lambda k, root: root in ("client", "company")
        or k.startswith("client")
        or k.startswith("company")
        or any(n in k for n in ("utr", "vat", "incorporation")),
        PlaceholderSource.CLIENT,
    ),
    (
        lambda k, root: root == "service"
        or k.startswith("service")
        or any(n in k for n in ("engagement", "fee", "due")),
        PlaceholderSource.SERVICE,
    ),
    (
        lambda k, root: root in ("user", "advisor")
        or k.startswith("user")
        or "preparedby" in k
        or "accountant" in k,
        PlaceholderSource.USER,
    ),
    (lambda k, root: root == "practice" or k.startswith("practice"), PlaceholderSource.PRACTICE),
    (
        lambda k, root: root == "system" or k.startswith("current") or k.startswith("today"),
        PlaceholderSource.SYSTEM,
    ),
]

# Prefixes stripped from undotted keys when deriving a source path
SOURCE_PATH_PREFIXES = ("client", "service", "user", "practice", "company", "system")

SOURCE_PATH_NAMESPACES: Dict[PlaceholderSource, Optional[str]] = {
    PlaceholderSource.CLIENT: "client",
    PlaceholderSource.PROFILE: "client",
    PlaceholderSource.SERVICE: "service",
    PlaceholderSource.USER: "user",
    PlaceholderSource.PRACTICE: "practice",
    PlaceholderSource.SYSTEM: None,
}


def infer_type_from_prefix(prefix: str) -> PlaceholderType:
    return TYPE_PREFIXES.get(prefix.strip().lower(), PlaceholderType.TEXT)


def infer_type_from_key(key: str) -> PlaceholderType:
    lower_key = key.lower()
    for predicate, placeholder_type in TYPE_RULES:
        if predicate(lower_key):
            return placeholder_type
    return PlaceholderType.TEXT


def infer_source_from_key(key: str) -> PlaceholderSource:
    lower_key = key.lower()
    root = lower_key.split(".")[0]
    for predicate, source in SOURCE_RULES:
        if predicate(lower_key, root):
            return source
    return PlaceholderSource.MANUAL


def generate_source_path(key: str, source: PlaceholderSource) -> Optional[str]:
    """
    Derive a dotted lookup path into the data bundle for a source.

    clientName -> client.name, serviceFee -> service.fee, currentDate -> currentDate.
    Dotted keys are already paths and are returned unchanged.
    """
    if source == PlaceholderSource.MANUAL:
        return None
    if "." in key:
        return key

    clean_key = key
    lower_key = key.lower()
    for prefix in SOURCE_PATH_PREFIXES:
        if lower_key.startswith(prefix):
            clean_key = key[len(prefix):]
            break
    if clean_key:
        clean_key = clean_key[0].lower() + clean_key[1:]
    else:
        clean_key = key

    namespace = SOURCE_PATH_NAMESPACES.get(source)
    return f"{namespace}.{clean_key}" if namespace else clean_key


def generate_label(key: str) -> str:
    """clientName -> 'Client Name', tax_year -> 'Tax Year'."""
    label = re.sub(r"([A-Z])", r" \1", key).strip()
    label = label.replace("_", " ")
    words = [w for w in label.split(" ") if w]
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


# ============================================================================
# EXTRACTION
# ============================================================================

def _build_placeholder(
    key: str,
    placeholder_type: Optional[PlaceholderType] = None,
    format: Optional[str] = None,
) -> TemplatePlaceholder:
    source = infer_source_from_key(key)
    return TemplatePlaceholder(
        key=key,
        label=generate_label(key),
        type=placeholder_type or infer_type_from_key(key),
        required=False,
        format=format,
        source=source,
        source_path=generate_source_path(key, source),
    )


def _handlebars_paths(expression: str) -> List[str]:
    """Path arguments referenced by a Handlebars expression, helper names excluded."""
    paths = []
    tokens = re.findall(r'"[^"]*"|\'[^\']*\'|\(|\)|[^\s()]+', expression)
    expect_callee = True
    for token in tokens:
        if token == "(":
            expect_callee = True
            continue
        if token == ")":
            continue
        if expect_callee:
            expect_callee = False
            # A lone path with no arguments is a value, not a helper call
            if len(tokens) > 1:
                continue
        if token[0] in "\"'" or re.match(r"^-?\d+(\.\d+)?$", token):
            continue
        if "=" in token or token.startswith("@"):
            continue
        if token in HANDLEBARS_LITERALS or token == "this" or token.startswith(("this.", "../")):
            continue
        paths.append(token)
    return paths


def _classify(content: str, scope_depth: int) -> Tuple[List[TemplatePlaceholder], int]:
    """Classify one {{...}} span. Returns new placeholders and the updated scope depth."""
    content = content.strip().lstrip("{&~").rstrip("~").strip()
    if not content or content in BLOCK_TERMINATORS or content.startswith("!"):
        return [], scope_depth

    if content.startswith("if:"):
        return [_build_placeholder(content[3:].strip(), PlaceholderType.CONDITIONAL)], scope_depth
    if content.startswith("list:"):
        return [_build_placeholder(content[5:].strip(), PlaceholderType.LIST)], scope_depth

    # Handlebars block close
    if content.startswith("/"):
        if content[1:].strip() in HANDLEBARS_SCOPE_BLOCKS:
            scope_depth = max(scope_depth - 1, 0)
        return [], scope_depth

    # Handlebars block open
    if content.startswith("#"):
        parts = content[1:].split(None, 1)
        block = parts[0] if parts else ""
        expression = parts[1] if len(parts) > 1 else ""
        found = []
        if scope_depth == 0:
            paths = _handlebars_paths(expression)
            bare = len(paths) == 1 and expression.strip() == paths[0]
            for path in paths:
                if bare and block in ("if", "unless"):
                    found.append(_build_placeholder(path, PlaceholderType.CONDITIONAL))
                elif bare and block == "each":
                    found.append(_build_placeholder(path, PlaceholderType.LIST))
                else:
                    found.append(_build_placeholder(path))
        if block in HANDLEBARS_SCOPE_BLOCKS:
            scope_depth += 1
        return found, scope_depth

    if content in HANDLEBARS_LITERALS or content == "this" or content.startswith(("this.", "@", "../")):
        return [], scope_depth

    parts = content.split(":")
    if len(parts) == 3:
        type_prefix, key, fmt = (p.strip() for p in parts)
        return [_build_placeholder(key, infer_type_from_prefix(type_prefix), fmt)], scope_depth

    if scope_depth > 0:
        return [], scope_depth

    if re.search(r"[\s(]", content):
        return [_build_placeholder(path) for path in _handlebars_paths(content)], scope_depth

    return [_build_placeholder(content)], scope_depth


def extract_placeholders(text: str) -> List[TemplatePlaceholder]:
    """
    Scan every {{...}} span in one pass and return deduplicated placeholders.

    Keys are unique; the first occurrence's metadata wins. Tokens scoped to a
    list item ({{item}}, {{field}} inside list/each blocks) are item fields,
    not template-level placeholders.
    """
    if not text:
        return []

    placeholders: Dict[str, TemplatePlaceholder] = {}
    scope_depth = 0
    list_spans = block_spans(text, LIST_OPEN, LIST_CLOSE)

    for match in PLACEHOLDER_PATTERN.finditer(text):
        content = match.group(0)[2:-2]
        if any(span.inner_start <= match.start() < span.inner_end for span in list_spans):
            continue
        found, scope_depth = _classify(content, scope_depth)
        for placeholder in found:
            if placeholder.key and placeholder.key not in placeholders:
                placeholders[placeholder.key] = placeholder

    return list(placeholders.values())


# ============================================================================
# FILES & VALIDATION
# ============================================================================

def parse_template_file(file_path: str, file_format: TemplateFileFormat) -> ParsedTemplate:
    """Read a template file from disk and extract its placeholders."""
    path = Path(file_path)
    if not path.exists():
        raise TemplateFileNotFound(file_path)

    file_format = TemplateFileFormat(file_format)
    if file_format == TemplateFileFormat.DOCX:
        raise UnsupportedFileFormat(file_format.value)

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Failed to read template file {file_path}: {e}")
        raise TemplateParsingFailed(str(e), file_path=file_path)

    placeholders = extract_placeholders(content)
    logger.info(f"Parsed template {path.name}: {len(placeholders)} placeholders")

    return ParsedTemplate(
        content=content,
        placeholders=placeholders,
        metadata={"file_name": path.name, "file_format": file_format.value},
    )


def validate_template(
    name: Optional[str],
    content: Optional[str],
    placeholders: List[TemplatePlaceholder],
) -> List[Dict[str, str]]:
    """Structural checks on a template. Returns field-level errors, empty when valid."""
    errors = []
    if not name or not name.strip():
        errors.append({"field": "name", "message": "Template name is required"})
    if not content or not content.strip():
        errors.append({"field": "content", "message": "Template content is required"})

    for index, placeholder in enumerate(placeholders):
        prefix = f"placeholders[{index}]"
        if not placeholder.key:
            errors.append({"field": f"{prefix}.key", "message": "Placeholder key is required"})
        elif not KEY_PATTERN.match(placeholder.key):
            errors.append({
                "field": f"{prefix}.key",
                "message": f"Placeholder key '{placeholder.key}' may only contain letters, numbers, underscores and dots",
            })
        if not placeholder.label:
            errors.append({"field": f"{prefix}.label", "message": "Placeholder label is required"})
        if not placeholder.type:
            errors.append({"field": f"{prefix}.type", "message": "Placeholder type is required"})

    return errors
