"""
Template evaluation entry point.

A template body is evaluated by exactly one of two strategies, chosen once per
body by sniffing for Handlebars block syntax:

    LEGACY      {{if:x}} / {{list:x}} blocks + {{key}} substitution
    HANDLEBARS  {{#if}} / {{#each}} blocks + fixed helper library

Both expose evaluate(body, values) -> str.
"""
import re
import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from models.placeholders import PlaceholderResolutionResult, PlaceholderType
from services import block_engine, handlebars_engine

logger = logging.getLogger(__name__)


class TemplateSyntax(str, Enum):
    LEGACY = "LEGACY"
    HANDLEBARS = "HANDLEBARS"


HANDLEBARS_MARKERS = re.compile(
    r"\{\{#if\s|\{\{#each\s|\{\{#unless\s|\{\{#with\s|\{\{/if\}\}|\{\{/each\}\}|\{\{else\}\}"
)

EVALUATORS: Dict[TemplateSyntax, Callable[[str, Dict[str, Any]], str]] = {
    TemplateSyntax.LEGACY: block_engine.evaluate,
    TemplateSyntax.HANDLEBARS: handlebars_engine.evaluate,
}

# Resolved values of these types go to the evaluators unformatted
RAW_VALUE_TYPES = {PlaceholderType.LIST, PlaceholderType.CONDITIONAL}


def select_syntax(body: str) -> TemplateSyntax:
    if HANDLEBARS_MARKERS.search(body or ""):
        return TemplateSyntax.HANDLEBARS
    return TemplateSyntax.LEGACY


def evaluate(body: str, values: Dict[str, Any], syntax: Optional[TemplateSyntax] = None) -> str:
    syntax = syntax or select_syntax(body)
    logger.debug(f"Evaluating template body with {syntax.value} syntax")
    return EVALUATORS[syntax](body, values)


def _assign_nested(values: Dict[str, Any], dotted_key: str, value: Any) -> None:
    parts = dotted_key.split(".")
    current = values
    for part in parts[:-1]:
        existing = current.get(part)
        if not isinstance(existing, dict):
            existing = {}
            current[part] = existing
        current = existing
    current[parts[-1]] = value


def build_template_values(
    resolution: PlaceholderResolutionResult,
    show_missing: bool = False,
) -> Dict[str, Any]:
    """
    Evaluator input from a resolution result.

    Scalars and mappings such as addresses use their formatted value; lists,
    booleans and conditional/list placeholders keep the raw value so blocks can
    iterate and test them. Dotted keys are also assigned as nested mappings for Handlebars
    paths. With show_missing, empty values render as [key] for previews.
    """
    values: Dict[str, Any] = {}
    for key, resolved in resolution.placeholders.items():
        raw = resolved.value
        if isinstance(raw, (list, tuple, bool)) or resolved.type in RAW_VALUE_TYPES:
            value = raw
        else:
            value = resolved.formatted_value
        if show_missing and (value is None or value == ""):
            value = f"[{key}]"
        values[key] = value
        if "." in key:
            _assign_nested(values, key, value)
    return values
