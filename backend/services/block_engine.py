"""
Legacy block template evaluator.

Three ordered passes over the body:
1. {{if:cond}} ... {{endif}} conditionals
2. {{list:key}} ... {{endlist}} repeated sections
3. {{key}} simple substitution (list/dict values are skipped, pass 2 owns them)

Blocks are located once as immutable spans over the original text. A
replacement plan is built from those spans and applied from the highest offset
to the lowest, so earlier offsets stay valid while later blocks are rewritten.

Openers pair with terminators positionally (Nth opener <-> Nth terminator).
Nesting is not supported; an overlapping pair is left untouched and logged.
"""
import re
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Pattern

from services.value_formatter import number_to_string

logger = logging.getLogger(__name__)


IF_OPEN = re.compile(r"\{\{if:([a-zA-Z0-9_]+)\}\}")
IF_CLOSE = re.compile(r"\{\{endif\}\}")
LIST_OPEN = re.compile(r"\{\{list:([a-zA-Z0-9_]+)\}\}")
LIST_CLOSE = re.compile(r"\{\{endlist\}\}")


@dataclass(frozen=True)
class TextSpan:
    """A paired block: [start, end) covers both tags, [inner_start, inner_end) the content."""
    key: str
    start: int
    end: int
    inner_start: int
    inner_end: int


@dataclass(frozen=True)
class Replacement:
    start: int
    end: int
    text: str


def block_spans(text: str, opener: Pattern, terminator: Pattern) -> List[TextSpan]:
    """Pair openers and terminators by position in document order."""
    openers = list(opener.finditer(text))
    closers = list(terminator.finditer(text))
    spans = []
    for open_match, close_match in zip(openers, closers):
        if close_match.start() < open_match.end():
            logger.warning(
                f"Block terminator at offset {close_match.start()} precedes its opener "
                f"'{open_match.group(0)}', block ignored"
            )
            continue
        spans.append(TextSpan(
            key=open_match.group(1),
            start=open_match.start(),
            end=close_match.end(),
            inner_start=open_match.end(),
            inner_end=close_match.start(),
        ))
    return spans


def apply_plan(text: str, plan: List[Replacement]) -> str:
    """Apply replacements highest offset first. Overlapping entries are skipped."""
    result = text
    floor = len(text)
    for replacement in sorted(plan, key=lambda r: r.start, reverse=True):
        if replacement.end > floor:
            logger.warning(
                f"Overlapping block at offsets {replacement.start}-{replacement.end} skipped; "
                f"nested blocks are not supported"
            )
            continue
        result = result[:replacement.start] + replacement.text + result[replacement.end:]
        floor = replacement.start
    return result


def is_truthy(value: Any) -> bool:
    if value is None or value == "":
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    if isinstance(value, (int, float)):
        return value != 0
    return True


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return number_to_string(value)
    return str(value)


# ============================================================================
# PASSES
# ============================================================================

def _render_blocks(
    text: str,
    opener: Pattern,
    terminator: Pattern,
    render: Callable[[TextSpan, str], str],
) -> str:
    plan = [
        Replacement(span.start, span.end, render(span, text[span.inner_start:span.inner_end]))
        for span in block_spans(text, opener, terminator)
    ]
    return apply_plan(text, plan)


def process_conditionals(text: str, values: Dict[str, Any]) -> str:
    return _render_blocks(
        text,
        IF_OPEN,
        IF_CLOSE,
        lambda span, inner: inner if is_truthy(values.get(span.key)) else "",
    )


def render_list_items(inner: str, items: Any) -> str:
    if not isinstance(items, (list, tuple)) or not items:
        return ""
    rendered = []
    for item in items:
        section = inner
        if isinstance(item, dict):
            for field, field_value in item.items():
                section = section.replace(f"{{{{{field}}}}}", to_text(field_value))
        else:
            section = section.replace("{{item}}", to_text(item))
        rendered.append(section)
    return "\n".join(rendered)


def process_lists(text: str, values: Dict[str, Any]) -> str:
    return _render_blocks(
        text,
        LIST_OPEN,
        LIST_CLOSE,
        lambda span, inner: render_list_items(inner, values.get(span.key)),
    )


def substitute_simple(text: str, values: Dict[str, Any]) -> str:
    for key, value in values.items():
        if isinstance(value, (list, tuple, dict)):
            continue
        text = text.replace(f"{{{{{key}}}}}", to_text(value))
    return text


def evaluate(body: str, values: Dict[str, Any]) -> str:
    """Populate a legacy-syntax template body."""
    text = process_conditionals(body, values)
    text = process_lists(text, values)
    return substitute_simple(text, values)
