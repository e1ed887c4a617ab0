"""
Handlebars-compatible template evaluator with a fixed helper library.

Supported:
- Mustaches {{path}}, {{{path}}}, helper calls {{helper arg "literal" 12}}
- Subexpressions {{#if (eq status "ACTIVE")}}
- Paths: this, this.name, client.name, ../parentKey, @index, @first, @last, @key, @root.x
- Blocks: #if, #unless, #each, #with, each with {{else}}, chained {{else if ...}}
- Comments {{! ... }} / {{!-- ... --}}, whitespace control {{~ ~}}
- Standalone block tags on their own line are removed together with the line

Not supported: partials, custom block helpers, hash arguments, user-registered
helpers. Letters are rendered to PDF/DOCX rather than HTML, so output is not
HTML-escaped unless the engine is built with escape_html=True.

Date and currency helpers use services.value_formatter so output matches the
legacy block engine for the same inputs.
"""
import re
import math
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from services.letter_errors import TemplateParsingFailed
from services.value_formatter import (
    DEFAULT_DATE_FORMAT,
    format_currency,
    format_date,
    is_empty,
    number_to_string,
    parse_date,
    parse_number,
    to_fixed,
)

logger = logging.getLogger(__name__)


BLOCK_HELPERS = {"if", "unless", "each", "with"}

EXPRESSION_TOKEN = re.compile(r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\'|\(|\)|[^\s()]+')
NUMBER_LITERAL = re.compile(r"^-?\d+(\.\d+)?$")
MUSTACHE_CLOSE = re.compile(r"~?\}\}")
TRIPLE_CLOSE = re.compile(r"\}~?\}\}")
LONG_COMMENT_CLOSE = re.compile(r"--~?\}\}")


# ============================================================================
# AST
# ============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class PathExpr:
    parts: Tuple[str, ...]
    depth: int = 0          # number of ../ segments
    data: bool = False      # @index, @root, ...
    original: str = ""


@dataclass(frozen=True)
class SubExpr:
    helper: str
    params: Tuple["Expression", ...]


Expression = Union[Literal, PathExpr, SubExpr]


@dataclass
class TextNode:
    text: str


@dataclass
class MustacheNode:
    expression: Expression
    raw: bool = False


@dataclass
class BlockNode:
    helper: str
    params: List[Expression]
    body: List["Node"] = field(default_factory=list)
    inverse: List["Node"] = field(default_factory=list)


Node = Union[TextNode, MustacheNode, BlockNode]


@dataclass
class _Token:
    kind: str               # text | mustache | open | close | else | comment
    value: str = ""
    raw: bool = False
    strip_left: bool = False
    strip_right: bool = False
    offset: int = 0


# ============================================================================
# TOKENIZER
# ============================================================================

def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while True:
        start = source.find("{{", pos)
        if start == -1:
            if pos < len(source):
                tokens.append(_Token("text", source[pos:]))
            break
        if start > pos:
            tokens.append(_Token("text", source[pos:start]))

        i = start + 2
        strip_left = source.startswith("~", i)
        if strip_left:
            i += 1

        raw = False
        if source.startswith("!--", i):
            close = LONG_COMMENT_CLOSE.search(source, i + 3)
            kind, inner_start = "comment", i + 3
        elif source.startswith("{", i):
            close = TRIPLE_CLOSE.search(source, i + 1)
            kind, inner_start, raw = "mustache", i + 1, True
        else:
            close = MUSTACHE_CLOSE.search(source, i)
            kind, inner_start = "mustache", i

        if close is None:
            raise TemplateParsingFailed(f"Unclosed expression at offset {start}")

        inner = source[inner_start:close.start()].strip()
        strip_right = "~" in close.group(0)
        token = _Token(kind, inner, raw, strip_left, strip_right, start)

        if kind == "mustache" and not raw:
            if inner.startswith("!"):
                token.kind = "comment"
            elif inner.startswith("#"):
                token.kind, token.value = "open", inner[1:].strip()
            elif inner.startswith("/"):
                token.kind, token.value = "close", inner[1:].strip()
            elif inner == "else" or inner.startswith("else "):
                token.kind, token.value = "else", inner[4:].strip()
            elif inner.startswith("^") or inner.startswith(">"):
                raise TemplateParsingFailed(f"Unsupported expression '{{{{{inner}}}}}'")
            elif inner.startswith("&"):
                token.value, token.raw = inner[1:].strip(), True

        tokens.append(token)
        pos = close.end()

    _apply_whitespace_control(tokens)
    return tokens


def _apply_whitespace_control(tokens: List[_Token]) -> None:
    standalone_kinds = {"open", "close", "else", "comment"}
    last = len(tokens) - 1

    standalone = []
    for k, token in enumerate(tokens):
        if token.kind not in standalone_kinds:
            continue
        if k == 0:
            before_ok = True
        else:
            prev = tokens[k - 1]
            before_ok = prev.kind == "text" and (
                re.search(r"\n[ \t]*$", prev.value) is not None
                or (k - 1 == 0 and prev.value.strip(" \t") == "")
            )
        if k == last:
            after_ok = True
        else:
            nxt = tokens[k + 1]
            after_ok = nxt.kind == "text" and (
                re.match(r"^[ \t]*\r?\n", nxt.value) is not None
                or (k + 1 == last and nxt.value.strip(" \t") == "")
            )
        if before_ok and after_ok:
            standalone.append(k)

    for k in standalone:
        if k > 0 and tokens[k - 1].kind == "text":
            tokens[k - 1].value = re.sub(r"[ \t]*$", "", tokens[k - 1].value)
        if k < last and tokens[k + 1].kind == "text":
            tokens[k + 1].value = re.sub(r"^[ \t]*(\r?\n)?", "", tokens[k + 1].value, count=1)

    for k, token in enumerate(tokens):
        if token.strip_left and k > 0 and tokens[k - 1].kind == "text":
            tokens[k - 1].value = tokens[k - 1].value.rstrip()
        if token.strip_right and k < last and tokens[k + 1].kind == "text":
            tokens[k + 1].value = tokens[k + 1].value.lstrip()


# ============================================================================
# PARSER
# ============================================================================

def _parse_atom(token: str) -> Expression:
    if token[0] in "\"'":
        return Literal(token[1:-1].replace(f"\\{token[0]}", token[0]))
    if NUMBER_LITERAL.match(token):
        return Literal(float(token) if "." in token else int(token))
    if token in ("true", "false"):
        return Literal(token == "true")
    if token in ("null", "undefined"):
        return Literal(None)
    if "=" in token:
        raise TemplateParsingFailed(f"Hash arguments are not supported: '{token}'")
    return _parse_path(token)


def _parse_path(token: str) -> PathExpr:
    original = token
    data = token.startswith("@")
    if data:
        token = token[1:]
    depth = 0
    while token.startswith("../"):
        depth += 1
        token = token[3:]
    if token.startswith("./"):
        token = token[2:]
    parts = [p for p in re.split(r"[./]", token) if p]
    if parts and parts[0] == "this":
        parts = parts[1:]
    return PathExpr(tuple(parts), depth, data, original)


def _parse_group(tokens: List[str], pos: int, nested: bool) -> Tuple[List[Expression], int]:
    items: List[Expression] = []
    while pos < len(tokens):
        token = tokens[pos]
        if token == "(":
            inner, pos = _parse_group(tokens, pos + 1, True)
            items.append(_as_subexpression(inner))
            continue
        if token == ")":
            if not nested:
                raise TemplateParsingFailed("Unbalanced ')' in expression")
            return items, pos + 1
        items.append(_parse_atom(token))
        pos += 1
    if nested:
        raise TemplateParsingFailed("Unclosed '(' in expression")
    return items, pos


def _as_subexpression(items: List[Expression]) -> SubExpr:
    if not items or not isinstance(items[0], PathExpr) or len(items[0].parts) != 1:
        raise TemplateParsingFailed("Subexpression must start with a helper name")
    return SubExpr(items[0].parts[0], tuple(items[1:]))


def parse_expression(text: str) -> List[Expression]:
    """Split a mustache body into its expression items (callee first for helper calls)."""
    tokens = EXPRESSION_TOKEN.findall(text)
    if not tokens:
        raise TemplateParsingFailed("Empty expression")
    items, _ = _parse_group(tokens, 0, False)
    return items


class _Parser:
    def __init__(self, tokens: List[_Token]):
        self.tokens = tokens
        self.pos = 0

    def parse(self) -> List[Node]:
        nodes, terminator = self._parse_nodes()
        if terminator is not None:
            label = "{{else}}" if terminator.kind == "else" else f"{{{{/{terminator.value}}}}}"
            raise TemplateParsingFailed(f"Unexpected {label} at offset {terminator.offset}")
        return nodes

    def _parse_nodes(self) -> Tuple[List[Node], Optional[_Token]]:
        nodes: List[Node] = []
        while self.pos < len(self.tokens):
            token = self.tokens[self.pos]
            self.pos += 1
            if token.kind == "text":
                if token.value:
                    nodes.append(TextNode(token.value))
            elif token.kind == "comment":
                continue
            elif token.kind == "mustache":
                nodes.append(self._mustache(token))
            elif token.kind == "open":
                nodes.append(self._open_block(token))
            else:
                return nodes, token
        return nodes, None

    def _mustache(self, token: _Token) -> MustacheNode:
        items = parse_expression(token.value)
        if len(items) == 1:
            expression = items[0]
            if isinstance(expression, PathExpr) and _is_helper_name(expression):
                expression = SubExpr(expression.parts[0], ())
        else:
            expression = _as_subexpression(items)
        return MustacheNode(expression, token.raw)

    def _open_block(self, token: _Token) -> BlockNode:
        items = parse_expression(token.value)
        head = items[0]
        if not isinstance(head, PathExpr) or len(head.parts) != 1 or head.parts[0] not in BLOCK_HELPERS:
            raise TemplateParsingFailed(f"Unknown block helper '{token.value.split()[0]}'")
        return self._parse_block(head.parts[0], items[1:], head.parts[0], token.offset)

    def _parse_block(self, helper: str, params: List[Expression], closing: str, offset: int) -> BlockNode:
        if len(params) != 1:
            raise TemplateParsingFailed(f"#{helper} requires exactly one argument")
        block = BlockNode(helper, params)
        block.body, terminator = self._parse_nodes()

        if terminator is not None and terminator.kind == "else":
            if terminator.value:
                # {{else if cond}} chains share the outer block's close tag
                items = parse_expression(terminator.value)
                head = items[0]
                if not isinstance(head, PathExpr) or not head.parts or head.parts[0] not in BLOCK_HELPERS:
                    raise TemplateParsingFailed(f"Unsupported chained block 'else {terminator.value}'")
                block.inverse = [self._parse_block(head.parts[0], items[1:], closing, terminator.offset)]
                return block
            block.inverse, terminator = self._parse_nodes()
            if terminator is not None and terminator.kind == "else":
                raise TemplateParsingFailed(f"Duplicate {{{{else}}}} in #{helper} block")

        if terminator is None:
            raise TemplateParsingFailed(f"Unclosed #{closing} block opened at offset {offset}")
        if terminator.value != closing:
            raise TemplateParsingFailed(
                f"#{closing} block closed by {{{{/{terminator.value}}}}} at offset {terminator.offset}"
            )
        return block


# ============================================================================
# HELPERS
# ============================================================================

def js_truthy(value: Any) -> bool:
    if value is None or value is False or value == "":
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not (isinstance(value, float) and math.isnan(value))
    return True


def hb_truthy(value: Any) -> bool:
    """Handlebars #if semantics: empty lists are falsy too."""
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return js_truthy(value)


def _number_or_zero(value: Any) -> float:
    number = parse_number(value if not isinstance(value, str) else value.strip())
    return number if number is not None else 0.0


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def helper(a: Any = None, b: Any = None) -> bool:
        try:
            return bool(op(a, b))
        except TypeError:
            return False
    return helper


def helper_format_date(value: Any = None, fmt: Optional[str] = None) -> str:
    if is_empty(value) or parse_date(value) is None:
        return ""
    return format_date(value, fmt if isinstance(fmt, str) and fmt else DEFAULT_DATE_FORMAT)


def helper_calculate_annual_total(items: Any = None) -> str:
    if not isinstance(items, (list, tuple)):
        return "0.00"
    total = 0.0
    for item in items:
        if not isinstance(item, dict):
            continue
        amount = item.get("annualized") or item.get("fee") or 0
        if isinstance(amount, str):
            amount = amount.replace(",", "").replace("£", "")
        total += _number_or_zero(amount)
    return to_fixed(total, 2)


def helper_days_until_due(due: Any = None) -> int:
    if is_empty(due):
        return 0
    parsed = parse_date(due)
    if parsed is None:
        return 0
    now = datetime.now(parsed.tzinfo) if parsed.tzinfo else datetime.now()
    return math.ceil((parsed - now).total_seconds() / 86400)


def helper_today() -> str:
    return format_date(datetime.now(timezone.utc), DEFAULT_DATE_FORMAT)


def helper_capitalize(value: Any = None) -> str:
    if not value:
        return ""
    text = str(value)
    return text[:1].upper() + text[1:].lower()


def helper_default(value: Any = None, default: Any = None) -> Any:
    return value if not is_empty(value) else default


def helper_divide(a: Any = None, b: Any = None) -> float:
    divisor = _number_or_zero(b) or 1.0
    return _number_or_zero(a) / divisor


def helper_join(items: Any = None, separator: Any = None) -> str:
    if not isinstance(items, (list, tuple)):
        return ""
    sep = separator if isinstance(separator, str) else ", "
    return sep.join(stringify(item) for item in items)


HELPERS: Dict[str, Callable[..., Any]] = {
    "formatDate": helper_format_date,
    "calculateAnnualTotal": helper_calculate_annual_total,
    "daysUntilDue": helper_days_until_due,
    "currency": lambda amount=None: format_currency(amount),
    "formatCurrency": lambda amount=None: format_currency(amount),
    "eq": lambda a=None, b=None: a == b,
    "ne": lambda a=None, b=None: a != b,
    "lt": _compare(lambda a, b: a < b),
    "lte": _compare(lambda a, b: a <= b),
    "gt": _compare(lambda a, b: a > b),
    "gte": _compare(lambda a, b: a >= b),
    "and": lambda *args: all(js_truthy(a) for a in args),
    "or": lambda *args: any(js_truthy(a) for a in args),
    "not": lambda value=None: not js_truthy(value),
    "today": helper_today,
    "uppercase": lambda value=None: str(value).upper() if value else "",
    "lowercase": lambda value=None: str(value).lower() if value else "",
    "capitalize": helper_capitalize,
    "default": helper_default,
    "add": lambda a=None, b=None: _number_or_zero(a) + _number_or_zero(b),
    "subtract": lambda a=None, b=None: _number_or_zero(a) - _number_or_zero(b),
    "multiply": lambda a=None, b=None: _number_or_zero(a) * _number_or_zero(b),
    "divide": helper_divide,
    "length": lambda items=None: len(items) if isinstance(items, (list, tuple)) else 0,
    "join": helper_join,
}


def _is_helper_name(path: PathExpr) -> bool:
    return not path.data and path.depth == 0 and len(path.parts) == 1 and path.parts[0] in HELPERS


def stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return number_to_string(value)
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(v) for v in value)
    return str(value)


# ============================================================================
# RENDERER
# ============================================================================

@dataclass
class _Frame:
    context: Any
    data: Dict[str, Any] = field(default_factory=dict)


class HandlebarsTemplate:
    """A compiled template body. Rendering never mutates the AST."""

    def __init__(self, source: str, escape_html: bool = False):
        self.source = source
        self.escape_html = escape_html
        self.nodes = _Parser(_tokenize(source)).parse()

    def render(self, values: Dict[str, Any]) -> str:
        stack = [_Frame(values, {"root": values})]
        out: List[str] = []
        self._render_nodes(self.nodes, stack, out)
        return "".join(out)

    def _render_nodes(self, nodes: List[Node], stack: List[_Frame], out: List[str]) -> None:
        for node in nodes:
            if isinstance(node, TextNode):
                out.append(node.text)
            elif isinstance(node, MustacheNode):
                text = stringify(self._evaluate(node.expression, stack))
                if self.escape_html and not node.raw:
                    text = html.escape(text, quote=True)
                out.append(text)
            else:
                self._render_block(node, stack, out)

    def _render_block(self, node: BlockNode, stack: List[_Frame], out: List[str]) -> None:
        value = self._evaluate(node.params[0], stack)

        if node.helper == "if":
            self._render_nodes(node.body if hb_truthy(value) else node.inverse, stack, out)
        elif node.helper == "unless":
            self._render_nodes(node.inverse if hb_truthy(value) else node.body, stack, out)
        elif node.helper == "with":
            if hb_truthy(value):
                self._render_nodes(node.body, stack + [_Frame(value)], out)
            else:
                self._render_nodes(node.inverse, stack, out)
        elif node.helper == "each":
            if isinstance(value, dict):
                entries = list(value.items())
            elif isinstance(value, (list, tuple)):
                entries = list(enumerate(value))
            else:
                entries = []
            if not entries:
                self._render_nodes(node.inverse, stack, out)
                return
            last = len(entries) - 1
            for index, (key, item) in enumerate(entries):
                frame = _Frame(item, {"index": index, "key": key, "first": index == 0, "last": index == last})
                self._render_nodes(node.body, stack + [frame], out)

    def _evaluate(self, expression: Expression, stack: List[_Frame]) -> Any:
        if isinstance(expression, Literal):
            return expression.value
        if isinstance(expression, SubExpr):
            helper = HELPERS.get(expression.helper)
            if helper is None:
                raise TemplateParsingFailed(f"Missing helper: '{expression.helper}'")
            args = [self._evaluate(param, stack) for param in expression.params]
            return helper(*args)
        return self._resolve_path(expression, stack)

    def _resolve_path(self, path: PathExpr, stack: List[_Frame]) -> Any:
        if path.data:
            if not path.parts:
                return None
            if path.parts[0] == "root":
                return _walk(stack[0].context, path.parts[1:])
            for frame in reversed(stack[:len(stack) - path.depth] or stack[:1]):
                if path.parts[0] in frame.data:
                    return _walk(frame.data[path.parts[0]], path.parts[1:])
            return None
        index = max(len(stack) - 1 - path.depth, 0)
        return _walk(stack[index].context, path.parts)


def _walk(value: Any, parts: Tuple[str, ...]) -> Any:
    current = value
    for part in parts:
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, (list, tuple)):
            if part == "length":
                current = len(current)
            elif part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return None
        else:
            return None
        if current is None:
            return None
    return current


def compile_template(source: str, escape_html: bool = False) -> HandlebarsTemplate:
    return HandlebarsTemplate(source, escape_html=escape_html)


def evaluate(body: str, values: Dict[str, Any]) -> str:
    """Populate a Handlebars-syntax template body."""
    return compile_template(body).render(values)
