"""
Typed value formatting and validation for letter placeholders.

Shared by the placeholder resolver and the Handlebars helper library so a date
or currency renders identically whichever template syntax is used.

UK conventions: dates default to DD/MM/YYYY, currency is pounds with grouped
thousands and no pence.
"""
import re
import math
from datetime import date, datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional

from models.placeholders import PlaceholderType, TemplatePlaceholder

DEFAULT_DATE_FORMAT = "DD/MM/YYYY"
CURRENCY_SYMBOL = "£"

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]
SHORT_MONTH_NAMES = [name[:3] for name in MONTH_NAMES]

ADDRESS_PARTS = ("line1", "line2", "city", "county", "postcode", "country")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s+\-()]+$")
LEADING_NUMBER = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")

# Accepted textual date layouts after ISO-8601
DATE_INPUT_FORMATS = ("%d/%m/%Y", "%d-%m-%Y", "%d %B %Y", "%d %b %Y", "%B %d, %Y")


def is_empty(value: Any) -> bool:
    return value is None or value == ""


# ============================================================================
# PARSING
# ============================================================================

def parse_date(value: Any) -> Optional[datetime]:
    """Best-effort conversion of a stored value to a datetime. None when unparseable."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as stored by the JS clients
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None

    text = value.strip()
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        pass
    for layout in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(text, layout)
        except ValueError:
            continue
    return None


def parse_number(value: Any) -> Optional[float]:
    """Leading-numeric parse: '1500', '1500.50', '12abc' -> 12.0. None when not numeric."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return None if math.isnan(number) else number
    if not isinstance(value, str):
        return None
    match = LEADING_NUMBER.match(value)
    if not match:
        return None
    return float(match.group(0))


def number_to_string(number: float) -> str:
    """Shortest natural rendering: 15.0 -> '15', 2.5 -> '2.5'."""
    if float(number).is_integer():
        return str(int(number))
    return repr(float(number))


def to_fixed(number: float, decimals: int) -> str:
    quantum = Decimal(1).scaleb(-decimals)
    return str(Decimal(str(number)).quantize(quantum, rounding=ROUND_HALF_UP))


# ============================================================================
# FORMATTERS
# ============================================================================

def format_date(value: Any, fmt: Optional[str] = None) -> str:
    """
    Token-substitution date formatter.

    Supported tokens: YYYY, YY, MMMM, MMM, MM, DD. Each token is substituted
    once, in that order. Unparseable input is returned as a string unchanged.
    """
    fmt = fmt or DEFAULT_DATE_FORMAT
    parsed = parse_date(value)
    if parsed is None:
        return str(value)

    year = str(parsed.year)
    return (
        fmt.replace("YYYY", year, 1)
        .replace("YY", year[-2:], 1)
        .replace("MMMM", MONTH_NAMES[parsed.month - 1], 1)
        .replace("MMM", SHORT_MONTH_NAMES[parsed.month - 1], 1)
        .replace("MM", f"{parsed.month:02d}", 1)
        .replace("DD", f"{parsed.day:02d}", 1)
    )


def format_currency(value: Any) -> str:
    """1500 -> '£1,500'; '2,500.00' -> '£2,500'; None -> '£0'."""
    if is_empty(value):
        return f"{CURRENCY_SYMBOL}0"

    normalized = value.replace(",", "").strip() if isinstance(value, str) else value
    number = parse_number(normalized)
    if number is None:
        return re.sub(r"\.00\b", "", str(value))

    whole = int(Decimal(str(abs(number))).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return f"{CURRENCY_SYMBOL}{whole:,}"


def format_number(value: Any, fmt: Optional[str] = None) -> str:
    number = parse_number(value)
    if number is None:
        return str(value)

    if fmt:
        decimal_match = re.search(r"\.(\d+)", fmt)
        if decimal_match:
            return to_fixed(number, len(decimal_match.group(1)))

    return number_to_string(number)


def format_phone(value: Any) -> str:
    """UK grouping: 447700900123 -> '+44 7700 900123', 01234567890 -> '01234 567890'."""
    digits = re.sub(r"\D", "", str(value))
    if digits.startswith("44"):
        return f"+{digits[:2]} {digits[2:6]} {digits[6:]}"
    if digits.startswith("0") and len(digits) == 11:
        return f"{digits[:5]} {digits[5:]}"
    return str(value)


def format_address(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return "\n".join(str(value[part]) for part in ADDRESS_PARTS if value.get(part))
    return str(value)


def format_value(value: Any, placeholder_type: PlaceholderType, fmt: Optional[str] = None) -> str:
    """Render a resolved value as the string that lands in the letter."""
    if value is None:
        return ""

    if placeholder_type == PlaceholderType.DATE:
        return format_date(value, fmt or DEFAULT_DATE_FORMAT)
    if placeholder_type == PlaceholderType.CURRENCY:
        return format_currency(value)
    if placeholder_type == PlaceholderType.NUMBER:
        return format_number(value, fmt)
    if placeholder_type == PlaceholderType.PHONE:
        return format_phone(value)
    if placeholder_type == PlaceholderType.EMAIL:
        return str(value).lower()
    if placeholder_type == PlaceholderType.ADDRESS:
        return format_address(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ============================================================================
# VALIDATION
# ============================================================================

def validate_value(value: Any, placeholder: TemplatePlaceholder) -> List[str]:
    """
    Type checks plus declared constraints for a non-empty value.

    Returns every message that applies so callers can report all problems at once.
    """
    errors = []
    label = placeholder.label
    placeholder_type = placeholder.type
    text = str(value)

    if placeholder_type == PlaceholderType.EMAIL:
        if not EMAIL_PATTERN.match(text):
            errors.append(f"{label} must be a valid email address")

    elif placeholder_type == PlaceholderType.PHONE:
        digit_count = len(re.sub(r"\D", "", text))
        if not PHONE_PATTERN.match(text) or digit_count < 10:
            errors.append(f"{label} must be a valid phone number")

    elif placeholder_type == PlaceholderType.DATE:
        if parse_date(value) is None:
            errors.append(f"{label} must be a valid date")

    elif placeholder_type in (PlaceholderType.NUMBER, PlaceholderType.CURRENCY):
        normalized = text.replace(",", "") if isinstance(value, str) else value
        if parse_number(normalized) is None:
            errors.append(f"{label} must be a valid number")

    rules = placeholder.validation
    if rules:
        if rules.min_length is not None and len(text) < rules.min_length:
            errors.append(f"{label} must be at least {rules.min_length} characters")
        if rules.max_length is not None and len(text) > rules.max_length:
            errors.append(f"{label} must be at most {rules.max_length} characters")
        if rules.pattern:
            try:
                if not re.search(rules.pattern, text):
                    errors.append(f"{label} does not match the required format")
            except re.error:
                errors.append(f"{label} has an invalid validation pattern")

        if placeholder_type in (PlaceholderType.NUMBER, PlaceholderType.CURRENCY):
            number = parse_number(text.replace(",", ""))
            if number is not None:
                if rules.min is not None and number < rules.min:
                    errors.append(f"{label} must be at least {number_to_string(rules.min)}")
                if rules.max is not None and number > rules.max:
                    errors.append(f"{label} must be at most {number_to_string(rules.max)}")

    return errors
