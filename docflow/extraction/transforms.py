"""
Field Transformations

Cleanup applied to a raw extracted value according to the template
field's declared ``FieldTransform``. Steps run in a fixed order:
remove, trim, uppercase, lowercase, then the data-type conversion.
A value that cannot be converted is returned as cleaned text.
"""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import dateparser

from docflow.models import FieldTransform

_CURRENCY_SYMBOLS = re.compile(r"[£$€¥₹]")
_NON_NUMERIC = re.compile(r"[^\d.\-]")

# Numeric layouts tried before handing the string to dateparser
_DATE_PATTERNS = [
    re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$"),   # dd/mm/yyyy
    re.compile(r"^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})$"),   # yyyy-mm-dd
    re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2})$"),   # dd/mm/yy
]

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def clean_amount_value(value: Any) -> str:
    """
    Strip currency symbols, thousands separators and stray characters.

    ``"£1,234.50"`` -> ``"1234.50"``; ``".50"`` -> ``"0.50"``. The input is
    returned unchanged when nothing numeric is left.
    """
    if value is None:
        return value
    text = str(value)
    cleaned = _CURRENCY_SYMBOLS.sub("", text)
    cleaned = cleaned.replace(",", "").replace(" ", "")
    cleaned = _NON_NUMERIC.sub("", cleaned)
    if cleaned.startswith("."):
        cleaned = "0" + cleaned
    return cleaned or text


def parse_amount(value: Any) -> Optional[Decimal]:
    """Decimal amount; parentheses or a leading minus mean negative."""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip()
    negative = text.startswith("(") and text.endswith(")")
    cleaned = clean_amount_value(text)
    try:
        amount = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        return None
    return -abs(amount) if negative else amount


def _expand_year(year: int) -> int:
    if year < 100:
        return 2000 + year if year < 50 else 1900 + year
    return year


def parse_date(value: Any) -> Optional[date]:
    """Day-first date parsing; two-digit years below 50 land in 20xx."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    for index, pattern in enumerate(_DATE_PATTERNS):
        match = pattern.match(text)
        if not match:
            continue
        a, b, c = (int(g) for g in match.groups())
        if index == 1:
            year, month, day = a, b, c
        else:
            day, month, year = a, b, _expand_year(c)
        try:
            return date(year, month, day)
        except ValueError:
            return None

    parsed = dateparser.parse(text, settings={"DATE_ORDER": "DMY", "PREFER_DAY_OF_MONTH": "first"})
    return parsed.date() if parsed else None


def parse_date_iso(value: Any) -> Optional[str]:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def is_valid_date_format(value: Any) -> bool:
    """True when ``value`` is already an ISO ``YYYY-MM-DD`` date."""
    if isinstance(value, date):
        return True
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def apply_transforms(value: Any, transform: Optional[FieldTransform]) -> Any:
    """Apply a field's declared transformations to its raw value."""
    if value is None or transform is None:
        return value

    result = str(value)
    for fragment in transform.remove:
        if fragment:
            result = result.replace(fragment, "")
    if transform.trim:
        result = result.strip()
    if transform.uppercase:
        result = result.upper()
    if transform.lowercase:
        result = result.lower()

    if transform.data_type in ("currency", "number"):
        amount = parse_amount(result)
        return amount if amount is not None else result
    if transform.data_type == "date":
        return parse_date_iso(result) or result
    return result
