"""
Basic (regex) extractor.

Fallback used when no coordinate template resolves. Each field owns an
ordered list of ``PatternRule`` entries, most specific first; the first
match whose value passes the rule's validator wins.
"""

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Pattern

from docflow.extraction.transforms import parse_amount

PROCESSING_METHOD = "local_basic"

_PLACEHOLDER_WORDS = re.compile(r"^(no|yes|na|n/a)$", re.IGNORECASE)
_PO_STOP_WORDS = re.compile(r"^(no|yes|na|n/a|order|date|packing|list|number)$", re.IGNORECASE)
_LOOKS_LIKE_DATE = re.compile(r"^\d{1,2}[/\-]\d{1,2}")

Validator = Callable[[str], bool]


def length_between(low: int, high: int) -> Validator:
    def check(value: str) -> bool:
        return low <= len(value) <= high and not _PLACEHOLDER_WORDS.match(value)
    return check


def _any(value: str) -> bool:
    return bool(value)


@dataclass(frozen=True)
class PatternRule:
    """One candidate pattern for a field, with its acceptance test."""
    pattern: Pattern
    validator: Validator = _any
    group: int = 1

    def find(self, text: str) -> Optional[str]:
        match = self.pattern.search(text)
        if not match or not match.group(self.group):
            return None
        value = match.group(self.group).strip()
        return value if self.validator(value) else None


def _rules(validator: Validator, *patterns: str, flags: int = re.IGNORECASE) -> List[PatternRule]:
    return [PatternRule(re.compile(p, flags), validator) for p in patterns]


_AMOUNT = r"[£$€]?\s*([\d,]+\.?\d{2})"

INVOICE_NUMBER_RULES = _rules(
    length_between(4, 50),
    r"invoice\s+no\.?\s*:?\s*(\d{4,}[A-Z0-9\-_]*)",
    r"invoice\s*#\s*:?\s*([A-Z0-9\-_]+)",
    r"invoice\s+number\s*:?\s*([A-Z0-9\-_]+)",
    r"(?:^|\s)(INV[-\s]?\d[A-Z0-9\-_]*)",
    r"(?:^|\s)([A-Z]{2,}[-\s_]?INV[-\s_]?\d+[A-Z0-9\-_]*)",
    r"invoice\s+([A-Z0-9\-_]+)",
    r"(?:^|\s)(\d{7,}[A-Z0-9\-_]*)",
)

DATE_RULES = [
    PatternRule(
        re.compile(r"(?:date|invoice\s+date|issue\s+date|dated?)\s*:?\s*(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})", re.IGNORECASE),
        length_between(6, 20),
    ),
    PatternRule(re.compile(r"(\d{4}[/\-]\d{1,2}[/\-]\d{1,2})"), length_between(6, 20)),
    PatternRule(re.compile(r"(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})"), length_between(6, 20)),
    PatternRule(
        re.compile(
            r"((?:january|february|march|april|may|june|july|august|september|october|november|december)"
            r"\s+\d{1,2},?\s+\d{4})",
            re.IGNORECASE,
        ),
        length_between(6, 20),
    ),
    PatternRule(
        re.compile(r"(\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+\d{2,4})", re.IGNORECASE),
        length_between(6, 20),
    ),
]

TOTAL_RULES = _rules(
    _any,
    r"invoice\s+total\s*:?\s*" + _AMOUNT,
    r"(?:^|\s)total\s*:?\s*" + _AMOUNT,
    r"(?:amount\s+due|balance\s+due|grand\s+total)\s*:?\s*" + _AMOUNT,
)
_CURRENCY_AMOUNT = re.compile(r"[£$€]\s*([\d,]+\.?\d{2})")

VAT_RULES = _rules(
    _any,
    r"vat\s*:?\s*" + _AMOUNT,
    r"vat\s+amount\s*:?\s*" + _AMOUNT,
    r"tax\s+amount\s*:?\s*" + _AMOUNT,
    r"tax\s*:?\s*" + _AMOUNT,
)

GOODS_RULES = _rules(
    _any,
    r"goods\s*:?\s*" + _AMOUNT,
    r"net\s+amount\s*:?\s*" + _AMOUNT,
    r"subtotal\s*:?\s*" + _AMOUNT,
    r"goods\s+value\s*:?\s*" + _AMOUNT,
)

ACCOUNT_NUMBER_RULES = _rules(
    length_between(4, 20),
    r"account\s+no\.?\s*:?\s*(\d{4,}[A-Z0-9\-]*)",
    r"account\s*#\s*:?\s*([A-Z0-9\-]+)",
    r"account\s+number\s*:?\s*([A-Z0-9\-]+)",
    r"acc\s+no\.?\s*:?\s*(\d+[A-Z0-9\-]*)",
    r"account\s+code\s*:?\s*([A-Z0-9\-]+)",
    r"customer\s+account\s*:?\s*([A-Z0-9\-]+)",
    r"account\s+id\s*:?\s*([A-Z0-9\-]+)",
)
_ACCOUNT_TOKEN = re.compile(r"\b([A-Z0-9]{4,20})\b")


def _po_value(value: str) -> bool:
    first_line = value.split("\n")[0].strip()
    return 2 <= len(first_line) <= 50 and not _PLACEHOLDER_WORDS.match(first_line)


CUSTOMER_PO_RULES = _rules(
    _po_value,
    r"customer\s+po\s*:?[ \t]*([A-Z0-9 \t\-_]{2,50})",
    r"\bpo\b\s*(?:number\s*)?:?[ \t]*([A-Z0-9 \t\-_]{2,50})",
    r"purchase\s+order\s*:?[ \t]*([A-Z0-9 \t\-_]{2,50})",
    r"\bpo\b\s*#?\s*:?[ \t]*([A-Z0-9 \t\-_]{2,50})",
)

CUSTOMER_NAME_RULES = _rules(
    _any,
    r"(?:bill\s+to|customer|client|sold\s+to)[\s:]*\n?\s*([A-Z][A-Za-z\s&,.\-']{2,50})",
)


def _first(rules: List[PatternRule], text: str) -> Optional[str]:
    for rule in rules:
        value = rule.find(text)
        if value:
            return value
    return None


def extract_invoice_number(text: str) -> Optional[str]:
    return _first(INVOICE_NUMBER_RULES, text)


def extract_date(text: str) -> Optional[str]:
    return _first(DATE_RULES, text)


def extract_amount(text: str) -> Optional[Decimal]:
    """Labelled totals first, then the last currency amount on the page."""
    value = _first(TOTAL_RULES, text)
    if value is None:
        matches = _CURRENCY_AMOUNT.findall(text)
        value = matches[-1] if matches else None
    return parse_amount(value) if value else None


def extract_vat_amount(text: str) -> Optional[Decimal]:
    value = _first(VAT_RULES, text)
    return parse_amount(value) if value else None


def extract_goods_amount(text: str) -> Optional[Decimal]:
    value = _first(GOODS_RULES, text)
    return parse_amount(value) if value else None


def extract_account_number(text: str) -> Optional[str]:
    """
    Customer account number.

    Only the text before a "bank details" heading is searched so the
    supplier's bank account is never picked up. When no labelled pattern
    matches, the first 20 lines mentioning an account are scanned for an
    upper-case alphanumeric token.
    """
    cut = text.lower().find("bank details")
    head = text[:cut] if cut > 0 else text

    value = _first(ACCOUNT_NUMBER_RULES, head)
    if value:
        return value

    for line in head.split("\n")[:20]:
        lowered = line.lower()
        if ("account" in lowered or "acc" in lowered) and "bank" not in lowered:
            match = _ACCOUNT_TOKEN.search(line)
            if match:
                return match.group(1)
    return None


def extract_customer_po(text: str) -> Optional[str]:
    value = _first(CUSTOMER_PO_RULES, text)
    if value:
        return value.split("\n")[0].strip()

    # Value printed on the line after a "Customer PO" label
    label = re.search(r"customer\s+po\s*:?\s*", text, re.IGNORECASE)
    if label:
        window = text[label.end():label.end() + 200]
        match = re.search(r"\b([A-Z0-9][A-Z0-9 \-_]{1,49})\b", window)
        if match:
            po = match.group(1).strip()
            if (2 <= len(po) <= 50 and not _PO_STOP_WORDS.match(po)
                    and not _LOOKS_LIKE_DATE.match(po)):
                return po
    return None


def extract_customer_name(text: str) -> Optional[str]:
    value = _first(CUSTOMER_NAME_RULES, text)
    if value:
        return value.split("\n")[0].strip()

    for line in text.split("\n")[:10]:
        line = line.strip()
        if 3 < len(line) < 50 and not line[0].isdigit() and not line.startswith(("£", "$", "€")):
            return line
    return None


FIELD_EXTRACTORS: Dict[str, Callable[[str], Any]] = {
    "invoice_number": extract_invoice_number,
    "invoice_date": extract_date,
    "total_amount": extract_amount,
    "vat_amount": extract_vat_amount,
    "goods_amount": extract_goods_amount,
    "account_number": extract_account_number,
    "customer_po": extract_customer_po,
    "customer_name": extract_customer_name,
}


def extract_basic(text: str) -> Dict[str, Any]:
    """Every field the regex rules can find; missing fields are omitted."""
    if not text:
        return {}
    fields: Dict[str, Any] = {}
    for name, extractor in FIELD_EXTRACTORS.items():
        value = extractor(text)
        if value is not None and value != "":
            fields[name] = value
    return fields
