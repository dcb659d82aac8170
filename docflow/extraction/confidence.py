"""
Confidence Scorer

Weighted 0-100 score for one extraction:

- base quality, 40%: provider confidence, else a default per method
- template coverage, 35%: share of template fields that produced a value,
  plus up to 10% for mandatory fields (a flat 15%/10% for invoice number
  and date when there is no template)
- text quality, 15%: text length (capped) and presence of an amount
- plausibility, 10%: number, date and a numeric-looking amount present
"""

import re
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from docflow.extraction.fields import (
    AMOUNT_KEYS,
    DATE_KEYS,
    NUMBER_KEYS,
    first_value,
    fuzzy_match,
    map_to_standard_name,
)
from docflow.models import Template

METHOD_DEFAULTS = (
    ("local_coordinates", 0.80),
    ("local_spreadsheet", 0.80),
)
DEFAULT_BASE = 0.70

_AMOUNT_LIKE = re.compile(r"[\d.,£$€]")


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _field_matches(template_field: str, extracted: Iterable[str], code: Optional[str]) -> bool:
    standard = map_to_standard_name(template_field, code)
    for key in extracted:
        if key == standard or fuzzy_match(template_field, key):
            return True
    return False


def base_quality(processing_method: str, ocr_confidence: Optional[float]) -> float:
    if ocr_confidence is not None:
        return min(max(float(ocr_confidence), 0.0), 1.0)
    for tag, default in METHOD_DEFAULTS:
        if tag in (processing_method or ""):
            return default
    return DEFAULT_BASE


def template_coverage(fields: Mapping[str, Any], template: Optional[Template]) -> float:
    if template is None or not template.fields:
        score = 0.0
        if _present(first_value(fields, NUMBER_KEYS)):
            score += 0.15
        if _present(first_value(fields, DATE_KEYS)):
            score += 0.10
        return score

    extracted = [k for k, v in fields.items() if _present(v)]
    names = list(template.fields)
    matched = sum(1 for name in names if _field_matches(name, extracted, template.code))
    score = matched / len(names) * 0.35

    mandatory = template.mandatory_fields
    if mandatory:
        found = sum(1 for name in mandatory if _field_matches(name, extracted, template.code))
        score += found / len(mandatory) * 0.10
    return score


def text_quality(fields: Mapping[str, Any], full_text: str) -> float:
    if not full_text:
        return 0.0
    score = min(len(full_text) / 2000, 0.10)
    if _present(first_value(fields, AMOUNT_KEYS)):
        score += 0.05
    return score


def plausibility(fields: Mapping[str, Any]) -> float:
    score = 0.0
    if _present(first_value(fields, NUMBER_KEYS)):
        score += 0.03
    if _present(first_value(fields, DATE_KEYS)):
        score += 0.03
    amount = first_value(fields, AMOUNT_KEYS)
    if isinstance(amount, (int, float, Decimal)) or (
        isinstance(amount, str) and _AMOUNT_LIKE.search(amount)
    ):
        score += 0.04
    return min(score, 0.10)


def calculate_confidence(
    fields: Mapping[str, Any],
    template: Optional[Template] = None,
    ocr_confidence: Optional[float] = None,
    full_text: str = "",
    processing_method: str = "",
) -> int:
    """Confidence score between 0 and 100."""
    score = base_quality(processing_method, ocr_confidence) * 0.4
    score += template_coverage(fields, template)
    score += text_quality(fields, full_text)
    score += plausibility(fields)
    return round(min(score, 1.0) * 100)
