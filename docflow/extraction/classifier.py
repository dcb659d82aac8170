"""
Document type classification from raw text.

Rules run in order and the first hit wins. Credit-note markers go first
because credit notes routinely quote the invoice they correct.
"""

import re
from typing import Callable, List, Optional, Tuple

from docflow.models import DocumentType

_CN_TOKEN = re.compile(r"\bCN\b")

Rule = Tuple[str, Callable[[str], bool], DocumentType]

RULES: List[Rule] = [
    ("credit_note_phrase", lambda t: "CREDIT NOTE" in t or "CREDITNOTE" in t, DocumentType.CREDIT_NOTE),
    (
        "credit_with_note",
        lambda t: "CREDIT" in t and ("NOTE" in t or bool(_CN_TOKEN.search(t))),
        DocumentType.CREDIT_NOTE,
    ),
    ("statement", lambda t: "STATEMENT" in t, DocumentType.STATEMENT),
    ("invoice", lambda t: "INVOICE" in t, DocumentType.INVOICE),
]


def classify(text: Optional[str]) -> DocumentType:
    """Document type for ``text``; invoice when nothing matches."""
    if not text:
        return DocumentType.INVOICE
    upper = text.upper()
    for _, matches, document_type in RULES:
        if matches(upper):
            return document_type
    return DocumentType.INVOICE


def normalize_type_label(label: Optional[str]) -> Optional[DocumentType]:
    """Map an extracted "Document Type" field value onto a type."""
    if not label:
        return None
    upper = str(label).upper()
    if "CREDIT" in upper or _CN_TOKEN.search(upper):
        return DocumentType.CREDIT_NOTE
    if "STATEMENT" in upper:
        return DocumentType.STATEMENT
    return DocumentType.INVOICE
