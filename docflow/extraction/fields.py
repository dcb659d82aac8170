"""
Standard business fields.

Template authors name their regions freely ("Account No.", "acc_no",
"supplier_invoice_total"); every name is mapped onto one of these
standard fields before the pipeline reads it.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple


@dataclass(frozen=True)
class StandardField:
    name: str
    display_name: str
    aliases: Tuple[str, ...] = ()
    crucial: bool = False
    mandatory: bool = False
    document_types: Tuple[str, ...] = ()


STANDARD_FIELDS: Dict[str, StandardField] = {f.name: f for f in (
    StandardField(
        "document_type", "Document Type",
        ("documenttype", "doc_type", "type"),
        crucial=True, mandatory=True,
    ),
    StandardField(
        "account_number", "Account Number / Supplier Code",
        ("account_no", "accountno", "customer_number", "customer_no", "account",
         "supplier_code", "vendor_code", "acc_no"),
        crucial=True, mandatory=True,
    ),
    StandardField(
        "invoice_date", "Date / Tax Point",
        ("date", "tax_point", "taxpoint", "date_tax_point", "tax_point_date"),
        crucial=True, mandatory=True,
    ),
    StandardField(
        "invoice_number", "Invoice Number",
        ("invoice_no", "invoicenumber", "inv_no", "invoice_ref"),
        mandatory=True, document_types=("invoice", "statement"),
    ),
    StandardField(
        "credit_number", "Credit Number",
        ("credit_no", "creditnumber", "credit_note_number", "credit_ref"),
        mandatory=True, document_types=("credit_note",),
    ),
    StandardField(
        "customer_po", "Customer PO",
        ("customerpo", "po_number", "po_no", "purchase_order", "po"),
        mandatory=True,
    ),
    StandardField(
        "total_amount", "Total",
        ("total", "amount", "invoice_total", "invoicetotal", "grand_total"),
        mandatory=True,
    ),
    StandardField(
        "vat_amount", "VAT Amount",
        ("vat_total", "vatamount", "tax_amount", "tax"),
        mandatory=True,
    ),
    StandardField(
        "goods_amount", "Goods Amount",
        ("goods", "goodsamount", "subtotal", "net_amount"),
    ),
    StandardField("supplier_name", "Supplier Name", ("vendor_name", "vendor", "supplier")),
    StandardField("customer_name", "Customer Name", ("customername", "company_name", "company")),
    StandardField("invoice_to", "Invoice To", ("invoiceto", "bill_to", "billto")),
    StandardField(
        "delivery_address", "Delivery Address",
        ("deliveryaddress", "ship_to", "shipto", "shipping_address"),
    ),
)}

AMOUNT_KEYS = ("total_amount", "amount", "total", "invoice_total")
DATE_KEYS = ("invoice_date", "date")
NUMBER_KEYS = ("invoice_number", "credit_number")


def normalize_key(name: str) -> str:
    """``"Account No."`` / ``"accountNo"`` / ``"account-no"`` -> ``"account_no"``."""
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name.strip())
    name = re.sub(r"[^0-9a-zA-Z]+", "_", name).strip("_")
    return name.lower()


def compact_key(name: str) -> str:
    """Case, underscore and punctuation blind form used for fuzzy matching."""
    return re.sub(r"[^0-9a-z]", "", name.lower())


def map_to_standard_name(name: str, template_code: Optional[str] = None) -> Optional[str]:
    """Standard field for a template field name, or None if it is custom."""
    key = normalize_key(name)
    if template_code and key.startswith(normalize_key(template_code) + "_"):
        key = key[len(normalize_key(template_code)) + 1:]
    if key in STANDARD_FIELDS:
        return key
    compact = compact_key(key)
    for field in STANDARD_FIELDS.values():
        if compact == compact_key(field.name):
            return field.name
        if any(compact == compact_key(alias) for alias in field.aliases):
            return field.name
    # "{code}_{field}" where the code was not supplied
    parts = key.split("_")
    for width in (3, 2, 1):
        if len(parts) > width:
            tail = "_".join(parts[-width:])
            found = map_to_standard_name(tail)
            if found:
                return found
    return None


def fuzzy_match(a: str, b: str) -> bool:
    """Case, underscore and camel-case insensitive field-name comparison."""
    ca, cb = compact_key(a), compact_key(b)
    if not ca or not cb:
        return False
    return ca == cb or ca in cb or cb in ca


def first_value(fields: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = fields.get(key)
        if value not in (None, ""):
            return value
    return None


def missing_crucial_fields(fields: Mapping[str, Any]) -> List[str]:
    return [
        name for name, field in STANDARD_FIELDS.items()
        if field.crucial and fields.get(name) in (None, "")
    ]
