"""
Unit tests for regex extraction and field transforms.
"""

from datetime import date
from decimal import Decimal

import pytest

from docflow.extraction.patterns import (
    extract_account_number,
    extract_amount,
    extract_basic,
    extract_customer_po,
    extract_date,
    extract_invoice_number,
)
from docflow.extraction.transforms import (
    apply_transforms,
    clean_amount_value,
    is_valid_date_format,
    parse_amount,
    parse_date,
)
from docflow.models import FieldTransform

SAMPLE_INVOICE = """ACME SUPPLIES LTD
Invoice No: 100234
Date: 15/03/2024
Account No: 55120
Customer PO: PO-7781
Subtotal: £100.00
VAT: £20.00
Total: £120.00
Bank Details
Account No: 99887766
"""


class TestBasicExtraction:
    """Tests for the regex fallback extractor."""

    def test_sample_invoice(self):
        fields = extract_basic(SAMPLE_INVOICE)

        assert fields["invoice_number"] == "100234"
        assert fields["invoice_date"] == "15/03/2024"
        assert fields["account_number"] == "55120"
        assert fields["customer_po"] == "PO-7781"
        assert fields["total_amount"] == Decimal("120.00")
        assert fields["vat_amount"] == Decimal("20.00")
        assert fields["goods_amount"] == Decimal("100.00")
        assert fields["customer_name"] == "ACME SUPPLIES LTD"

    def test_empty_text(self):
        assert extract_basic("") == {}

    def test_bank_account_ignored(self):
        """Test account numbers after a bank details heading are not used."""
        text = "Invoice INV-1\nBank Details\nAccount No: 12345678"

        assert extract_account_number(text) is None

    def test_short_account_number_rejected(self):
        assert extract_account_number("Account No: 123") is None

    def test_unlabelled_account_token(self):
        assert extract_account_number("Your account ref ABC123 applies") == "ABC123"

    @pytest.mark.parametrize("text,expected", [
        ("Invoice #: A-100", "A-100"),
        ("Invoice Number: 88812", "88812"),
        ("Ref INV-3321 attached", "INV-3321"),
    ])
    def test_invoice_number_variants(self, text, expected):
        assert extract_invoice_number(text) == expected

    def test_placeholder_invoice_number_rejected(self):
        assert extract_invoice_number("Invoice no") is None

    def test_long_date(self):
        assert extract_date("Issued March 5, 2024 by us") == "March 5, 2024"

    def test_amount_falls_back_to_last_currency_value(self):
        assert extract_amount("Item £5.00\nItem £7.50") == Decimal("7.50")

    def test_po_on_next_line(self):
        assert extract_customer_po("Customer PO\n\nORDER-55") == "ORDER-55"


class TestTransforms:
    """Tests for template field transformations."""

    @pytest.mark.parametrize("raw,expected", [
        ("£1,234.50", "1234.50"),
        (".50", "0.50"),
        ("€ 12", "12"),
    ])
    def test_clean_amount_value(self, raw, expected):
        assert clean_amount_value(raw) == expected

    def test_parse_amount(self):
        assert parse_amount("(50.00)") == Decimal("-50.00")
        assert parse_amount("-12.10") == Decimal("-12.10")
        assert parse_amount(3.5) == Decimal("3.5")
        assert parse_amount("n/a") is None
        assert parse_amount("") is None

    @pytest.mark.parametrize("raw,expected", [
        ("15/03/2024", date(2024, 3, 15)),
        ("2024-03-15", date(2024, 3, 15)),
        ("15/03/24", date(2024, 3, 15)),
        ("01.02.75", date(1975, 2, 1)),
        ("31/02/2024", None),
    ])
    def test_parse_date_numeric(self, raw, expected):
        assert parse_date(raw) == expected

    def test_parse_date_words(self):
        assert parse_date("5 March 2024") == date(2024, 3, 5)

    def test_is_valid_date_format(self):
        assert is_valid_date_format("2024-03-15")
        assert is_valid_date_format(date(2024, 3, 15))
        assert not is_valid_date_format("15/03/2024")
        assert not is_valid_date_format("2024-13-01")

    def test_apply_transforms_order(self):
        transform = FieldTransform(remove=["Ref:"], uppercase=True)

        assert apply_transforms("  Ref: abc-1 ", transform) == "ABC-1"

    def test_apply_currency(self):
        assert apply_transforms("(50.00)", FieldTransform(data_type="currency")) == Decimal("-50.00")

    def test_apply_date(self):
        assert apply_transforms("15/03/24", FieldTransform(data_type="date")) == "2024-03-15"

    def test_unconvertible_value_kept_as_text(self):
        assert apply_transforms(" pending ", FieldTransform(data_type="date")) == "pending"

    def test_no_transform(self):
        assert apply_transforms(" raw ", None) == " raw "
        assert apply_transforms(None, FieldTransform()) is None

    def test_unknown_data_type(self):
        with pytest.raises(ValueError):
            FieldTransform(data_type="money")
