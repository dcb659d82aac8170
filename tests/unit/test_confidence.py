"""
Unit tests for confidence scoring.
"""

from decimal import Decimal

import pytest

from docflow.extraction.confidence import (
    base_quality,
    calculate_confidence,
    plausibility,
    template_coverage,
    text_quality,
)
from docflow.models import DocumentType, FieldDefinition, FieldRegion, FileKind, Template

REGION = FieldRegion(left=0, top=0, right=1, bottom=1)


def template_with(*names, mandatory=()) -> Template:
    return Template(
        name="Scored",
        document_type=DocumentType.INVOICE,
        file_kind=FileKind.PDF,
        fields={name: FieldDefinition(region=REGION) for name in names},
        mandatory_fields=list(mandatory),
    )


class TestConfidence:
    """Tests for the weighted confidence score."""

    def test_empty_basic_extraction(self):
        assert calculate_confidence({}, full_text="", processing_method="local_basic") == 28

    def test_score_bounds(self):
        fields = {
            "invoice_number": "INV-1",
            "invoice_date": "2024-03-15",
            "total_amount": Decimal("10.00"),
        }
        template = template_with("invoice_number", "invoice_date", "total_amount",
                                 mandatory=("invoice_number",))

        score = calculate_confidence(fields, template, ocr_confidence=1.0,
                                     full_text="x" * 5000, processing_method="local_coordinates")

        assert score == 100

    def test_more_fields_never_lower_the_score(self):
        template = template_with("invoice_number", "invoice_date", "total_amount")
        fields = {}
        previous = calculate_confidence(fields, template, full_text="text", processing_method="local_coordinates")
        for key, value in (("invoice_number", "INV-1"), ("invoice_date", "2024-01-01"), ("total_amount", "12.00")):
            fields[key] = value
            score = calculate_confidence(fields, template, full_text="text", processing_method="local_coordinates")
            assert score >= previous
            previous = score

    def test_base_quality(self):
        assert base_quality("local_coordinates", None) == 0.80
        assert base_quality("local_spreadsheet", None) == 0.80
        assert base_quality("local_basic", None) == 0.70
        assert base_quality("local_basic", 1.7) == 1.0
        assert base_quality("local_basic", -1) == 0.0

    def test_coverage_without_template(self):
        assert template_coverage({"invoice_number": "1"}, None) == pytest.approx(0.15)
        assert template_coverage({"invoice_number": "1", "date": "x"}, None) == pytest.approx(0.25)

    def test_coverage_matches_aliases(self):
        """Test template field names are matched against standard extracted names."""
        template = template_with("Invoice No", "Total", mandatory=("Invoice No",))
        fields = {"invoice_number": "INV-1", "total_amount": None}

        assert template_coverage(fields, template) == pytest.approx(0.35 / 2 + 0.10)

    def test_text_quality(self):
        assert text_quality({}, "") == 0.0
        assert text_quality({"total_amount": "1"}, "x" * 4000) == pytest.approx(0.15)

    def test_plausibility(self):
        assert plausibility({"invoice_number": "1", "invoice_date": "d", "total_amount": "£5"}) == pytest.approx(0.10)
        assert plausibility({"total_amount": "unknown"}) == 0.0
