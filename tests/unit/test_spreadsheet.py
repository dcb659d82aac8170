"""
Unit tests for spreadsheet extraction.
"""

from datetime import datetime
from decimal import Decimal

import pytest
from openpyxl import Workbook

from docflow.extraction.spreadsheet import SpreadsheetExtractor, read_spreadsheet_text
from docflow.models import (
    CellRef,
    DocumentType,
    FieldDefinition,
    FieldTransform,
    FileKind,
    Template,
)
from docflow.utils.errors import DocumentError, ExtractionError


@pytest.fixture
def workbook_path(temp_dir):
    """Two-sheet workbook: a cover sheet and the invoice data on the last sheet."""
    workbook = Workbook()
    cover = workbook.active
    cover.title = "Cover"
    cover["A1"] = "COVER-1"

    data = workbook.create_sheet("Invoice")
    data["A1"] = "INV-2002"
    data["B2"] = datetime(2024, 3, 15, 9, 30)
    data["C3"] = "£1,250.00"
    data["A5"] = "Widget"
    data["B5"] = 2
    data["A6"] = "Gadget"
    data["B6"] = 3.0

    path = temp_dir / "invoice.xlsx"
    workbook.save(path)
    return path


def cell_template(**fields) -> Template:
    return Template(
        name="Sheet",
        document_type=DocumentType.INVOICE,
        file_kind=FileKind.SPREADSHEET,
        fields=fields,
    )


class TestSpreadsheetExtractor:
    """Tests for reading template cells from a workbook."""

    def test_last_sheet_by_default(self, workbook_path):
        template = cell_template(invoice_number=FieldDefinition(cell=CellRef(column="A", row=1)))

        fields = SpreadsheetExtractor().extract(workbook_path, template)

        assert fields["invoice_number"] == "INV-2002"

    def test_explicit_sheet(self, workbook_path):
        template = cell_template(invoice_number=FieldDefinition(cell=CellRef(column="a", row=1, sheet=0)))

        fields = SpreadsheetExtractor().extract(workbook_path, template)

        assert fields["invoice_number"] == "COVER-1"

    def test_dates_and_transforms(self, workbook_path):
        template = cell_template(
            date=FieldDefinition(cell=CellRef(column="B", row=2)),
            total=FieldDefinition(
                cell=CellRef(column="C", row=3),
                transform=FieldTransform(data_type="currency"),
            ),
        )

        fields = SpreadsheetExtractor().extract(workbook_path, template)

        assert fields["invoice_date"] == "2024-03-15"
        assert fields["total_amount"] == Decimal("1250.00")

    def test_range_joined_with_tabs_and_newlines(self, workbook_path):
        template = cell_template(lines=FieldDefinition(cell=CellRef(column="A", row=5, end_column="B", end_row=6)))

        fields = SpreadsheetExtractor().extract(workbook_path, template)

        assert fields["lines"] == "Widget\t2\nGadget\t3"

    def test_empty_cell(self, workbook_path):
        template = cell_template(customer_po=FieldDefinition(cell=CellRef(column="Z", row=99)))

        assert SpreadsheetExtractor().extract(workbook_path, template)["customer_po"] is None

    def test_template_without_cells(self, workbook_path):
        with pytest.raises(ExtractionError):
            SpreadsheetExtractor().extract(workbook_path, cell_template())

    def test_legacy_xls_rejected(self, temp_dir):
        path = temp_dir / "old.xls"
        path.write_bytes(b"\xd0\xcf\x11\xe0not really a workbook")
        template = cell_template(invoice_number=FieldDefinition(cell=CellRef(column="A", row=1)))

        with pytest.raises(DocumentError):
            SpreadsheetExtractor().extract(path, template)

    def test_full_text(self, workbook_path):
        text = read_spreadsheet_text(workbook_path)

        assert "COVER-1" in text
        assert "Widget 2" in text
        assert "2024-03-15" in text

    def test_invalid_column(self):
        with pytest.raises(ValueError):
            CellRef(column="A1", row=1)
